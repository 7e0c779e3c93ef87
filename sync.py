"""Cursor-based incremental sync of aggregator transactions.

One ``SyncEngine.sync_item`` call handles one connection item:

1. page through ``fetch_changes`` until ``has_more`` is false
2. turn removals that are superseded by a posted event into identity updates
3. normalize, categorize and merge the remaining events
4. fan out budget projections and run the budget's rules on new ones
5. store the new cursor and commit, all in one database transaction

If anything in 3-5 fails the session is rolled back and the cursor stays
where it was, so the next run sees the same changes again.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aggregator import AggregatorClient, ChangePage, amount_to_cents, call_with_retry
from categories import CategoryResolver, load_category_mapping, resolver_for_budget
from config import Settings, get_settings
from errors import AggregatorError, BudgetSyncError, NotFoundError, SyncFailed
from identifiers import IdentifierGenerator, store_lookup
from linker import Linker, ProjectionDraft
from merger import IdentityUpdate, TransactionDraft, TransactionMerger
from models import (
    AggregatorAccount,
    Budget,
    BudgetAccountLink,
    BudgetTransaction,
    ConnectionItem,
    RecurringGroup,
    Transaction,
    TransactionStatus,
)
from periods import month_key
from recurrence import RecurrenceDetector
from services import RuleService, SpendingService


logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("transaction_id", "account_id", "date")


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, tuple)):
        return None
    return str(value) or None


@dataclass
class ChangeSet:
    upserts: list[dict[str, Any]] = field(default_factory=list)
    # (removed pending id, posted event that replaces it)
    identity_updates: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)


def _events(pages: list[ChangePage], kind: str) -> list[dict[str, Any]]:
    events = []
    for page in pages:
        for event in getattr(page, kind):
            if isinstance(event, Mapping):
                events.append(event)
            else:
                logger.warning(f"sync_event_skipped: kind={kind} not_an_object={event!r}")
    return events


def classify_changes(pages: list[ChangePage]) -> ChangeSet:
    """Split accumulated pages into upserts, identity updates and true removals.

    A removed id that an added event names as its ``pending_transaction_id``
    is not a removal: the pending row is rewritten with the posted values.
    A removal without that link is a real removal; the two cases cannot be
    told apart otherwise.
    """
    added = _events(pages, "added")
    modified = _events(pages, "modified")
    removed_ids = [
        str(event["transaction_id"])
        for event in _events(pages, "removed")
        if event.get("transaction_id")
    ]

    superseding = {
        str(event["pending_transaction_id"]): event
        for event in added
        if event.get("pending_transaction_id")
    }
    changes = ChangeSet()
    rewritten: set[int] = set()
    for removed_id in dict.fromkeys(removed_ids):
        posted = superseding.get(removed_id)
        if posted is not None:
            changes.identity_updates.append((removed_id, posted))
            rewritten.add(id(posted))
        else:
            changes.removed_ids.append(removed_id)

    gone = set(removed_ids)
    changes.upserts = [
        event
        for event in added + modified
        if id(event) not in rewritten and str(event.get("transaction_id")) not in gone
    ]
    return changes


def normalize_event(
    event: dict[str, Any], accounts: Mapping[str, int]
) -> Optional[TransactionDraft]:
    """Build a draft from a provider event, or None if it cannot be stored."""
    external_id = event.get("transaction_id")
    missing = [name for name in REQUIRED_FIELDS if not event.get(name)]
    if missing:
        logger.warning(
            f"sync_event_skipped: external_id={external_id} missing={','.join(missing)}"
        )
        return None
    account_id = accounts.get(str(event["account_id"]))
    if account_id is None:
        logger.warning(
            f"sync_event_skipped: external_id={external_id} unknown_account={event['account_id']}"
        )
        return None
    try:
        txn_date = date.fromisoformat(str(event["date"]))
        amount_cents = amount_to_cents(event.get("amount") or 0)
    except (ValueError, ArithmeticError, TypeError) as exc:
        logger.warning(f"sync_event_skipped: external_id={external_id} error={exc}")
        return None

    # nested fields that are not objects count as absent
    pfc = _mapping(event.get("personal_finance_category"))
    payment_meta = _mapping(event.get("payment_meta"))
    return TransactionDraft(
        external_id=str(external_id),
        account_id=account_id,
        date=txn_date,
        amount_cents=amount_cents,
        status=TransactionStatus.pending if event.get("pending") else TransactionStatus.posted,
        merchant_name=_text(event.get("merchant_name")) or _text(event.get("name")),
        payee=_text(payment_meta.get("payee")),
        currency_code=(_text(event.get("iso_currency_code")) or "USD").upper(),
        provider_category=_text(pfc.get("detailed")),
        provider_category_confidence=_text(pfc.get("confidence_level")),
        raw=event,
    )


def _safe_draft(
    event: dict[str, Any], accounts: Mapping[str, int]
) -> Optional[TransactionDraft]:
    try:
        return normalize_event(event, accounts)
    except (TypeError, AttributeError) as exc:
        logger.warning(
            f"sync_event_skipped: external_id={event.get('transaction_id')} error={exc}"
        )
        return None


@dataclass
class SyncResult:
    item_id: int
    pages: int = 0
    created: int = 0
    updated: int = 0
    identity_updates: int = 0
    removed: int = 0
    skipped: int = 0
    projections: int = 0
    orphaned: int = 0
    cursor: Optional[str] = None
    touched_months: dict[int, set[str]] = field(default_factory=dict)

    def touch(self, budget_id: int, on: date) -> None:
        self.touched_months.setdefault(budget_id, set()).add(month_key(on))

    def as_dict(self) -> dict[str, object]:
        return {
            "item_id": self.item_id,
            "pages": self.pages,
            "created": self.created,
            "updated": self.updated,
            "identity_updates": self.identity_updates,
            "removed": self.removed,
            "skipped": self.skipped,
            "projections": self.projections,
            "orphaned": self.orphaned,
        }


class SyncEngine:
    def __init__(
        self,
        session: Session,
        client: AggregatorClient,
        *,
        settings: Optional[Settings] = None,
        mapping: Optional[Mapping[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.client = client
        self.settings = settings or get_settings()
        self.mapping = (
            mapping
            if mapping is not None
            else load_category_mapping(self.settings.category_map_path)
        )
        self.sleep = sleep
        self.merger = TransactionMerger(
            session,
            IdentifierGenerator(
                store_lookup(session, Transaction.user_tx_id),
                max_batches=self.settings.id_max_batches,
            ),
            IdentifierGenerator(
                store_lookup(session, RecurringGroup.user_tx_id),
                max_batches=self.settings.id_max_batches,
            ),
        )
        self._resolvers: dict[Optional[int], CategoryResolver] = {}

    def resolver(self, budget_id: Optional[int] = None) -> CategoryResolver:
        if budget_id not in self._resolvers:
            self._resolvers[budget_id] = resolver_for_budget(
                self.session, self.mapping, budget_id
            )
        return self._resolvers[budget_id]

    def _retry(self, fn: Callable[[], Any], label: str) -> Any:
        return call_with_retry(
            fn,
            delay_secs=self.settings.aggregator_retry_delay_secs,
            label=label,
            sleep=self.sleep,
        )

    def fetch_all(self, item: ConnectionItem) -> tuple[list[ChangePage], Optional[str]]:
        pages: list[ChangePage] = []
        cursor = item.next_cursor
        while True:
            page = self._retry(
                lambda: self.client.fetch_changes(item.access_token, cursor),
                "fetch_changes",
            )
            pages.append(page)
            cursor = page.next_cursor or cursor
            if not page.has_more:
                return pages, cursor

    def sync_item(self, item: ConnectionItem) -> SyncResult:
        previous_cursor = item.next_cursor
        result = SyncResult(item_id=item.id, cursor=previous_cursor)
        try:
            pages, next_cursor = self.fetch_all(item)
        except AggregatorError as exc:
            logger.error(f"sync_item_failed: item_id={item.id} stage=fetch error={exc}")
            raise SyncFailed(item.id, previous_cursor, str(exc)) from exc
        result.pages = len(pages)

        try:
            touched = self._persist(item, classify_changes(pages), result)
            # cursor moves only together with the rows it covers
            item.next_cursor = next_cursor
            item.last_synced_at = datetime.utcnow()
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.error(
                f"sync_item_failed: item_id={item.id} stage=persist cursor_advanced=False error={exc}"
            )
            raise
        result.cursor = next_cursor
        logger.info(
            f"sync_item: item_id={item.id} pages={result.pages} created={result.created} "
            f"updated={result.updated} identity_updates={result.identity_updates} "
            f"removed={result.removed} skipped={result.skipped} projections={result.projections}"
        )
        self._detect_recurring(item, touched)
        return result

    def _categorize(self, draft: TransactionDraft, resolver: CategoryResolver) -> None:
        try:
            draft.category_id = resolver.resolve_one(draft.provider_category).category_id
        except (LookupError, TypeError, ValueError) as exc:
            logger.warning(
                f"categorize_failed: external_id={draft.external_id} error={exc}"
            )
            draft.category_id = resolver.fallback.category_id

    def _persist(
        self, item: ConnectionItem, changes: ChangeSet, result: SyncResult
    ) -> list[Transaction]:
        resolver = self.resolver(None)
        accounts = {
            account.external_account_id: account.id
            for account in self.session.scalars(
                select(AggregatorAccount).where(
                    AggregatorAccount.connection_item_id == item.id
                )
            ).all()
        }

        touched: list[Transaction] = []
        drafts: list[TransactionDraft] = []
        removed = list(changes.removed_ids)
        for previous_id, event in changes.identity_updates:
            draft = _safe_draft(event, accounts)
            if draft is None:
                result.skipped += 1
                continue
            self._categorize(draft, resolver)
            row = self.merger.apply_identity_update(IdentityUpdate(previous_id, draft))
            if row is None:
                drafts.append(draft)
                removed.append(previous_id)
            else:
                result.identity_updates += 1
                touched.append(row)

        for event in changes.upserts:
            draft = _safe_draft(event, accounts)
            if draft is None:
                result.skipped += 1
                continue
            self._categorize(draft, resolver)
            drafts.append(draft)

        merged = self.merger.merge_transactions(drafts)
        result.created = len(merged.created)
        result.updated = len(merged.updated)
        touched.extend(merged.transactions)

        removal = self.merger.delete_by_external_ids(removed)
        result.removed = removal.count
        for budget_id, on in removal.scopes:
            result.touch(budget_id, on)

        self._fan_out(touched, result)
        return touched

    def _budget_category(self, budget_id: int, txn: Transaction) -> Optional[int]:
        resolver = self.resolver(budget_id)
        if txn.provider_category:
            return resolver.resolve_one(txn.provider_category).category_id
        known = resolver.by_id(txn.category_id)
        return known.category_id if known else resolver.fallback.category_id

    def _fan_out(self, transactions: list[Transaction], result: SyncResult) -> None:
        linker = Linker(self.session)
        drafts: list[ProjectionDraft] = []
        dates: dict[int, date] = {}
        for txn in transactions:
            dates[txn.id] = txn.date
            if txn.account_id is None:
                continue
            links = linker.links_for_account(txn.account_id)
            drafts.extend(linker.fan_out(txn, links, self._budget_category))

        live = linker.drop_orphans(drafts)
        result.orphaned = len(drafts) - len(live)
        created = self.merger.merge_projections(live)
        result.projections = len(created)
        for draft in live:
            result.touch(draft.budget_id, dates[draft.transaction_id])

        by_budget: dict[int, list[BudgetTransaction]] = {}
        for row in created:
            by_budget.setdefault(row.budget_id, []).append(row)
        rules = RuleService(self.session)
        for budget_id, rows in by_budget.items():
            rules.apply_to_projections(budget_id, rows)

    def _detect_recurring(self, item: ConnectionItem, touched: list[Transaction]) -> None:
        # runs after the batch is committed; a failure here never undoes the sync
        resolver = self.resolver(None)
        detector = RecurrenceDetector(
            self.session,
            self.merger,
            category_for=lambda label: resolver.resolve_one(label).category_id,
        )
        try:
            detector.merge(detector.detect(touched))
            self.session.commit()
        except (BudgetSyncError, SQLAlchemyError) as exc:
            self.session.rollback()
            logger.warning(f"recurrence_detection_failed: item_id={item.id} error={exc}")

        try:
            streams = self._retry(
                lambda: self.client.recurring_streams(item.access_token),
                "recurring_streams",
            )
            detector.merge_streams(streams)
            self.session.commit()
        except (BudgetSyncError, SQLAlchemyError) as exc:
            self.session.rollback()
            logger.warning(f"recurring_streams_failed: item_id={item.id} error={exc}")


@dataclass
class SyncReport:
    results: list[SyncResult] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "items": [result.as_dict() for result in self.results],
            "errors": [
                {"item_id": item_id, "detail": detail}
                for item_id, detail in sorted(self.errors.items())
            ],
        }


class SyncService:
    """Syncs connection items independently, one session per item."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: AggregatorClient,
        *,
        settings: Optional[Settings] = None,
        mapping: Optional[Mapping[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.settings = settings or get_settings()
        self.mapping = mapping
        self.sleep = sleep

    def sync_item(self, item_id: int) -> SyncResult:
        with self.session_factory() as session:
            item = session.get(ConnectionItem, item_id)
            if not item:
                raise NotFoundError("Connection item not found")
            engine = SyncEngine(
                session,
                self.client,
                settings=self.settings,
                mapping=self.mapping,
                sleep=self.sleep,
            )
            result = engine.sync_item(item)
            self._refresh_spending(session, result)
            return result

    def _refresh_spending(self, session: Session, result: SyncResult) -> None:
        spending = SpendingService(session)
        for budget_id, months in result.touched_months.items():
            try:
                spending.refresh_months(budget_id, sorted(months))
                session.commit()
            except (BudgetSyncError, SQLAlchemyError) as exc:
                session.rollback()
                logger.warning(
                    f"spending_refresh_failed: budget_id={budget_id} error={exc}"
                )

    def _run_isolated(self, item_id: int, report: SyncReport) -> None:
        try:
            report.results.append(self.sync_item(item_id))
        except Exception as exc:
            logger.error(f"sync_item_isolated: item_id={item_id} error={exc}")
            report.errors[item_id] = str(exc) or type(exc).__name__

    def sync_items(
        self, item_ids: list[int], max_workers: Optional[int] = None
    ) -> SyncReport:
        report = SyncReport()
        item_ids = list(dict.fromkeys(item_ids))
        workers = max_workers or self.settings.sync_max_workers
        if workers <= 1 or len(item_ids) <= 1:
            for item_id in item_ids:
                self._run_isolated(item_id, report)
            return report

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.sync_item, item_id): item_id for item_id in item_ids}
            for future in as_completed(futures):
                item_id = futures[future]
                try:
                    report.results.append(future.result())
                except Exception as exc:
                    logger.error(f"sync_item_isolated: item_id={item_id} error={exc}")
                    report.errors[item_id] = str(exc) or type(exc).__name__
        report.results.sort(key=lambda r: r.item_id)
        logger.info(
            f"sync_items: count={len(item_ids)} ok={len(report.results)} failed={len(report.errors)}"
        )
        return report

    def item_ids_for_budget(self, budget_id: int) -> list[int]:
        with self.session_factory() as session:
            if not session.get(Budget, budget_id):
                raise NotFoundError("Budget not found")
            return list(
                session.scalars(
                    select(ConnectionItem.id)
                    .join(AggregatorAccount, AggregatorAccount.connection_item_id == ConnectionItem.id)
                    .join(BudgetAccountLink, BudgetAccountLink.account_id == AggregatorAccount.id)
                    .where(BudgetAccountLink.budget_id == budget_id)
                    .distinct()
                    .order_by(ConnectionItem.id)
                ).all()
            )

    def sync_budget(self, budget_id: int, max_workers: Optional[int] = None) -> SyncReport:
        item_ids = self.item_ids_for_budget(budget_id)
        if not item_ids:
            logger.info(f"sync_budget: budget_id={budget_id} items=0")
            return SyncReport()
        return self.sync_items(item_ids, max_workers)

    def sync_all(self, max_workers: Optional[int] = None) -> SyncReport:
        with self.session_factory() as session:
            item_ids = list(
                session.scalars(select(ConnectionItem.id).order_by(ConnectionItem.id)).all()
            )
        return self.sync_items(item_ids, max_workers)
