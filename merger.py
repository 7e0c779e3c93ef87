from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from errors import DataIntegrityError
from identifiers import IdentifierGenerator
from linker import ProjectionDraft
from models import (
    BudgetTransaction,
    RecurringGroup,
    Transaction,
    TransactionStatus,
    budget_transaction_tags,
)


logger = logging.getLogger(__name__)


@dataclass
class TransactionDraft:
    """A normalized transaction waiting to be written."""

    date: date
    amount_cents: int
    status: TransactionStatus = TransactionStatus.posted
    external_id: Optional[str] = None
    user_tx_id: Optional[str] = None
    account_id: Optional[int] = None
    manual_account_name: Optional[str] = None
    merchant_name: Optional[str] = None
    payee: Optional[str] = None
    currency_code: str = "USD"
    category_id: Optional[int] = None
    provider_category: Optional[str] = None
    provider_category_confidence: Optional[str] = None
    raw: Optional[dict[str, Any]] = None

    @property
    def is_manual(self) -> bool:
        return self.external_id is None

    def values(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "account_id": self.account_id,
            "manual_account_name": self.manual_account_name,
            "date": self.date,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "merchant_name": self.merchant_name,
            "payee": self.payee,
            "currency_code": self.currency_code,
            "category_id": self.category_id,
            "provider_category": self.provider_category,
            "provider_category_confidence": self.provider_category_confidence,
            "raw_json": json.dumps(self.raw) if self.raw is not None else None,
        }


@dataclass(frozen=True)
class IdentityUpdate:
    """A posted event that replaces a stored pending transaction."""

    previous_external_id: str
    draft: TransactionDraft


@dataclass
class MergeResult:
    created: list[Transaction] = field(default_factory=list)
    updated: list[Transaction] = field(default_factory=list)

    @property
    def transactions(self) -> list[Transaction]:
        return self.created + self.updated


@dataclass
class RemovalResult:
    count: int = 0
    # (budget_id, transaction date) of every projection that went away
    scopes: list[tuple[int, date]] = field(default_factory=list)


def _dedupe(drafts: list[TransactionDraft]) -> list[TransactionDraft]:
    # the same event can show up in several pages; the latest one wins
    keyed: dict[object, TransactionDraft] = {}
    for draft in drafts:
        key: object = draft.external_id or draft.user_tx_id or id(draft)
        keyed.pop(key, None)
        keyed[key] = draft
    return list(keyed.values())


class TransactionMerger:
    def __init__(
        self,
        session: Session,
        id_generator: IdentifierGenerator,
        group_id_generator: Optional[IdentifierGenerator] = None,
    ) -> None:
        self.session = session
        self.ids = id_generator
        self.group_ids = group_id_generator or id_generator

    def _existing_by_external(self, external_ids: list[str]) -> dict[str, Transaction]:
        if not external_ids:
            return {}
        rows = self.session.scalars(
            select(Transaction).where(Transaction.external_id.in_(external_ids))
        ).all()
        return {row.external_id: row for row in rows}

    def _existing_by_user_tx_id(self, user_tx_ids: list[str]) -> dict[str, Transaction]:
        if not user_tx_ids:
            return {}
        rows = self.session.scalars(
            select(Transaction).where(Transaction.user_tx_id.in_(user_tx_ids))
        ).all()
        return {row.user_tx_id: row for row in rows}

    @staticmethod
    def _apply(row: Transaction, draft: TransactionDraft) -> None:
        values = draft.values()
        if draft.category_id is None:
            values.pop("category_id")
        if draft.raw is None:
            values.pop("raw_json")
        for key, value in values.items():
            setattr(row, key, value)

    def merge_transactions(self, drafts: list[TransactionDraft]) -> MergeResult:
        """Update rows that already exist, bulk insert the rest.

        Aggregator rows are matched on external id, manual rows on their
        user transaction id. An existing row keeps its user transaction id.
        """
        drafts = _dedupe(drafts)
        by_external = self._existing_by_external(
            [d.external_id for d in drafts if d.external_id]
        )
        by_user_tx_id = self._existing_by_user_tx_id(
            [d.user_tx_id for d in drafts if d.is_manual and d.user_tx_id]
        )

        result = MergeResult()
        new_rows: list[dict[str, Any]] = []
        for draft in drafts:
            if draft.external_id:
                existing = by_external.get(draft.external_id)
            else:
                existing = by_user_tx_id.get(draft.user_tx_id or "")
            if existing is not None:
                self._apply(existing, draft)
                result.updated.append(existing)
                continue

            user_tx_id = draft.user_tx_id
            if not user_tx_id:
                if draft.is_manual:
                    user_tx_id = self.ids.for_manual(draft.date, draft.merchant_name)
                else:
                    user_tx_id = self.ids.for_aggregator(draft.date, draft.external_id)
            new_rows.append({**draft.values(), "user_tx_id": user_tx_id})

        self.session.flush()
        if new_rows:
            ids = self.bulk_insert(new_rows)
            result.created = list(
                self.session.scalars(
                    select(Transaction)
                    .where(Transaction.id.in_(ids))
                    .order_by(Transaction.id)
                ).all()
            )
        logger.info(
            f"merge_transactions: created={len(result.created)} updated={len(result.updated)}"
        )
        return result

    def _insert_returning_ids(self, rows: list[dict[str, Any]]) -> list[int]:
        stmt = insert(Transaction).returning(
            Transaction.id, sort_by_parameter_order=True
        )
        return list(self.session.scalars(stmt, rows).all())

    def bulk_insert(self, rows: list[dict[str, Any]]) -> list[int]:
        """Insert all rows in one statement and return their ids in order."""
        ids = self._insert_returning_ids(rows)
        if len(ids) != len(rows):
            sample = rows[0].get("external_id") or rows[0].get("user_tx_id")
            logger.error(
                f"bulk_insert_mismatch: submitted={len(rows)} returned={len(ids)} sample={sample}"
            )
            raise DataIntegrityError(
                "Bulk insert returned a different number of ids",
                submitted=len(rows),
                returned=len(ids),
                sample=sample,
            )
        return ids

    def apply_identity_update(self, update: IdentityUpdate) -> Optional[Transaction]:
        """Rewrite a stored pending transaction in place with its posted values.

        Returns None when there is no stored row for the pending id, or when
        the posted id is already stored separately; the caller then handles
        the posted event as an ordinary add.
        """
        row = self.session.scalar(
            select(Transaction).where(
                Transaction.external_id == update.previous_external_id
            )
        )
        if row is None:
            return None
        new_id = update.draft.external_id
        clash = self.session.scalar(
            select(Transaction.id).where(
                Transaction.external_id == new_id, Transaction.id != row.id
            )
        )
        if clash is not None:
            logger.warning(
                f"identity_update_clash: previous_id={update.previous_external_id} new_id={new_id}"
            )
            return None
        self._apply(row, update.draft)
        self.session.flush()
        logger.info(
            f"identity_update: transaction_id={row.id} previous_id={update.previous_external_id} new_id={new_id}"
        )
        return row

    def delete_by_external_ids(self, external_ids: list[str]) -> RemovalResult:
        if not external_ids:
            return RemovalResult()
        txn_rows = self.session.execute(
            select(Transaction.id, Transaction.date).where(
                Transaction.external_id.in_(external_ids)
            )
        ).all()
        if not txn_rows:
            return RemovalResult()
        txn_ids = [row.id for row in txn_rows]
        dates = {row.id: row.date for row in txn_rows}
        projections = self.session.execute(
            select(BudgetTransaction.id, BudgetTransaction.budget_id, BudgetTransaction.transaction_id)
            .where(BudgetTransaction.transaction_id.in_(txn_ids))
        ).all()
        scopes = [(p.budget_id, dates[p.transaction_id]) for p in projections]
        if projections:
            self.session.execute(
                delete(budget_transaction_tags).where(
                    budget_transaction_tags.c.budget_transaction_id.in_(
                        [p.id for p in projections]
                    )
                )
            )
            self.session.execute(
                delete(BudgetTransaction).where(
                    BudgetTransaction.transaction_id.in_(txn_ids)
                )
            )
        self.session.execute(delete(Transaction).where(Transaction.id.in_(txn_ids)))
        self._prune_recurring(set(txn_ids))
        self.session.flush()
        logger.info(f"delete_transactions: count={len(txn_ids)}")
        return RemovalResult(count=len(txn_ids), scopes=scopes)

    def _prune_recurring(self, txn_ids: set[int]) -> None:
        groups = self.session.scalars(
            select(RecurringGroup).where(RecurringGroup.is_active.is_(True))
        ).all()
        for group in groups:
            members = group.transaction_ids
            remaining = [txn_id for txn_id in members if txn_id not in txn_ids]
            if len(remaining) == len(members):
                continue
            group.transaction_ids = remaining
            if not remaining:
                group.is_active = False

    def merge_projections(self, drafts: list[ProjectionDraft]) -> list[BudgetTransaction]:
        """Upsert budget projections keyed on (budget, transaction).

        Existing projections only get their link refreshed so user edits
        (category, notes, tags) survive a re-sync. Returns the new rows.
        """
        if not drafts:
            return []
        txn_ids = {draft.transaction_id for draft in drafts}
        existing = {
            (row.budget_id, row.transaction_id): row
            for row in self.session.scalars(
                select(BudgetTransaction).where(
                    BudgetTransaction.transaction_id.in_(txn_ids)
                )
            ).all()
        }
        created: list[BudgetTransaction] = []
        for draft in drafts:
            key = (draft.budget_id, draft.transaction_id)
            current = existing.get(key)
            if current is not None:
                current.link_id = draft.link_id
                continue
            row = BudgetTransaction(
                budget_id=draft.budget_id,
                transaction_id=draft.transaction_id,
                link_id=draft.link_id,
                category_id=draft.category_id,
                merchant_name=draft.merchant_name,
                payee=draft.payee,
            )
            self.session.add(row)
            existing[key] = row
            created.append(row)
        self.session.flush()
        return created

    def upsert_recurring_group(
        self,
        existing: Optional[RecurringGroup],
        transaction_ids: list[int],
        *,
        id_seed: tuple[date, Optional[str]],
        **values: Any,
    ) -> RecurringGroup:
        group = existing
        if group is None:
            group = RecurringGroup(user_tx_id=self.group_ids.for_aggregator(*id_seed))
            self.session.add(group)
        group.transaction_ids = transaction_ids
        for key, value in values.items():
            setattr(group, key, value)
        self.session.flush()
        return group
