from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from aggregator import amount_to_cents
from merger import TransactionMerger
from models import AggregatorAccount, RecurringGroup, Transaction


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)

GroupKey = tuple[str, int, str]


def recurrence_info(raw: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """The enrichment recurrence block, if it flags the transaction as recurring."""
    enrichments = (raw or {}).get("enrichments") or {}
    info = enrichments.get("recurrence") or {}
    if not info.get("is_recurring"):
        return None
    return info


def group_key(txn: Transaction) -> Optional[GroupKey]:
    info = recurrence_info(txn.raw)
    if info is None:
        return None
    merchant = (txn.merchant_name or txn.payee or "").strip().lower()
    frequency = str(info.get("frequency") or "UNKNOWN").strip().upper()
    return (merchant, abs(txn.amount_cents), frequency)


@dataclass(frozen=True)
class RecurringCandidate:
    key: GroupKey
    # canonical (earliest) member first
    transaction_ids: tuple[int, ...]
    merchant_name: Optional[str]
    amount_cents: int
    frequency: str
    category_id: Optional[int]
    account_id: Optional[int]
    canonical_date: date
    canonical_external_id: Optional[str]

    @property
    def canonical_id(self) -> int:
        return self.transaction_ids[0]


class RecurrenceDetector:
    def __init__(
        self,
        session: Session,
        merger: TransactionMerger,
        category_for: Optional[Callable[[Optional[str]], Optional[int]]] = None,
    ) -> None:
        self.session = session
        self.merger = merger
        self.category_for = category_for

    def detect(self, transactions: Iterable[Transaction]) -> list[RecurringCandidate]:
        buckets: dict[GroupKey, list[Transaction]] = {}
        for txn in transactions:
            key = group_key(txn)
            if key is not None:
                buckets.setdefault(key, []).append(txn)

        candidates: list[RecurringCandidate] = []
        for key, members in buckets.items():
            members = sorted({m.id: m for m in members}.values(), key=lambda t: (t.date, t.id))
            canonical = members[0]
            candidates.append(
                RecurringCandidate(
                    key=key,
                    transaction_ids=tuple(m.id for m in members),
                    merchant_name=canonical.merchant_name or canonical.payee,
                    amount_cents=key[1],
                    frequency=key[2],
                    category_id=canonical.category_id,
                    account_id=canonical.account_id,
                    canonical_date=canonical.date,
                    canonical_external_id=canonical.external_id or canonical.user_tx_id,
                )
            )
        return candidates

    def _active_groups(self) -> list[RecurringGroup]:
        return list(
            self.session.scalars(
                select(RecurringGroup)
                .where(RecurringGroup.is_active.is_(True))
                .order_by(RecurringGroup.id)
            ).all()
        )

    def merge(self, candidates: list[RecurringCandidate]) -> list[RecurringGroup]:
        """Create one group per candidate or fold it into existing groups.

        When members already belong to groups, everything is unioned into the
        group with the oldest ``updated_at`` (lowest id on a tie) and the other
        groups are deleted.
        """
        owner: dict[int, RecurringGroup] = {}
        for group in self._active_groups():
            for txn_id in group.transaction_ids:
                owner.setdefault(txn_id, group)

        touched: list[RecurringGroup] = []
        deleted: set[int] = set()
        for candidate in candidates:
            matched = {
                owner[txn_id].id: owner[txn_id]
                for txn_id in candidate.transaction_ids
                if txn_id in owner
            }
            if matched:
                ordered = sorted(
                    matched.values(), key=lambda g: (g.updated_at or EPOCH, g.id)
                )
                keeper, redundant = ordered[0], ordered[1:]
                ids = list(keeper.transaction_ids)
                for group in redundant:
                    ids.extend(group.transaction_ids)
                ids.extend(candidate.transaction_ids)
                merged_ids = list(dict.fromkeys(ids))
                for group in redundant:
                    logger.info(
                        f"recurring_group_merged: kept={keeper.user_tx_id} deleted={group.user_tx_id}"
                    )
                    deleted.add(group.id)
                    self.session.delete(group)
                group = self.merger.upsert_recurring_group(
                    keeper,
                    merged_ids,
                    id_seed=(candidate.canonical_date, candidate.canonical_external_id),
                    frequency=candidate.frequency,
                )
            else:
                group = self.merger.upsert_recurring_group(
                    None,
                    list(candidate.transaction_ids),
                    id_seed=(candidate.canonical_date, candidate.canonical_external_id),
                    merchant_name=candidate.merchant_name,
                    amount_cents=candidate.amount_cents,
                    frequency=candidate.frequency,
                    category_id=candidate.category_id,
                    account_id=candidate.account_id,
                    raw_json=json.dumps(
                        {"key": list(candidate.key), "canonical_id": candidate.canonical_id}
                    ),
                )
                logger.info(
                    f"recurring_group_created: user_tx_id={group.user_tx_id} members={len(candidate.transaction_ids)}"
                )
            for txn_id in group.transaction_ids:
                owner[txn_id] = group
            touched.append(group)

        self.session.flush()
        unique = {group.id: group for group in touched if group.id not in deleted}
        return list(unique.values())

    def merge_streams(self, streams: list[dict[str, Any]]) -> list[RecurringGroup]:
        """Upsert aggregator-detected recurring streams keyed on stream id."""
        if not streams:
            return []
        external_ids = {
            ext_id for stream in streams for ext_id in stream.get("transaction_ids") or []
        }
        by_external = {
            txn.external_id: txn
            for txn in self.session.scalars(
                select(Transaction).where(Transaction.external_id.in_(external_ids))
            ).all()
        }
        account_ids = {
            account.external_account_id: account.id
            for account in self.session.scalars(select(AggregatorAccount)).all()
        }

        groups: list[RecurringGroup] = []
        for stream in streams:
            stream_id = stream.get("stream_id")
            if not stream_id:
                logger.warning("recurring_stream_skipped: reason=missing_stream_id")
                continue
            members = [
                by_external[ext_id]
                for ext_id in stream.get("transaction_ids") or []
                if ext_id in by_external
            ]
            member_ids = list(dict.fromkeys(m.id for m in members))
            existing = self.session.scalar(
                select(RecurringGroup).where(
                    RecurringGroup.external_stream_id == stream_id
                )
            )
            seed_date = min((m.date for m in members), default=None)
            if seed_date is None and stream.get("first_date"):
                seed_date = date.fromisoformat(str(stream["first_date"]))
            average = (stream.get("average_amount") or {}).get("amount") or 0
            label = (stream.get("personal_finance_category") or {}).get("detailed")
            group = self.merger.upsert_recurring_group(
                existing,
                member_ids,
                id_seed=(seed_date or date.today(), stream_id),
                external_stream_id=stream_id,
                merchant_name=stream.get("merchant_name") or stream.get("description"),
                amount_cents=abs(amount_to_cents(average)),
                frequency=str(stream.get("frequency") or "UNKNOWN").upper(),
                account_id=account_ids.get(stream.get("account_id")),
                category_id=self.category_for(label) if self.category_for else None,
                raw_json=json.dumps(stream),
                is_active=bool(stream.get("is_active", True)),
            )
            self._release_members(group, set(member_ids))
            groups.append(group)
        self.session.flush()
        logger.info(f"recurring_streams_merged: count={len(groups)}")
        return groups

    def _release_members(self, keeper: RecurringGroup, member_ids: set[int]) -> None:
        # a transaction may only sit in one active group
        for group in self._active_groups():
            if group.id == keeper.id:
                continue
            remaining = [t for t in group.transaction_ids if t not in member_ids]
            if len(remaining) != len(group.transaction_ids):
                group.transaction_ids = remaining
                if not remaining:
                    group.is_active = False
