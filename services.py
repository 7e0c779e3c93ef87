from __future__ import annotations

import json
import logging
import time
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload, selectinload

from aggregator import AggregatorClient, call_with_retry
from categories import (
    closest_name,
    load_category_groups,
    load_category_mapping,
    resolver_for_budget,
)
from config import Settings, get_settings
from errors import AggregatorError, NotFoundError
from identifiers import IdentifierGenerator, store_lookup
from linker import ProjectionDraft
from merger import TransactionDraft, TransactionMerger
from models import (
    Budget,
    BudgetAccountLink,
    BudgetTransaction,
    Category,
    CategoryGroup,
    RecurringGroup,
    Rule,
    SpendingCategoryRollup,
    SpendingGroupRollup,
    Tag,
    TargetSource,
    Transaction,
    TransactionStatus,
)
from periods import month_end, month_key, parse_month, validate_months
from recurrence import RecurrenceDetector
from rules import RuleDefinition, RuleTarget, apply_rules
from schemas import (
    BudgetTransactionPatch,
    CategoryGroupIn,
    CategoryIn,
    ManualTransactionIn,
    RuleIn,
    SpendingTargetsIn,
)
from seed import OTHER_NAME
from spending import (
    CategorySpend,
    GroupSpend,
    MonthTracking,
    SpendItem,
    calculate_spending_trackings,
    cents,
)


logger = logging.getLogger(__name__)


def get_budget(session: Session, budget_id: int) -> Budget:
    budget = session.get(Budget, budget_id)
    if not budget:
        raise NotFoundError("Budget not found")
    return budget


def _merger(session: Session, settings: Settings) -> TransactionMerger:
    return TransactionMerger(
        session,
        IdentifierGenerator(
            store_lookup(session, Transaction.user_tx_id),
            max_batches=settings.id_max_batches,
        ),
        IdentifierGenerator(
            store_lookup(session, RecurringGroup.user_tx_id),
            max_batches=settings.id_max_batches,
        ),
    )


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def groups_for_budget(self, budget_id: Optional[int] = None):
        return load_category_groups(self.session, budget_id)

    def create_group(self, budget_id: int, data: CategoryGroupIn) -> CategoryGroup:
        get_budget(self.session, budget_id)
        clean_name = data.name.strip()
        clash = self.session.scalar(
            select(CategoryGroup).where(
                (CategoryGroup.budget_id == budget_id)
                | CategoryGroup.budget_id.is_(None),
                func.lower(CategoryGroup.name) == clean_name.lower(),
            )
        )
        if clash:
            raise ValueError("Category group with this name already exists")
        max_order = self.session.scalar(select(func.max(CategoryGroup.order))) or 0
        group = CategoryGroup(
            budget_id=budget_id,
            name=clean_name,
            description=data.description,
            order=max_order + 1,
        )
        self.session.add(group)
        self.session.commit()
        self.session.refresh(group)
        return group

    def create_category(self, budget_id: int, data: CategoryIn) -> Category:
        get_budget(self.session, budget_id)
        group = self.session.get(CategoryGroup, data.group_id)
        if not group or group.budget_id not in (None, budget_id):
            raise NotFoundError("Category group not found")

        clean_name = data.name.strip()
        known_names = [
            category.name
            for entry in self.groups_for_budget(budget_id)
            for category in entry.categories
        ]
        if clean_name.lower() in {name.lower() for name in known_names}:
            raise ValueError("Category with this name already exists")

        # typed component names tolerate one typo and are stored canonical
        parts = []
        for part in data.composite:
            match = closest_name(part.category_name, known_names)
            if match is None:
                raise ValueError(f"Unknown composite category '{part.category_name}'")
            parts.append({"category_name": match, "weight": str(part.weight)})

        category = Category(
            group_id=group.id,
            budget_id=budget_id,
            name=clean_name,
            description=data.description,
            order=data.order,
            is_composite=bool(data.composite),
            composite_json=json.dumps(parts) if parts else None,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TagService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.budget_id == self.budget_id).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.budget_id == self.budget_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(budget_id=self.budget_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def by_ids(self, tag_ids: Iterable[int]) -> list[Tag]:
        wanted = list(dict.fromkeys(tag_ids))
        if not wanted:
            return []
        tags = {
            tag.id: tag
            for tag in self.session.scalars(
                select(Tag).where(Tag.budget_id == self.budget_id, Tag.id.in_(wanted))
            ).all()
        }
        missing = [tag_id for tag_id in wanted if tag_id not in tags]
        if missing:
            raise ValueError(f"Tag not found: {missing[0]}")
        return [tags[tag_id] for tag_id in wanted]


class RuleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, budget_id: int) -> list[Rule]:
        budget = get_budget(self.session, budget_id)
        rules = {
            rule.id: rule
            for rule in self.session.scalars(
                select(Rule).where(Rule.budget_id == budget_id).order_by(Rule.id)
            ).all()
        }
        ordered = [rules.pop(rule_id) for rule_id in budget.rule_order if rule_id in rules]
        return ordered + list(rules.values())

    def get(self, budget_id: int, rule_id: int) -> Rule:
        rule = self.session.get(Rule, rule_id)
        if not rule or rule.budget_id != budget_id:
            raise NotFoundError("Rule not found")
        return rule

    def _validate(self, budget_id: int, data: RuleIn) -> None:
        category_id = data.actions.set_category.category_id
        if data.actions.set_category.enabled and category_id is not None:
            known = {
                category.id
                for group in load_category_groups(self.session, budget_id)
                for category in group.categories
            }
            if category_id not in known:
                raise ValueError("Category not found")
        if data.actions.add_tags.enabled:
            TagService(self.session, budget_id).by_ids(data.actions.add_tags.tag_ids)
        link_id = data.conditions.account.link_id
        if data.conditions.account.enabled and link_id is not None:
            link = self.session.get(BudgetAccountLink, link_id)
            if not link or link.budget_id != budget_id:
                raise ValueError("Account link not found")

    def create(self, budget_id: int, data: RuleIn) -> Rule:
        budget = get_budget(self.session, budget_id)
        self._validate(budget_id, data)
        rule = Rule(
            budget_id=budget_id,
            name=data.name.strip(),
            description=data.description,
            is_active=data.is_active,
            applies_to_history=data.applies_to_history,
            conditions_json=data.conditions.model_dump_json(),
            actions_json=data.actions.model_dump_json(),
        )
        self.session.add(rule)
        self.session.flush()
        budget.rule_order = budget.rule_order + [rule.id]
        self.session.commit()
        self.session.refresh(rule)
        if rule.applies_to_history and rule.is_active:
            self.apply_to_history(rule)
        return rule

    def update(self, budget_id: int, rule_id: int, data: RuleIn) -> Rule:
        rule = self.get(budget_id, rule_id)
        self._validate(budget_id, data)
        rule.name = data.name.strip()
        rule.description = data.description
        rule.is_active = data.is_active
        rule.applies_to_history = data.applies_to_history
        rule.conditions_json = data.conditions.model_dump_json()
        rule.actions_json = data.actions.model_dump_json()
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete(self, budget_id: int, rule_id: int) -> None:
        rule = self.get(budget_id, rule_id)
        budget = get_budget(self.session, budget_id)
        budget.rule_order = [rid for rid in budget.rule_order if rid != rule.id]
        self.session.delete(rule)
        self.session.commit()

    def set_order(self, budget_id: int, rule_ids: list[int]) -> list[Rule]:
        budget = get_budget(self.session, budget_id)
        if len(set(rule_ids)) != len(rule_ids):
            raise ValueError("Rule order contains duplicates")
        known = set(
            self.session.scalars(select(Rule.id).where(Rule.budget_id == budget_id)).all()
        )
        unknown = [rule_id for rule_id in rule_ids if rule_id not in known]
        if unknown:
            raise ValueError(f"Unknown rule ids: {unknown}")
        budget.rule_order = rule_ids
        self.session.commit()
        return self.list_all(budget_id)

    @staticmethod
    def _target(row: BudgetTransaction) -> RuleTarget:
        txn = row.transaction
        return RuleTarget(
            key=row.id,
            amount_cents=txn.amount_cents,
            date=txn.date,
            link_id=row.link_id,
            merchant_name=row.merchant_name or txn.merchant_name,
            payee=row.payee or txn.payee,
            category_id=row.category_id,
            notes=row.notes,
            tag_ids=tuple(tag.id for tag in row.tags),
        )

    def _write_back(
        self, row: BudgetTransaction, before: RuleTarget, after: RuleTarget
    ) -> bool:
        if before == after:
            return False
        row.category_id = after.category_id
        row.notes = after.notes
        if after.merchant_name != before.merchant_name:
            row.merchant_name = after.merchant_name
            row.transaction.merchant_name = after.merchant_name
        if after.tag_ids != before.tag_ids:
            row.tags = TagService(self.session, row.budget_id).by_ids(after.tag_ids)
        return True

    def _run(
        self,
        budget_id: int,
        rows: list[BudgetTransaction],
        definitions: list[RuleDefinition],
        order: list[int],
    ) -> int:
        if not rows or not definitions:
            return 0
        before = [self._target(row) for row in rows]
        after = apply_rules(before, definitions, order)
        changed = 0
        for row, old, new in zip(rows, before, after):
            if self._write_back(row, old, new):
                changed += 1
        self.session.flush()
        logger.info(
            f"rules_applied: budget_id={budget_id} rows={len(rows)} changed={changed}"
        )
        return changed

    def apply_to_projections(
        self, budget_id: int, rows: list[BudgetTransaction]
    ) -> int:
        """Run every active rule of the budget over freshly created projections.

        Flushes only; the caller owns the transaction.
        """
        budget = get_budget(self.session, budget_id)
        rules = self.session.scalars(
            select(Rule).where(Rule.budget_id == budget_id, Rule.is_active.is_(True))
        ).all()
        definitions = [RuleDefinition.from_model(rule) for rule in rules]
        return self._run(budget_id, rows, definitions, budget.rule_order)

    def apply_to_history(self, rule: Rule) -> int:
        rows = list(
            self.session.scalars(
                select(BudgetTransaction)
                .options(
                    joinedload(BudgetTransaction.transaction),
                    selectinload(BudgetTransaction.tags),
                )
                .where(BudgetTransaction.budget_id == rule.budget_id)
                .order_by(BudgetTransaction.id)
            ).all()
        )
        changed = self._run(
            rule.budget_id, rows, [RuleDefinition.from_model(rule)], [rule.id]
        )
        self.session.commit()
        return changed


class EnrichmentService:
    """Asks the aggregator to enrich manually entered transactions."""

    def __init__(
        self,
        session: Session,
        client: AggregatorClient,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.client = client
        self.settings = settings or get_settings()
        self.sleep = sleep

    @staticmethod
    def _payload(txn: Transaction) -> dict[str, object]:
        return {
            "id": txn.user_tx_id,
            "description": txn.merchant_name or txn.payee or "",
            "amount": float(abs(Decimal(txn.amount_cents) / 100)),
            "direction": "OUTFLOW" if txn.amount_cents >= 0 else "INFLOW",
            "iso_currency_code": txn.currency_code,
            "date_posted": txn.date.isoformat(),
        }

    def enrich_manual(
        self, transactions: list[Transaction], *, recategorize: bool = True
    ) -> list[Transaction]:
        candidates = [
            txn for txn in transactions if txn.external_id is None and not txn.raw_json
        ]
        if not candidates:
            return []
        payload = [self._payload(txn) for txn in candidates]
        try:
            enriched = call_with_retry(
                lambda: self.client.enrich(payload),
                delay_secs=self.settings.aggregator_retry_delay_secs,
                label="enrich",
                sleep=self.sleep,
            )
        except AggregatorError as exc:
            logger.warning(f"enrich_skipped: count={len(candidates)} error={exc}")
            return []

        by_id = {str(item.get("id")): item for item in enriched}
        mapping = load_category_mapping(self.settings.category_map_path)
        resolver = resolver_for_budget(self.session, mapping)
        updated: list[Transaction] = []
        for txn in candidates:
            item = by_id.get(txn.user_tx_id)
            if not item:
                continue
            txn.raw_json = json.dumps(item)
            enrichments = item.get("enrichments") or {}
            txn.merchant_name = txn.merchant_name or enrichments.get("merchant_name")
            pfc = (
                enrichments.get("personal_finance_category")
                or item.get("personal_finance_category")
                or {}
            )
            label = pfc.get("detailed")
            if label:
                txn.provider_category = label
                txn.provider_category_confidence = pfc.get("confidence_level")
                if recategorize:
                    previous = txn.category_id
                    txn.category_id = resolver.resolve_one(label).category_id
                    for projection in txn.projections:
                        if projection.category_id in (None, previous):
                            projection.category_id = txn.category_id
            updated.append(txn)
        self.session.flush()

        detector = RecurrenceDetector(self.session, _merger(self.session, self.settings))
        detector.merge(detector.detect(updated))
        self.session.commit()
        logger.info(f"enrich_manual: requested={len(candidates)} enriched={len(updated)}")
        return updated


class TransactionService:
    def __init__(
        self,
        session: Session,
        client: Optional[AggregatorClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.client = client
        self.settings = settings or get_settings()

    def create_manual(self, data: ManualTransactionIn) -> Transaction:
        if data.budget_id is not None:
            get_budget(self.session, data.budget_id)
        mapping = load_category_mapping(self.settings.category_map_path)
        resolver = resolver_for_budget(self.session, mapping, data.budget_id)
        if data.category_id is not None and resolver.by_id(data.category_id) is None:
            raise ValueError("Category not found")
        category_id = data.category_id or resolver.fallback.category_id

        merger = _merger(self.session, self.settings)
        draft = TransactionDraft(
            date=data.date,
            amount_cents=data.amount_cents,
            status=TransactionStatus.posted,
            manual_account_name=data.account_name,
            merchant_name=data.merchant_name,
            payee=data.payee,
            currency_code=data.currency_code,
            category_id=category_id,
        )
        txn = merger.merge_transactions([draft]).created[0]
        if data.budget_id is not None:
            created = merger.merge_projections(
                [
                    ProjectionDraft(
                        budget_id=data.budget_id,
                        link_id=None,
                        transaction_id=txn.id,
                        category_id=category_id,
                        merchant_name=txn.merchant_name,
                        payee=txn.payee,
                    )
                ]
            )
            for row in created:
                row.notes = data.notes
            RuleService(self.session).apply_to_projections(data.budget_id, created)
        self.session.commit()
        logger.info(f"manual_transaction_created: user_tx_id={txn.user_tx_id}")

        if self.client is not None:
            EnrichmentService(self.session, self.client, self.settings).enrich_manual(
                [txn], recategorize=data.category_id is None
            )
        if data.budget_id is not None:
            SpendingService(self.session).refresh_months(
                data.budget_id, [month_key(txn.date)]
            )
            self.session.commit()
        self.session.refresh(txn)
        return txn

    def list_for_budget(
        self,
        budget_id: int,
        *,
        month: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BudgetTransaction]:
        get_budget(self.session, budget_id)
        stmt = (
            select(BudgetTransaction)
            .join(Transaction, BudgetTransaction.transaction_id == Transaction.id)
            .options(
                joinedload(BudgetTransaction.transaction),
                joinedload(BudgetTransaction.category),
                selectinload(BudgetTransaction.tags),
            )
            .where(BudgetTransaction.budget_id == budget_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        if month:
            start = parse_month(month)
            stmt = stmt.where(Transaction.date.between(start, month_end(start)))
        return list(self.session.scalars(stmt).all())

    def get_projection(self, budget_id: int, transaction_id: int) -> BudgetTransaction:
        row = self.session.scalar(
            select(BudgetTransaction).where(
                BudgetTransaction.budget_id == budget_id,
                BudgetTransaction.transaction_id == transaction_id,
            )
        )
        if not row:
            raise NotFoundError("Transaction not found")
        return row

    def update_projection(
        self, budget_id: int, transaction_id: int, patch: BudgetTransactionPatch
    ) -> BudgetTransaction:
        row = self.get_projection(budget_id, transaction_id)
        previous_month = month_key(row.transaction.date)
        if patch.category_id is not None:
            known = {
                category.id
                for group in load_category_groups(self.session, budget_id)
                for category in group.categories
            }
            if patch.category_id not in known:
                raise ValueError("Category not found")
            row.category_id = patch.category_id
        if patch.merchant_name is not None:
            row.merchant_name = patch.merchant_name.strip() or None
        if patch.notes is not None:
            row.notes = patch.notes
        if patch.tags is not None:
            tags = TagService(self.session, budget_id)
            row.tags = [tags.get_or_create(name) for name in patch.tags if name.strip()]
        self.session.flush()
        SpendingService(self.session).refresh_months(budget_id, [previous_month])
        self.session.commit()
        self.session.refresh(row)
        return row


def serialize_group_rollup(row: SpendingGroupRollup) -> dict[str, object]:
    return {
        "group_name": row.group_name,
        "target_source": row.target_source.value,
        "spending_actual_cents": row.actual_cents,
        "spending_target_cents": row.target_cents,
        "is_tax_deductible": row.is_tax_deductible,
        "categories": [
            {
                "category_name": category.category_name,
                "spending_actual_cents": category.actual_cents,
                "spending_target_cents": category.target_cents,
                "is_tax_deductible": category.is_tax_deductible,
            }
            for category in row.categories
        ],
    }


class SpendingService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _items(self, budget_id: int, months: Optional[list[str]]) -> list[SpendItem]:
        stmt = (
            select(BudgetTransaction)
            .options(
                joinedload(BudgetTransaction.transaction),
                joinedload(BudgetTransaction.category).joinedload(Category.group),
            )
            .where(BudgetTransaction.budget_id == budget_id)
        )
        wanted = set(months) if months is not None else None
        items: list[SpendItem] = []
        for row in self.session.scalars(stmt).unique().all():
            txn = row.transaction
            if wanted is not None and month_key(txn.date) not in wanted:
                continue
            category = row.category
            components: tuple[tuple[str, Decimal], ...] = ()
            if category is not None and category.is_composite:
                components = tuple(
                    (str(part["category_name"]), Decimal(str(part["weight"])))
                    for part in category.composite_parts
                )
            items.append(
                SpendItem(
                    date=txn.date,
                    amount_cents=txn.amount_cents,
                    category_name=category.name if category else None,
                    group_name=category.group.name if category else None,
                    components=components,
                )
            )
        return items

    def _rows(
        self, budget_id: int, months: Optional[list[str]] = None
    ) -> list[SpendingGroupRollup]:
        stmt = (
            select(SpendingGroupRollup)
            .options(selectinload(SpendingGroupRollup.categories))
            .where(SpendingGroupRollup.budget_id == budget_id)
            .order_by(SpendingGroupRollup.month, SpendingGroupRollup.id)
        )
        if months is not None:
            stmt = stmt.where(SpendingGroupRollup.month.in_(months))
        return list(self.session.scalars(stmt).all())

    def _existing(self, budget_id: int, months: Optional[list[str]]) -> dict[str, MonthTracking]:
        existing: dict[str, MonthTracking] = {}
        for row in self._rows(budget_id, months):
            group = GroupSpend(
                name=row.group_name,
                target_source=row.target_source,
                target_cents=row.target_cents,
                is_tax_deductible=row.is_tax_deductible,
            )
            for category in row.categories:
                group.categories[category.category_name] = CategorySpend(
                    name=category.category_name,
                    target_cents=category.target_cents,
                    is_tax_deductible=category.is_tax_deductible,
                )
            existing.setdefault(row.month, {})[row.group_name] = group
        return existing

    def _store(self, budget_id: int, trackings: dict[str, MonthTracking]) -> None:
        stored: dict[tuple[str, str], SpendingGroupRollup] = {
            (row.month, row.group_name): row
            for row in self._rows(budget_id, list(trackings))
        }
        for month, tracking in trackings.items():
            for group in tracking.values():
                row = stored.pop((month, group.name), None)
                if row is None:
                    row = SpendingGroupRollup(
                        budget_id=budget_id,
                        month=month,
                        group_name=group.name,
                        target_source=group.target_source,
                        target_cents=group.target_cents,
                        is_tax_deductible=group.is_tax_deductible,
                    )
                    self.session.add(row)
                row.actual_cents = cents(group.actual)
                by_name = {c.category_name: c for c in row.categories}
                for category in group.categories.values():
                    category_row = by_name.pop(category.name, None)
                    if category_row is None:
                        category_row = SpendingCategoryRollup(
                            category_name=category.name,
                            target_cents=category.target_cents,
                            is_tax_deductible=category.is_tax_deductible,
                        )
                        row.categories.append(category_row)
                    category_row.actual_cents = cents(category.actual)
                for stale in by_name.values():
                    stale.actual_cents = 0
        # groups that no longer exist keep their targets but lose their actuals
        for stale_group in stored.values():
            stale_group.actual_cents = 0
            for category_row in stale_group.categories:
                category_row.actual_cents = 0
        self.session.flush()

    def refresh_months(
        self, budget_id: int, months: list[str]
    ) -> dict[str, MonthTracking]:
        """Recompute actuals for the given months. Flushes only."""
        months = list(dict.fromkeys(months))
        if not months:
            return {}
        trackings = calculate_spending_trackings(
            self._items(budget_id, months),
            load_category_groups(self.session, budget_id),
            existing=self._existing(budget_id, months),
            months=months,
        )
        self._store(budget_id, trackings)
        logger.info(f"spending_refreshed: budget_id={budget_id} months={','.join(months)}")
        return trackings

    def recalculate(self, budget_id: int, months: list[str]) -> dict[str, list[dict[str, object]]]:
        get_budget(self.session, budget_id)
        clean = validate_months(months)
        self.refresh_months(budget_id, clean)
        self.session.commit()
        return self.tracking(budget_id, clean)

    def rebuild(self, budget_id: int, today: Optional[date] = None) -> dict[str, list[dict[str, object]]]:
        get_budget(self.session, budget_id)
        trackings = calculate_spending_trackings(
            self._items(budget_id, None),
            load_category_groups(self.session, budget_id),
            existing=self._existing(budget_id, None),
            today=today,
        )
        self._store(budget_id, trackings)
        self.session.commit()
        return self.tracking(budget_id, list(trackings))

    def tracking(
        self, budget_id: int, months: Optional[list[str]] = None
    ) -> dict[str, list[dict[str, object]]]:
        result: dict[str, list[dict[str, object]]] = {}
        for row in self._rows(budget_id, months):
            result.setdefault(row.month, []).append(serialize_group_rollup(row))
        return result

    def update_targets(
        self, budget_id: int, data: SpendingTargetsIn
    ) -> dict[str, list[dict[str, object]]]:
        get_budget(self.session, budget_id)
        month = validate_months([data.month])[0]

        allowed: dict[str, set[str]] = {}
        for group in load_category_groups(self.session, budget_id):
            allowed.setdefault(group.name, set()).update(c.name for c in group.categories)
        allowed.setdefault(OTHER_NAME, set()).add(OTHER_NAME)
        for group_in in data.groups:
            if group_in.group_name not in allowed:
                raise ValueError(f"Unknown category group '{group_in.group_name}'")
            for category_in in group_in.categories:
                if category_in.category_name not in allowed[group_in.group_name]:
                    raise ValueError(
                        f"Unknown category '{category_in.category_name}' in group '{group_in.group_name}'"
                    )

        rows = {row.group_name: row for row in self._rows(budget_id, [month])}
        if any(group_in.group_name not in rows for group_in in data.groups):
            self.refresh_months(budget_id, [month])
            rows = {row.group_name: row for row in self._rows(budget_id, [month])}
        for group_in in data.groups:
            row = rows[group_in.group_name]
            row.target_source = TargetSource(group_in.target_source)
            row.target_cents = group_in.target_cents
            row.is_tax_deductible = group_in.is_tax_deductible
            categories = {c.category_name: c for c in row.categories}
            for category_in in group_in.categories:
                category_row = categories.get(category_in.category_name)
                if category_row is None:
                    category_row = SpendingCategoryRollup(
                        category_name=category_in.category_name
                    )
                    row.categories.append(category_row)
                category_row.target_cents = category_in.target_cents
                category_row.is_tax_deductible = category_in.is_tax_deductible
        self.session.commit()
        logger.info(f"spending_targets_updated: budget_id={budget_id} month={month}")
        return self.tracking(budget_id, [month])
