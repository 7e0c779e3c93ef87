"""Condition/action rules applied to budget transactions.

Nothing in here touches the database. ``RuleService`` turns rows into
``RuleDefinition``/``RuleTarget`` values, runs ``apply_rules`` and writes
the results back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Iterable, Optional

from pydantic import ValidationError

from models import Rule
from schemas import RuleActions, RuleConditions


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleTarget:
    key: int
    amount_cents: int
    date: date
    link_id: Optional[int] = None
    merchant_name: Optional[str] = None
    payee: Optional[str] = None
    category_id: Optional[int] = None
    notes: Optional[str] = None
    tag_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class RuleDefinition:
    id: int
    is_active: bool
    conditions: RuleConditions
    actions: RuleActions

    @classmethod
    def from_model(cls, rule: Rule) -> "RuleDefinition":
        return cls(
            id=rule.id,
            is_active=rule.is_active,
            conditions=RuleConditions.model_validate(json.loads(rule.conditions_json or "{}")),
            actions=RuleActions.model_validate(json.loads(rule.actions_json or "{}")),
        )


def _merchant_matches(target: RuleTarget, conditions: RuleConditions) -> bool:
    cond = conditions.merchant
    if not cond.enabled:
        return True
    needle = cond.value.strip().lower()
    if not needle:
        return True
    haystack = (target.merchant_name or target.payee or "").strip().lower()
    if cond.match_type == "exactly":
        return haystack == needle
    return needle in haystack


def _amount_matches(target: RuleTarget, conditions: RuleConditions) -> bool:
    cond = conditions.amount
    if not cond.enabled:
        return True
    if cond.direction == "expenses" and target.amount_cents < 0:
        return False
    if cond.direction == "income" and target.amount_cents >= 0:
        return False
    amount = abs(target.amount_cents)
    if cond.match_type == "between":
        if cond.range_start_cents is None or cond.range_end_cents is None:
            return False
        low, high = sorted((cond.range_start_cents, cond.range_end_cents))
        return low <= amount <= high
    if cond.value_cents is None:
        return True
    return amount == cond.value_cents


def _day_matches(target: RuleTarget, conditions: RuleConditions) -> bool:
    cond = conditions.day_of_month
    if not cond.enabled:
        return True
    day = target.date.day
    if cond.match_type == "between":
        if cond.range_start is None or cond.range_end is None:
            return False
        low, high = sorted((cond.range_start, cond.range_end))
        return low <= day <= high
    if cond.value is None:
        return True
    return day == cond.value


def _account_matches(target: RuleTarget, conditions: RuleConditions) -> bool:
    cond = conditions.account
    if not cond.enabled or cond.link_id is None:
        return True
    return target.link_id == cond.link_id


def matches(target: RuleTarget, rule: RuleDefinition) -> bool:
    conditions = rule.conditions
    return (
        _merchant_matches(target, conditions)
        and _amount_matches(target, conditions)
        and _day_matches(target, conditions)
        and _account_matches(target, conditions)
    )


def apply_actions(target: RuleTarget, rule: RuleDefinition) -> RuleTarget:
    actions = rule.actions
    changes: dict[str, object] = {}
    if actions.set_category.enabled and actions.set_category.category_id is not None:
        changes["category_id"] = actions.set_category.category_id
    if actions.rename_merchant.enabled and actions.rename_merchant.value.strip():
        changes["merchant_name"] = actions.rename_merchant.value.strip()
    if actions.set_note.enabled:
        changes["notes"] = actions.set_note.value
    if actions.add_tags.enabled:
        changes["tag_ids"] = tuple(dict.fromkeys(actions.add_tags.tag_ids))
    if not changes:
        return target
    return replace(target, **changes)


def order_rules(
    rules: Iterable[RuleDefinition], order: Iterable[int]
) -> list[RuleDefinition]:
    """Active rules in the budget's order; unlisted rules follow by id."""
    active = {rule.id: rule for rule in rules if rule.is_active}
    ordered: list[RuleDefinition] = []
    for rule_id in order:
        rule = active.pop(rule_id, None)
        if rule is not None:
            ordered.append(rule)
    ordered.extend(active[rule_id] for rule_id in sorted(active))
    return ordered


def apply_rules(
    targets: Iterable[RuleTarget],
    rules: Iterable[RuleDefinition],
    order: Iterable[int] = (),
) -> list[RuleTarget]:
    """Apply rules in order to every target. Later rules overwrite earlier ones."""
    ordered = order_rules(rules, order)
    results: list[RuleTarget] = []
    for target in targets:
        current = target
        for rule in ordered:
            try:
                if matches(current, rule):
                    current = apply_actions(current, rule)
            except (TypeError, ValueError, AttributeError, ValidationError) as exc:
                logger.warning(
                    f"rule_skipped: rule_id={rule.id} target={target.key} error={exc}"
                )
        results.append(current)
    return results
