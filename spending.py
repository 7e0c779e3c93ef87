"""Monthly spending rollups per category group and category.

``calculate_spending_trackings`` is a pure function over ``SpendItem``
values. Composite transactions are split into whole cents with
``split_cents`` so the parts add back up to the original amount.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional

from categories import GroupEntry
from models import TargetSource
from periods import iter_months, month_key
from seed import INCOME_GROUP_NAME, OTHER_NAME


@dataclass(frozen=True)
class SpendItem:
    date: date
    amount_cents: int
    category_name: Optional[str]
    group_name: Optional[str]
    # (component category name, weight percentage) for composite categories
    components: tuple[tuple[str, Decimal], ...] = ()


@dataclass
class CategorySpend:
    name: str
    actual: Decimal = Decimal("0")
    target_cents: int = 0
    is_tax_deductible: bool = False


@dataclass
class GroupSpend:
    name: str
    target_source: TargetSource = TargetSource.group
    target_cents: int = 0
    is_tax_deductible: bool = False
    categories: dict[str, CategorySpend] = field(default_factory=dict)

    @property
    def actual(self) -> Decimal:
        return sum((c.actual for c in self.categories.values()), Decimal("0"))


MonthTracking = dict[str, GroupSpend]


def cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_cents(
    amount_cents: int, components: tuple[tuple[str, Decimal], ...]
) -> list[tuple[str, int]]:
    """Largest-remainder split of a signed amount by percentage weights.

    The parts are whole cents and always sum to ``amount_cents``; leftover
    cents go to the largest remainders, ties to the earlier component.
    """
    sign = -1 if amount_cents < 0 else 1
    total = abs(amount_cents)
    weight_sum = sum((weight for _, weight in components), Decimal("0"))
    if not components or weight_sum <= 0:
        return []
    exact = [Decimal(total) * weight / weight_sum for _, weight in components]
    parts = [int(value) for value in exact]
    leftover = total - sum(parts)
    by_remainder = sorted(
        range(len(components)), key=lambda i: (-(exact[i] - parts[i]), i)
    )
    for i in by_remainder[:leftover]:
        parts[i] += 1
    return [(name, sign * part) for (name, _), part in zip(components, parts)]


def _skeleton(groups: Iterable[GroupEntry]) -> MonthTracking:
    tracking: MonthTracking = {}
    for group in groups:
        spend = tracking.setdefault(group.name, GroupSpend(name=group.name))
        for category in group.categories:
            spend.categories.setdefault(category.name, CategorySpend(name=category.name))
    other = tracking.setdefault(OTHER_NAME, GroupSpend(name=OTHER_NAME))
    other.categories.setdefault(OTHER_NAME, CategorySpend(name=OTHER_NAME))
    return tracking


def _carry_config(tracking: MonthTracking, existing: Optional[MonthTracking]) -> None:
    if not existing:
        return
    for group_name, old_group in existing.items():
        group = tracking.get(group_name)
        if group is None:
            continue
        group.target_source = old_group.target_source
        group.target_cents = old_group.target_cents
        group.is_tax_deductible = old_group.is_tax_deductible
        for category_name, old_category in old_group.categories.items():
            category = group.categories.get(category_name)
            if category is None:
                continue
            category.target_cents = old_category.target_cents
            category.is_tax_deductible = old_category.is_tax_deductible


def _add(
    tracking: MonthTracking,
    group_of: Mapping[str, str],
    category_name: Optional[str],
    group_name: Optional[str],
    amount: Decimal,
) -> None:
    if category_name and not group_name:
        group_name = group_of.get(category_name)
    group = tracking.get(group_name or "")
    if group is None or not category_name or category_name not in group.categories:
        group = tracking[OTHER_NAME]
        category_name = OTHER_NAME
    if group.name == INCOME_GROUP_NAME:
        amount = -abs(amount)
    group.categories[category_name].actual += amount


def calculate_spending_trackings(
    items: Iterable[SpendItem],
    groups: list[GroupEntry],
    *,
    existing: Optional[Mapping[str, MonthTracking]] = None,
    months: Optional[Iterable[str]] = None,
    today: Optional[date] = None,
) -> dict[str, MonthTracking]:
    """Actual spend per month, group and category.

    Without ``months`` every month from the earliest item through ``today``
    is produced. Income amounts are forced negative; composite categories
    are split by weight; anything unplaceable goes to Other. Targets and
    tax flags are copied from ``existing``.
    """
    items = list(items)
    today = today or date.today()
    if months is None:
        if items:
            first = min(item.date for item in items)
            month_list = iter_months(min(first, today), today)
        else:
            month_list = [month_key(today)]
    else:
        month_list = list(dict.fromkeys(months))

    group_of: dict[str, str] = {}
    for group in groups:
        for category in group.categories:
            group_of.setdefault(category.name, group.name)

    result: dict[str, MonthTracking] = {}
    for key in month_list:
        tracking = _skeleton(groups)
        _carry_config(tracking, (existing or {}).get(key))
        result[key] = tracking

    for item in items:
        tracking = result.get(month_key(item.date))
        if tracking is None:
            continue
        parts = split_cents(item.amount_cents, item.components) if item.components else []
        if parts:
            for component_name, part in parts:
                _add(tracking, group_of, component_name, None, Decimal(part))
        else:
            _add(tracking, group_of, item.category_name, item.group_name, Decimal(item.amount_cents))
    return result
