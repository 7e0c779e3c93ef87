from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from categories import CategoryEntry, GroupEntry
from database import Base
from errors import ConfigurationError
from models import (
    Budget,
    BudgetTransaction,
    Category,
    CategoryGroup,
    SpendingGroupRollup,
    TargetSource,
    Transaction,
)
from periods import parse_month, validate_months
from schemas import SpendingTargetsIn
from seed import seed_default_categories
from services import SpendingService
from spending import (
    CategorySpend,
    GroupSpend,
    SpendItem,
    calculate_spending_trackings,
    split_cents,
)


GROUPS = [
    GroupEntry(id=1, name="Income", categories=(CategoryEntry(id=1, name="Income"),)),
    GroupEntry(
        id=2,
        name="Food & Drink",
        categories=(CategoryEntry(id=2, name="Dining Out"), CategoryEntry(id=3, name="Groceries")),
    ),
    GroupEntry(id=3, name="Retail & Goods", categories=(CategoryEntry(id=4, name="Shopping"),)),
]


def test_actuals_per_group_with_income_sign_and_other_bucket() -> None:
    items = [
        SpendItem(date(2025, 1, 3), 1250, "Dining Out", "Food & Drink"),
        SpendItem(date(2025, 1, 4), 500000, "Income", "Income"),
        SpendItem(date(2025, 1, 5), -250000, "Income", "Income"),
        SpendItem(date(2025, 1, 6), 999, "Spaceships", None),
        SpendItem(date(2025, 1, 7), 100, None, None),
    ]

    months = calculate_spending_trackings(items, GROUPS, months=["2025-01"])

    january = months["2025-01"]
    assert january["Food & Drink"].categories["Dining Out"].actual == 1250
    assert january["Income"].actual == -750000
    assert january["Other"].categories["Other"].actual == 1099
    assert january["Retail & Goods"].actual == 0


def test_other_group_exists_without_transactions() -> None:
    months = calculate_spending_trackings([], GROUPS, today=date(2025, 4, 10))

    assert list(months) == ["2025-04"]
    assert months["2025-04"]["Other"].actual == 0


def test_months_run_from_earliest_transaction_through_today() -> None:
    items = [SpendItem(date(2024, 11, 20), 100, "Groceries", "Food & Drink")]

    months = calculate_spending_trackings(items, GROUPS, today=date(2025, 2, 1))

    assert list(months) == ["2024-11", "2024-12", "2025-01", "2025-02"]


def test_composite_split_conserves_amount() -> None:
    parts = (
        ("Groceries", Decimal("33.33")),
        ("Shopping", Decimal("33.33")),
        ("Dining Out", Decimal("33.34")),
    )
    items = [SpendItem(date(2025, 1, 10), 1000, "Costco", "Food & Drink", parts)]

    january = calculate_spending_trackings(items, GROUPS, months=["2025-01"])["2025-01"]

    total = sum((group.actual for group in january.values()), Decimal("0"))
    assert total == Decimal("1000")
    assert january["Retail & Goods"].categories["Shopping"].actual == 333
    assert january["Food & Drink"].categories["Groceries"].actual == 333
    assert january["Food & Drink"].categories["Dining Out"].actual == 334


@pytest.mark.parametrize(
    ("amount", "weights", "expected"),
    [
        (10001, ("50", "50"), [5001, 5000]),
        (-10001, ("50", "50"), [-5001, -5000]),
        (2, ("33.33", "33.33", "33.34"), [1, 0, 1]),
        (100, ("25", "75"), [25, 75]),
        (0, ("60", "40"), [0, 0]),
    ],
)
def test_split_cents_always_adds_back_up(amount, weights, expected) -> None:
    components = tuple((f"c{i}", Decimal(w)) for i, w in enumerate(weights))

    parts = [part for _, part in split_cents(amount, components)]

    assert parts == expected
    assert sum(parts) == amount


def test_existing_targets_are_carried_over() -> None:
    existing = {
        "2025-01": {
            "Food & Drink": GroupSpend(
                name="Food & Drink",
                target_source=TargetSource.category,
                target_cents=40000,
                is_tax_deductible=True,
                categories={"Dining Out": CategorySpend(name="Dining Out", target_cents=15000)},
            )
        }
    }

    january = calculate_spending_trackings(
        [], GROUPS, existing=existing, months=["2025-01"]
    )["2025-01"]

    food = january["Food & Drink"]
    assert food.target_source == TargetSource.category
    assert food.target_cents == 40000
    assert food.is_tax_deductible
    assert food.categories["Dining Out"].target_cents == 15000


@pytest.mark.parametrize("value", ["2025-13", "25-01", "2025/01", "", "3025-01", "1900-01"])
def test_invalid_months_are_rejected(value) -> None:
    with pytest.raises(ConfigurationError):
        parse_month(value, today=date(2025, 6, 1))


def test_validate_months_deduplicates() -> None:
    assert validate_months(["2025-01", "2025-01", "2024-12"], today=date(2025, 6, 1)) == [
        "2025-01",
        "2024-12",
    ]


def _seeded(session: Session):
    seed_default_categories(session)
    budget = Budget(name="Household")
    session.add(budget)
    session.flush()
    by_name = {c.name: c.id for c in session.scalars(select(Category)).all()}
    for n, (day, cents, category) in enumerate(
        [
            (date(2025, 1, 3), 1250, "Dining Out"),
            (date(2025, 1, 4), -500000, "Income"),
            (date(2025, 2, 2), 4000, "Groceries"),
        ]
    ):
        txn = Transaction(
            user_tx_id=f"P{day:%Y%m%d}00000{n}abcdef",
            external_id=f"e{n}",
            date=day,
            amount_cents=cents,
            category_id=by_name[category],
        )
        session.add(txn)
        session.flush()
        session.add(
            BudgetTransaction(
                budget_id=budget.id, transaction_id=txn.id, category_id=by_name[category]
            )
        )
    session.commit()
    return budget


def _group_row(session: Session, budget_id: int, month: str, group_name: str):
    return session.scalar(
        select(SpendingGroupRollup).where(
            SpendingGroupRollup.budget_id == budget_id,
            SpendingGroupRollup.month == month,
            SpendingGroupRollup.group_name == group_name,
        )
    )


def test_recalculate_only_touches_requested_months_and_keeps_targets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _seeded(session)
        service = SpendingService(session)
        service.recalculate(budget.id, ["2025-01"])
        food = _group_row(session, budget.id, "2025-01", "Food & Drink")
        food.target_cents = 30000
        food.is_tax_deductible = True
        session.commit()

        projection = session.scalar(
            select(BudgetTransaction).join(Transaction).where(Transaction.external_id == "e0")
        )
        projection.transaction.amount_cents = 2000
        session.commit()
        result = service.recalculate(budget.id, ["2025-01"])

        food = _group_row(session, budget.id, "2025-01", "Food & Drink")
        assert food.actual_cents == 2000
        assert food.target_cents == 30000
        assert food.is_tax_deductible
        assert _group_row(session, budget.id, "2025-01", "Income").actual_cents == -500000
        assert _group_row(session, budget.id, "2025-02", "Food & Drink") is None
        assert list(result) == ["2025-01"]
        assert {g["group_name"] for g in result["2025-01"]} >= {"Food & Drink", "Other"}


def test_recalculate_rejects_bad_month_before_writing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _seeded(session)

        with pytest.raises(ConfigurationError):
            SpendingService(session).recalculate(budget.id, ["2025-01", "2025-13"])

        assert session.scalar(select(SpendingGroupRollup)) is None


def test_rebuild_covers_every_month_since_first_transaction() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _seeded(session)

        result = SpendingService(session).rebuild(budget.id, today=date(2025, 3, 15))

        assert list(result) == ["2025-01", "2025-02", "2025-03"]
        assert _group_row(session, budget.id, "2025-02", "Food & Drink").actual_cents == 4000
        assert _group_row(session, budget.id, "2025-03", "Other").actual_cents == 0


def test_composite_category_rollup_matches_total() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _seeded(session)
        food = session.scalar(select(CategoryGroup).where(CategoryGroup.name == "Food & Drink"))
        costco = Category(
            group_id=food.id,
            budget_id=budget.id,
            name="Costco",
            is_composite=True,
            composite_json='[{"category_name": "Groceries", "weight": "50"},'
            ' {"category_name": "Shopping", "weight": "50"}]',
        )
        session.add(costco)
        session.flush()
        txn = Transaction(
            user_tx_id="P20250310000009abcdef",
            external_id="e9",
            date=date(2025, 3, 10),
            amount_cents=10001,
            category_id=costco.id,
        )
        session.add(txn)
        session.flush()
        session.add(
            BudgetTransaction(budget_id=budget.id, transaction_id=txn.id, category_id=costco.id)
        )
        session.commit()

        SpendingService(session).recalculate(budget.id, ["2025-03"])

        food_row = _group_row(session, budget.id, "2025-03", "Food & Drink")
        retail_row = _group_row(session, budget.id, "2025-03", "Retail & Goods")
        groceries = {c.category_name: c.actual_cents for c in food_row.categories}["Groceries"]
        shopping = {c.category_name: c.actual_cents for c in retail_row.categories}["Shopping"]
        assert groceries + shopping == 10001
        assert groceries == 5001
        assert shopping == 5000
        assert food_row.actual_cents == 5001


def test_update_targets_validates_names_and_preserves_actuals() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _seeded(session)
        service = SpendingService(session)

        with pytest.raises(ValueError, match="Unknown category group"):
            service.update_targets(
                budget.id,
                SpendingTargetsIn(month="2025-01", groups=[{"group_name": "Spaceships"}]),
            )
        with pytest.raises(ValueError, match="Unknown category"):
            service.update_targets(
                budget.id,
                SpendingTargetsIn(
                    month="2025-01",
                    groups=[
                        {
                            "group_name": "Food & Drink",
                            "categories": [{"category_name": "Rent"}],
                        }
                    ],
                ),
            )

        result = service.update_targets(
            budget.id,
            SpendingTargetsIn(
                month="2025-01",
                groups=[
                    {
                        "group_name": "Food & Drink",
                        "target_source": "category",
                        "target_cents": 50000,
                        "categories": [
                            {"category_name": "Dining Out", "target_cents": 20000, "is_tax_deductible": True}
                        ],
                    }
                ],
            ),
        )

        food = next(g for g in result["2025-01"] if g["group_name"] == "Food & Drink")
        assert food["spending_actual_cents"] == 1250
        assert food["spending_target_cents"] == 50000
        assert food["target_source"] == "category"
        dining = next(c for c in food["categories"] if c["category_name"] == "Dining Out")
        assert dining["spending_target_cents"] == 20000
        assert dining["is_tax_deductible"] is True
