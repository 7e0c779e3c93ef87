from datetime import date
from typing import Any

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from config import BASE_DIR, Settings
from database import Base
from errors import AggregatorError, NotFoundError
from models import Budget, BudgetTransaction, Category, SpendingGroupRollup, Transaction
from schemas import ManualTransactionIn
from seed import seed_default_categories
from services import EnrichmentService, TransactionService


def _settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        timezone="UTC",
        aggregator_url="http://aggregator.test",
        aggregator_client_id="client",
        aggregator_secret="secret",
        aggregator_timeout_secs=1,
        aggregator_retry_delay_secs=0,
        category_map_path=str(BASE_DIR / "category_map.json"),
        id_max_batches=5,
        sync_max_workers=1,
        sync_interval_minutes=60,
        scheduler_enabled=False,
    )


class EnrichingClient:
    def __init__(self) -> None:
        self.requests: list[list[dict[str, Any]]] = []

    def enrich(self, candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self.requests.append(candidates)
        return [
            {
                "id": candidate["id"],
                "enrichments": {
                    "merchant_name": "Blue Bottle Coffee",
                    "personal_finance_category": {
                        "detailed": "FOOD_AND_DRINK_COFFEE",
                        "confidence_level": "VERY_HIGH",
                    },
                },
            }
            for candidate in candidates
        ]


class BrokenClient:
    def __init__(self) -> None:
        self.calls = 0

    def enrich(self, candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self.calls += 1
        raise AggregatorError("enrich unavailable", status=503)


def _budget(session: Session) -> Budget:
    seed_default_categories(session)
    budget = Budget(name="Household")
    session.add(budget)
    session.commit()
    return budget


def _category(session: Session, name: str) -> Category:
    return session.scalar(
        select(Category).where(Category.name == name, Category.budget_id.is_(None))
    )


def test_manual_transaction_without_aggregator() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _budget(session)

        txn = TransactionService(session, settings=_settings()).create_manual(
            ManualTransactionIn(
                date=date(2025, 1, 10),
                amount_cents=1800,
                merchant_name="Corner Shop",
                account_name="Wallet",
                budget_id=budget.id,
                notes="cash",
            )
        )

        other = _category(session, "Other")
        projection = session.scalar(select(BudgetTransaction))
        assert txn.user_tx_id.startswith("M20250110")
        assert txn.user_tx_id.endswith("COR")
        assert txn.external_id is None
        assert txn.category_id == other.id
        assert projection.transaction_id == txn.id
        assert projection.notes == "cash"
        assert projection.category_id == other.id
        rollup = session.scalar(
            select(SpendingGroupRollup).where(
                SpendingGroupRollup.month == "2025-01",
                SpendingGroupRollup.group_name == "Other",
            )
        )
        assert rollup.actual_cents == 1800


def test_manual_transaction_is_enriched_and_recategorized() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _budget(session)
        client = EnrichingClient()

        txn = TransactionService(session, client, settings=_settings()).create_manual(
            ManualTransactionIn(
                date=date(2025, 1, 10), amount_cents=550, budget_id=budget.id
            )
        )

        coffee = _category(session, "Coffee")
        projection = session.scalar(select(BudgetTransaction))
        assert client.requests[0][0]["id"] == txn.user_tx_id
        assert client.requests[0][0]["direction"] == "OUTFLOW"
        assert txn.merchant_name == "Blue Bottle Coffee"
        assert txn.provider_category == "FOOD_AND_DRINK_COFFEE"
        assert txn.category_id == coffee.id
        assert projection.category_id == coffee.id
        food = session.scalar(
            select(SpendingGroupRollup).where(
                SpendingGroupRollup.month == "2025-01",
                SpendingGroupRollup.group_name == "Food & Drink",
            )
        )
        assert food.actual_cents == 550


def test_explicit_category_survives_enrichment() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _budget(session)
        groceries = _category(session, "Groceries")

        txn = TransactionService(session, EnrichingClient(), settings=_settings()).create_manual(
            ManualTransactionIn(
                date=date(2025, 1, 10),
                amount_cents=550,
                budget_id=budget.id,
                category_id=groceries.id,
            )
        )

        assert txn.category_id == groceries.id
        assert txn.provider_category == "FOOD_AND_DRINK_COFFEE"


def test_enrichment_failure_leaves_transactions_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _budget(session)
        txn = TransactionService(session, settings=_settings()).create_manual(
            ManualTransactionIn(date=date(2025, 1, 10), amount_cents=550, merchant_name="Kiosk")
        )
        client = BrokenClient()
        sleeps: list[float] = []
        settings = _settings()
        settings.aggregator_retry_delay_secs = 1.5

        updated = EnrichmentService(session, client, settings, sleep=sleeps.append).enrich_manual(
            [txn]
        )

        session.refresh(txn)
        assert updated == []
        assert client.calls == 2
        assert sleeps == [1.5]
        assert txn.raw_json is None
        assert txn.merchant_name == "Kiosk"


def test_aggregator_rows_are_not_sent_for_enrichment() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = Transaction(
            user_tx_id="P20250110000001abcdef",
            external_id="abcdef",
            date=date(2025, 1, 10),
            amount_cents=550,
        )
        session.add(txn)
        session.commit()
        client = EnrichingClient()

        assert EnrichmentService(session, client, _settings()).enrich_manual([txn]) == []
        assert client.requests == []


def test_manual_transaction_rejects_unknown_references() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _budget(session)
        service = TransactionService(session, settings=_settings())

        with pytest.raises(ValueError, match="Category not found"):
            service.create_manual(
                ManualTransactionIn(
                    date=date(2025, 1, 10), amount_cents=100, budget_id=budget.id, category_id=99999
                )
            )
        with pytest.raises(NotFoundError):
            service.create_manual(
                ManualTransactionIn(date=date(2025, 1, 10), amount_cents=100, budget_id=99999)
            )
        assert session.scalar(select(Transaction)) is None


def test_manual_transaction_payload_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        ManualTransactionIn(date=date(2025, 1, 10), amount_cents=100, external_id="spoofed")

    payload = ManualTransactionIn(date=date(2025, 1, 10), amount_cents=100, currency_code="eur")
    assert payload.currency_code == "EUR"
