from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import main
from aggregator import ChangePage
from config import get_settings
from database import Base
from errors import AggregatorError
from models import (
    AggregatorAccount,
    Budget,
    BudgetAccountLink,
    ConnectionItem,
    Transaction,
)
from seed import seed_default_categories


class StubAggregatorClient:
    def __init__(self, pages: dict[Optional[str], ChangePage], *, broken: bool = False) -> None:
        self.pages = pages
        self.broken = broken

    def fetch_changes(self, access_token: str, cursor: Optional[str]) -> ChangePage:
        if self.broken:
            raise AggregatorError("institution unavailable", status=503)
        return self.pages[cursor]

    def enrich(self, candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return []

    def recurring_streams(self, access_token: str) -> list[dict[str, Any]]:
        return []


PAGE = ChangePage(
    added=[
        {
            "transaction_id": "txn-abc123",
            "account_id": "acc-1",
            "date": "2025-01-05",
            "amount": 4.5,
            "pending": False,
            "merchant_name": "Blue Bottle",
            "iso_currency_code": "USD",
            "personal_finance_category": {
                "detailed": "FOOD_AND_DRINK_COFFEE",
                "confidence_level": "HIGH",
            },
        }
    ],
    modified=[],
    removed=[],
    next_cursor="c1",
    has_more=False,
)


@pytest.fixture()
def api(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with Session(engine) as session:
        seed_default_categories(session)
        budget = Budget(name="Household")
        item = ConnectionItem(external_item_id="item-1", access_token="access-1")
        account = AggregatorAccount(item=item, external_account_id="acc-1", name="Checking")
        session.add_all([budget, item, account])
        session.flush()
        session.add(BudgetAccountLink(budget_id=budget.id, account_id=account.id))
        session.commit()
        ids = {"budget": budget.id, "item": item.id}

    stub = StubAggregatorClient({None: PAGE})
    monkeypatch.setattr(get_settings(), "aggregator_retry_delay_secs", 0)

    def get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = get_db
    main.app.dependency_overrides[main.get_session_factory] = lambda: factory
    main.app.dependency_overrides[main.get_aggregator_client] = lambda: stub
    try:
        yield TestClient(main.app), engine, stub, ids
    finally:
        main.app.dependency_overrides.clear()


def test_health(api) -> None:
    client, _, _, _ = api

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_sync_item_persists_and_serves_transactions(api) -> None:
    client, _, _, ids = api

    response = client.post(f"/api/connection-items/{ids['item']}/sync")

    assert response.status_code == 200
    assert response.json()["created"] == 1
    listing = client.get(f"/api/budgets/{ids['budget']}/transactions", params={"month": "2025-01"})
    assert listing.status_code == 200
    items = listing.json()["items"]
    assert [row["amount_cents"] for row in items] == [450]
    assert items[0]["category"] == "Coffee"
    assert listing.json()["has_more"] is False


def test_failed_budget_sync_reports_502_and_keeps_cursor(api) -> None:
    client, engine, stub, ids = api
    stub.broken = True

    response = client.post(f"/api/budgets/{ids['budget']}/sync")

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["ok"] is False
    assert detail["errors"][0]["item_id"] == ids["item"]
    with Session(engine) as session:
        assert session.get(ConnectionItem, ids["item"]).next_cursor is None
        assert session.scalar(select(Transaction)) is None


def test_unknown_resources_return_404(api) -> None:
    client, _, _, _ = api

    assert client.post("/api/connection-items/999/sync").status_code == 404
    assert client.post("/api/budgets/999/sync").status_code == 404
    assert client.get("/api/budgets/999/spending").status_code == 404
    assert client.get("/api/budgets/999/rules").status_code == 404


def test_invalid_months_return_400(api) -> None:
    client, _, _, ids = api

    recalc = client.post(
        f"/api/budgets/{ids['budget']}/spending/recalculate", json={"months": ["2025-13"]}
    )
    listing = client.get(f"/api/budgets/{ids['budget']}/spending", params={"months": "2025-1"})

    assert recalc.status_code == 400
    assert listing.status_code == 400


def test_rule_order_endpoint_validates_ids(api) -> None:
    client, _, _, ids = api
    created = client.post(f"/api/budgets/{ids['budget']}/rules", json={"name": "Coffee"})
    assert created.status_code == 201
    rule_id = created.json()["id"]

    bad = client.put(f"/api/budgets/{ids['budget']}/rules/order", json={"rule_ids": [rule_id, 999]})
    good = client.put(f"/api/budgets/{ids['budget']}/rules/order", json={"rule_ids": [rule_id]})

    assert bad.status_code == 400
    assert good.status_code == 200
    assert [r["id"] for r in good.json()["items"]] == [rule_id]
    assert client.delete(f"/api/budgets/{ids['budget']}/rules/{rule_id}").status_code == 204


def test_manual_transaction_and_tag_patch(api) -> None:
    client, _, _, ids = api

    created = client.post(
        "/api/manual-transactions",
        json={
            "date": "2025-01-12",
            "amount_cents": 1200,
            "merchant_name": "Farmers Market",
            "budget_id": ids["budget"],
        },
    )
    assert created.status_code == 201
    txn_id = created.json()["id"]
    assert created.json()["user_tx_id"].startswith("M20250112")

    patched = client.patch(
        f"/api/budgets/{ids['budget']}/transactions/{txn_id}",
        json={"tags": ["market", "weekend"], "notes": "veg"},
    )

    assert patched.status_code == 200
    assert sorted(patched.json()["tags"]) == ["market", "weekend"]
    assert patched.json()["notes"] == "veg"
    rejected = client.post(
        "/api/manual-transactions",
        json={"date": "2025-01-12", "amount_cents": 1, "external_id": "spoofed"},
    )
    assert rejected.status_code == 422


def test_categories_listing_includes_other(api) -> None:
    client, _, _, ids = api

    response = client.get(f"/api/budgets/{ids['budget']}/categories")

    assert response.status_code == 200
    names = {group["name"] for group in response.json()["groups"]}
    assert {"Food & Drink", "Income", "Other"} <= names
