import logging
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from aggregator import AggregatorClient, HttpAggregatorClient
from config import get_settings
from database import SessionLocal
from errors import AggregatorError, DataIntegrityError, NotFoundError, SyncFailed
from models import BudgetTransaction, Category, CategoryGroup, Rule, Transaction
from periods import validate_months
from scheduler import SchedulerManager
from schemas import (
    BudgetTransactionPatch,
    CategoryGroupIn,
    CategoryIn,
    ManualTransactionIn,
    RecalculateSpendingIn,
    RuleActions,
    RuleConditions,
    RuleIn,
    RuleOrderIn,
    SpendingTargetsIn,
)
from services import (
    CategoryService,
    RuleService,
    SpendingService,
    TransactionService,
    get_budget,
)
from sync import SyncService


logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Sync")


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_aggregator_client() -> AggregatorClient:
    return HttpAggregatorClient()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "user_tx_id": txn.user_tx_id,
        "external_id": txn.external_id,
        "date": txn.date.isoformat(),
        "amount_cents": txn.amount_cents,
        "status": txn.status.value,
        "merchant_name": txn.merchant_name,
        "payee": txn.payee,
        "currency_code": txn.currency_code,
        "category_id": txn.category_id,
        "provider_category": txn.provider_category,
        "account_name": txn.account.name if txn.account else txn.manual_account_name,
    }


def serialize_projection(row: BudgetTransaction) -> dict[str, object]:
    txn = row.transaction
    return {
        **serialize_transaction(txn),
        "budget_id": row.budget_id,
        "link_id": row.link_id,
        "category_id": row.category_id,
        "category": row.category.name if row.category else None,
        "merchant_name": row.merchant_name or txn.merchant_name,
        "payee": row.payee or txn.payee,
        "notes": row.notes,
        "tags": [tag.name for tag in row.tags],
    }


def serialize_rule(rule: Rule) -> dict[str, object]:
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "is_active": rule.is_active,
        "applies_to_history": rule.applies_to_history,
        "conditions": RuleConditions.model_validate_json(rule.conditions_json).model_dump(),
        "actions": RuleActions.model_validate_json(rule.actions_json).model_dump(),
    }


def serialize_category(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "group_id": category.group_id,
        "budget_id": category.budget_id,
        "name": category.name,
        "description": category.description,
        "is_composite": category.is_composite,
        "composite": category.composite_parts,
    }


def serialize_group(group: CategoryGroup) -> dict[str, object]:
    return {
        "id": group.id,
        "budget_id": group.budget_id,
        "name": group.name,
        "description": group.description,
        "is_enabled": group.is_enabled,
    }


def months_from_request(request: Request) -> Optional[list[str]]:
    raw = request.query_params.get("months")
    if not raw:
        return None
    try:
        return validate_months([part for part in raw.split(",") if part.strip()])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/connection-items/{item_id}/sync")
def sync_connection_item(
    item_id: int,
    session_factory=Depends(get_session_factory),
    client: AggregatorClient = Depends(get_aggregator_client),
):
    service = SyncService(session_factory, client)
    try:
        result = service.sync_item(item_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (SyncFailed, AggregatorError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except DataIntegrityError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.as_dict()


@app.post("/api/budgets/{budget_id}/sync")
def sync_budget(
    budget_id: int,
    session_factory=Depends(get_session_factory),
    client: AggregatorClient = Depends(get_aggregator_client),
):
    service = SyncService(session_factory, client)
    try:
        report = service.sync_budget(budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not report.ok:
        return JSONResponse(status_code=502, content={"detail": report.as_dict()})
    return report.as_dict()


@app.post("/api/budgets/{budget_id}/spending/recalculate")
def recalculate_spending(
    budget_id: int, payload: RecalculateSpendingIn, db: Session = Depends(get_db)
):
    try:
        months = SpendingService(db).recalculate(budget_id, payload.months)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"months": months}


@app.get("/api/budgets/{budget_id}/spending")
def spending_tracking(budget_id: int, request: Request, db: Session = Depends(get_db)):
    months = months_from_request(request)
    try:
        get_budget(db, budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"months": SpendingService(db).tracking(budget_id, months)}


@app.put("/api/budgets/{budget_id}/spending-tracking")
def update_spending_targets(
    budget_id: int, payload: SpendingTargetsIn, db: Session = Depends(get_db)
):
    try:
        months = SpendingService(db).update_targets(budget_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"months": months}


@app.get("/api/budgets/{budget_id}/rules")
def list_rules(budget_id: int, db: Session = Depends(get_db)):
    try:
        rules = RuleService(db).list_all(budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"items": [serialize_rule(rule) for rule in rules]}


@app.post("/api/budgets/{budget_id}/rules", status_code=201)
def create_rule(budget_id: int, payload: RuleIn, db: Session = Depends(get_db)):
    try:
        rule = RuleService(db).create(budget_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_rule(rule)


@app.put("/api/budgets/{budget_id}/rules/order")
def reorder_rules(budget_id: int, payload: RuleOrderIn, db: Session = Depends(get_db)):
    try:
        rules = RuleService(db).set_order(budget_id, payload.rule_ids)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"items": [serialize_rule(rule) for rule in rules]}


@app.put("/api/budgets/{budget_id}/rules/{rule_id}")
def update_rule(
    budget_id: int, rule_id: int, payload: RuleIn, db: Session = Depends(get_db)
):
    try:
        rule = RuleService(db).update(budget_id, rule_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_rule(rule)


@app.delete("/api/budgets/{budget_id}/rules/{rule_id}")
def delete_rule(budget_id: int, rule_id: int, db: Session = Depends(get_db)):
    try:
        RuleService(db).delete(budget_id, rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/budgets/{budget_id}/transactions")
def list_budget_transactions(
    budget_id: int, request: Request, db: Session = Depends(get_db)
):
    month = request.query_params.get("month")
    page = max(int(request.query_params.get("page", "1")), 1)
    limit = int(request.query_params.get("limit", "50"))
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    try:
        rows = TransactionService(db).list_for_budget(
            budget_id, month=month, limit=limit + 1, offset=offset
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    has_more = len(rows) > limit
    return {
        "items": [serialize_projection(row) for row in rows[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.patch("/api/budgets/{budget_id}/transactions/{transaction_id}")
def update_budget_transaction(
    budget_id: int,
    transaction_id: int,
    payload: BudgetTransactionPatch,
    db: Session = Depends(get_db),
):
    try:
        row = TransactionService(db).update_projection(budget_id, transaction_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_projection(row)


@app.get("/api/budgets/{budget_id}/categories")
def list_categories(budget_id: int, db: Session = Depends(get_db)):
    try:
        get_budget(db, budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    groups = CategoryService(db).groups_for_budget(budget_id)
    return {
        "groups": [
            {
                "id": group.id,
                "name": group.name,
                "is_enabled": group.is_enabled,
                "budget_id": group.budget_id,
                "categories": [
                    {
                        "id": category.id,
                        "name": category.name,
                        "budget_id": category.budget_id,
                        "is_composite": category.is_composite,
                        "composite": [
                            {"category_name": name, "weight": str(weight)}
                            for name, weight in category.components
                        ],
                    }
                    for category in group.categories
                ],
            }
            for group in groups
        ]
    }


@app.post("/api/budgets/{budget_id}/categories", status_code=201)
def create_category(budget_id: int, payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create_category(budget_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_category(category)


@app.post("/api/budgets/{budget_id}/category-groups", status_code=201)
def create_category_group(
    budget_id: int, payload: CategoryGroupIn, db: Session = Depends(get_db)
):
    try:
        group = CategoryService(db).create_group(budget_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_group(group)


@app.post("/api/manual-transactions", status_code=201)
def create_manual_transaction(
    payload: ManualTransactionIn,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
):
    try:
        txn = TransactionService(db, client).create_manual(payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DataIntegrityError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_transaction(txn)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
