import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import Database
from models import TransactionType
from periods import today_in
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryOut,
    CategoryRename,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from services import (
    BudgetService,
    CategoryService,
    ConstraintViolation,
    DashboardService,
    StorageUnavailable,
    TransactionFilters,
    TransactionService,
)
from sessions import read_session_token

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"

app = FastAPI(title="Finance Tracker")


@app.on_event("startup")
def startup_event():
    if getattr(app.state, "database", None) is None:
        app.state.database = Database()
    logger.info("Database engine ready")


@app.on_event("shutdown")
def shutdown_event():
    database = getattr(app.state, "database", None)
    if database is not None:
        database.dispose()
        logger.info("Database engine disposed")


@app.exception_handler(StorageUnavailable)
def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


def get_db(request: Request):
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(request: Request) -> int:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth = request.headers.get("Authorization", "")
        if auth.lower().startswith("bearer "):
            token = auth[7:].strip()
    user_id = read_session_token(token or "")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _parse_int(value: Optional[str], name: str) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _parse_type(value: Optional[str]) -> Optional[TransactionType]:
    if not value:
        return None
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid type") from exc


def _parse_month(value: Optional[str]) -> Optional[int]:
    month = _parse_int(value, "month")
    if month is not None and not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Invalid month")
    return month


def _parse_year(value: Optional[str]) -> Optional[int]:
    year = _parse_int(value, "year")
    if year is not None and not date.min.year <= year <= date.max.year:
        raise HTTPException(status_code=400, detail="Invalid year")
    return year


def _month_and_year(request: Request) -> tuple[int, int]:
    month = _parse_month(request.query_params.get("month"))
    year = _parse_year(request.query_params.get("year"))
    if month is None or year is None:
        today = today_in(get_settings().timezone)
        month = today.month if month is None else month
        year = today.year if year is None else year
    return month, year


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    limit = _parse_int(params.get("limit"), "limit")
    if limit is not None and limit < 1:
        raise HTTPException(status_code=400, detail="Invalid limit")
    return TransactionFilters(
        type=_parse_type(params.get("type")),
        category_id=_parse_int(params.get("category"), "category"),
        start_date=_parse_date(params.get("start"), "start"),
        end_date=_parse_date(params.get("end"), "end"),
        limit=limit,
    )


def _transaction_json(txn) -> dict:
    return jsonable_encoder(TransactionOut.model_validate(txn).model_dump())


def _budget_json(budget) -> dict:
    return jsonable_encoder(BudgetOut.model_validate(budget).model_dump())


def _category_json(category) -> dict:
    return jsonable_encoder(CategoryOut.model_validate(category).model_dump())


@app.get("/api/dashboard")
def api_dashboard(
    db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)
):
    dashboard = DashboardService(db, user_id).build()
    return jsonable_encoder(dashboard)


@app.get("/api/categories")
def api_categories(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    txn_type = _parse_type(request.query_params.get("type"))
    return [_category_json(c) for c in CategoryService(db, user_id).list_all(txn_type)]


@app.post("/api/categories", status_code=201)
def api_create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        category = CategoryService(db, user_id).create(data)
    except ConstraintViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _category_json(category)


@app.patch("/api/categories/{category_id}")
def api_rename_category(
    category_id: int,
    data: CategoryRename,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        category = CategoryService(db, user_id).rename(category_id, data.name)
    except ConstraintViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return _category_json(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    if not CategoryService(db, user_id).delete(category_id):
        raise HTTPException(status_code=404, detail="Category not found")
    return Response(status_code=204)


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    filters = filters_from_request(request)
    items = TransactionService(db, user_id).list(filters)
    return {"items": [_transaction_json(txn) for txn in items]}


@app.get("/api/transactions/{transaction_id}")
def api_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    txn = TransactionService(db, user_id).get(transaction_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return _transaction_json(txn)


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        txn = TransactionService(db, user_id).create(data)
    except ConstraintViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _transaction_json(txn)


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, data)
    except ConstraintViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return _transaction_json(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    if not TransactionService(db, user_id).delete(transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found")
    return Response(status_code=204)


@app.get("/api/reports/monthly-summary")
def api_monthly_summary(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    year = _parse_year(request.query_params.get("year"))
    if year is None:
        year = today_in(get_settings().timezone).year
    return jsonable_encoder(TransactionService(db, user_id).monthly_summary(year))


@app.get("/api/reports/category-summary")
def api_category_summary(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    params = request.query_params
    txn_type = _parse_type(params.get("type")) or TransactionType.expense
    start = _parse_date(params.get("start"), "start")
    end = _parse_date(params.get("end"), "end")
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="start and end are required")
    if start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    summary = TransactionService(db, user_id).category_summary(txn_type, start, end)
    return jsonable_encoder(summary)


@app.get("/api/budgets")
def api_budgets(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    month = _parse_month(request.query_params.get("month"))
    year = _parse_year(request.query_params.get("year"))
    budgets = BudgetService(db, user_id).list(month=month, year=year)
    return [_budget_json(b) for b in budgets]


@app.get("/api/budgets/comparison")
def api_budget_comparison(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    month, year = _month_and_year(request)
    rows = BudgetService(db, user_id).comparison(month, year)
    return {"month": month, "year": year, "rows": jsonable_encoder(rows)}


@app.get("/api/budgets/{budget_id}")
def api_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    budget = BudgetService(db, user_id).get(budget_id)
    if budget is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    return _budget_json(budget)


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        budget = BudgetService(db, user_id).create(data)
    except ConstraintViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _budget_json(budget)


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    data: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        budget = BudgetService(db, user_id).update(budget_id, data)
    except ConstraintViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if budget is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    return _budget_json(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    if not BudgetService(db, user_id).delete(budget_id):
        raise HTTPException(status_code=404, detail="Budget not found")
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
