import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ai_client import AIServiceError
from analytics import AnalyticsResult
from config import get_settings
from database import SessionLocal, session_scope
from periods import DateRange, parse_instant, resolve_range
from schemas import (
    AnalyticsOut,
    CategoryIn,
    CategoryOut,
    CategoryShareOut,
    ChatFailureOut,
    ChatIn,
    ChatOut,
    DateRangeOut,
    StatsOut,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionUpdate,
    TrendPointOut,
)
from services import (
    AnalyticsService,
    CategoryService,
    ChatService,
    InvalidAmount,
    TransactionFilters,
    TransactionNotFound,
    TransactionService,
    seed_default_categories,
)
from sessions import SESSION_COOKIE_NAME, read_session_token


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Money Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(request: Request) -> str:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    auth_header = request.headers.get("Authorization", "")
    if not token and auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
    user_id = read_session_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized - Please login")
    return user_id


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        seed_default_categories(session)


def range_from_request(request: Request) -> DateRange:
    try:
        return resolve_range(
            request.query_params.get("startDate"),
            request.query_params.get("endDate"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def optional_range_from_request(request: Request) -> Optional[DateRange]:
    start = request.query_params.get("startDate")
    end = request.query_params.get("endDate")
    if not start and not end:
        return None
    try:
        start_at = parse_instant(start) if start else None
        end_at = parse_instant(end, end_of_day=True) if end else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    # an open bound stays open
    return DateRange(start_at or datetime.min, end_at or datetime.max)


def int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail="Invalid pagination parameters"
        ) from exc


async def json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return payload


def dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def analytics_payload(result: AnalyticsResult) -> AnalyticsOut:
    summary = result.summary
    return AnalyticsOut(
        stats=StatsOut(
            total_income=summary.total_income,
            total_expense=summary.total_expense,
            balance=summary.balance,
            month_income=summary.total_income,
            month_expense=summary.total_expense,
            month_balance=summary.balance,
            transaction_count=summary.count,
        ),
        category_breakdown=[
            CategoryShareOut(
                category=share.category,
                amount=share.amount,
                percentage=share.percentage,
            )
            for share in result.category_breakdown
        ],
        trend_data=[
            TrendPointOut(
                month=bucket.label,
                income=bucket.income,
                expense=bucket.expense,
                net=bucket.net,
            )
            for bucket in result.trend
        ],
        recent_transactions=[
            TransactionOut.model_validate(txn) for txn in result.recent
        ],
        date_range=DateRangeOut(
            from_=result.date_range.start, to=result.date_range.end
        ),
    )


@app.get("/api/auth/me")
def auth_me(user_id: str = Depends(current_user_id)):
    return {"user": {"id": user_id}}


@app.post("/api/auth/logout")
def auth_logout():
    response = JSONResponse({"success": True})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


@app.get("/api/analytics")
def api_analytics(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    date_range = range_from_request(request)
    result = AnalyticsService(db, user_id).overview(date_range)
    return dump(analytics_payload(result))


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    page = int_param(request, "page", 1)
    limit = int_param(request, "limit", 10)
    category = request.query_params.get("category")
    filters = TransactionFilters(
        category=None if not category or category == "all" else category,
        date_range=optional_range_from_request(request),
    )
    try:
        result = TransactionService(db, user_id).list_page(filters, page, limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return dump(
        TransactionPage(
            transactions=[TransactionOut.model_validate(txn) for txn in result.items],
            total=result.total,
            page=result.page,
            total_pages=result.total_pages,
            has_more=result.has_more,
        )
    )


@app.post("/api/transactions", status_code=201)
async def api_create_transaction(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    payload = await json_body(request)
    try:
        data = TransactionIn(**payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        txn = TransactionService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "transaction": dump(TransactionOut.model_validate(txn))}


@app.get("/api/transactions/categories")
def api_transaction_categories(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    date_range = optional_range_from_request(request)
    return {"categories": TransactionService(db, user_id).distinct_categories(date_range)}


@app.patch("/api/transactions/{transaction_id}")
async def api_update_transaction(
    transaction_id: int,
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    payload = await json_body(request)
    try:
        data = TransactionUpdate(**payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        txn = TransactionService(db, user_id).update(transaction_id, data)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "transaction": dump(TransactionOut.model_validate(txn))}


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, "message": "Transaction deleted"}


@app.get("/api/categories/all")
def api_categories(
    user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    categories = CategoryService(db, user_id).list_all()
    return {"categories": [dump(CategoryOut.model_validate(c)) for c in categories]}


@app.post("/api/categories", status_code=201)
async def api_create_category(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    payload = await json_body(request)
    try:
        data = CategoryIn(**payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        category = CategoryService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"category": dump(CategoryOut.model_validate(category))}


@app.post("/api/chat")
async def api_chat(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    payload = await json_body(request)
    try:
        data = ChatIn(**payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Message is required") from exc
    try:
        result = ChatService(db, user_id).handle(data.message)
    except InvalidAmount as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AIServiceError as exc:
        logger.error(f"chat_parse_failed: user={user_id} error={exc}")
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return dump(
        ChatOut(
            success=True,
            message=result.message,
            transactions=[
                TransactionOut.model_validate(txn) for txn in result.transactions
            ],
            count=len(result.transactions),
            failures=[
                ChatFailureOut(
                    index=failure.index,
                    description=failure.draft.description,
                    error=failure.error,
                )
                for failure in result.failures
            ],
        )
    )


def main():
    import uvicorn

    settings = get_settings()
    logger.info(f"startup: database={settings.database_url} timezone={settings.timezone}")
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
