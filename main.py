import logging
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import get_sessionmaker
from errors import (
    ConcurrencyConflict,
    ConversionFailure,
    LedgerError,
    NotFoundError,
    PersistenceError,
    ReferentialIntegrityError,
    ValidationError,
)
from fx_rates import RateSource, rate_source_from_settings
from models import BillStatus, TransactionStatus, TransactionType
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BillOut,
    BillPaymentIn,
    BillsSummaryOut,
    CategoryIn,
    CategoryReport,
    CreditCardOverview,
    GenerationResult,
    IncomeExpenseReport,
    PayeeIn,
    RecalculateOut,
    SummaryOut,
    TransactionEdit,
    TransactionIn,
    TransactionOut,
)
from services import (
    AccountService,
    BillingService,
    CategoryService,
    PayeeService,
    ReportService,
    SummaryService,
    TransactionFilters,
    TransactionService,
    get_current_user_id,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger Engine")

_STATUS_BY_ERROR: list[tuple[type[LedgerError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ReferentialIntegrityError, 409),
    (ConcurrencyConflict, 409),
    (ConversionFailure, 502),
    (PersistenceError, 503),
]


def http_error(exc: LedgerError) -> HTTPException:
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"request_failed: code={exc.code} detail={exc}")
    return HTTPException(
        status_code=status_code, detail={"code": exc.code, "message": str(exc)}
    )


def get_db():
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    # Set by the authenticating proxy in front of the service.
    return x_user_id or get_current_user_id()


def get_rate_source() -> RateSource:
    return rate_source_from_settings()


def period_from_request(request: Request) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise http_error(ValidationError(str(exc))) from exc


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error(f"health_failed: error={exc.__class__.__name__}")
        raise HTTPException(status_code=503, detail="database unavailable") from exc
    return {"status": "ok"}


@app.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AccountService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/accounts", response_model=list[AccountOut])
def list_accounts(
    include_closed: bool = True,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return AccountService(db, user_id).list_all(include_closed=include_closed)


@app.patch("/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AccountService(db, user_id).update(account_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/accounts/{account_id}/close", response_model=AccountOut)
def close_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AccountService(db, user_id).close(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        AccountService(db, user_id).delete(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/accounts/recalculate-balances", response_model=RecalculateOut)
def recalculate_balances(
    db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return AccountService(db, user_id).recalculate_all()
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/transactions")
def list_transactions(
    request: Request,
    type: Optional[TransactionType] = None,
    status: Optional[TransactionStatus] = None,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    q: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    period = None
    if request.query_params.get("period"):
        period = period_from_request(request)
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    filters = TransactionFilters(
        type=type,
        status=status,
        account_id=account_id,
        category_id=category_id,
        query=q,
    )
    items = TransactionService(db, user_id).list(
        period, filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    return {
        "items": [TransactionOut.model_validate(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).get(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionEdit,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).update(transaction_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).restore(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/categories")
def list_categories(
    include_archived: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    items = CategoryService(db, user_id).list_all(include_archived=include_archived)
    return [
        {"id": c.id, "name": c.name, "archived": c.archived_at is not None}
        for c in items
    ]


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"id": category.id, "name": category.name}


@app.post("/payees", status_code=201)
def create_payee(
    payload: PayeeIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        payee = PayeeService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"id": payee.id, "name": payee.name}


@app.get("/summary", response_model=SummaryOut)
def summary(
    currency: Optional[str] = None,
    window_days: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
    rate_source: RateSource = Depends(get_rate_source),
):
    try:
        return SummaryService(db, user_id, rate_source).get_summary(
            display_currency=currency, window_days=window_days
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/reports/income-vs-expenses", response_model=IncomeExpenseReport)
def income_vs_expenses(
    request: Request,
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
    rate_source: RateSource = Depends(get_rate_source),
):
    period = period_from_request(request)
    return ReportService(db, user_id, rate_source).income_vs_expenses(period, currency)


@app.get("/reports/expenses-by-category", response_model=CategoryReport)
def expenses_by_category(
    request: Request,
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
    rate_source: RateSource = Depends(get_rate_source),
):
    period = period_from_request(request)
    return ReportService(db, user_id, rate_source).expenses_by_category(
        period, currency
    )


@app.get("/credit-cards", response_model=list[CreditCardOverview])
def credit_cards(db: Session = Depends(get_db), user_id: int = Depends(get_user_id)):
    return BillingService(db, user_id).credit_card_overviews()


@app.post(
    "/credit-cards/{account_id}/bills/generate", response_model=GenerationResult
)
def generate_bill(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        result = BillingService(db, user_id).generate_bill(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return GenerationResult(
        bill=BillOut.model_validate(result.bill), created=result.created
    )


@app.get("/credit-card-bills", response_model=list[BillOut])
def list_bills(
    account_id: Optional[int] = None,
    status: Optional[BillStatus] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    service = BillingService(db, user_id)
    try:
        service.mark_overdue()
    except LedgerError as exc:
        raise http_error(exc) from exc
    return service.list_bills(account_id=account_id, status=status)


@app.get("/credit-card-bills/summary", response_model=BillsSummaryOut)
def bills_summary(
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
    rate_source: RateSource = Depends(get_rate_source),
):
    try:
        return BillingService(db, user_id, rate_source).bills_summary(currency)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/credit-card-bills/{bill_id}/payment", response_model=BillOut)
def record_payment(
    bill_id: int,
    payload: BillPaymentIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return BillingService(db, user_id).record_payment(bill_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
