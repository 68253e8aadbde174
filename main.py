import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from billing import local_today, shift_period
from config import get_settings
from errors import AlreadySet, NotFound, PartialFailure, ValidationError
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BalanceAdjustmentIn,
    BillDetailsOut,
    BillOut,
    BillPaymentIn,
    BulkResultOut,
    CategoryIn,
    CreditCardIn,
    CreditCardOut,
    CreditCardUpdate,
    GoalIn,
    InitialBalanceIn,
    InstallmentSeriesIn,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from scheduler import SchedulerManager
from services import (
    AccountService,
    BillDetails,
    BillService,
    BulkResult,
    CategoryService,
    CreditCardService,
    GoalService,
    MetricsService,
    ReconciliationService,
    TransactionService,
)
from store import LedgerStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Card Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_store() -> LedgerStore:
    return LedgerStore()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(AlreadySet)
async def already_set_handler(request: Request, exc: AlreadySet):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PartialFailure)
async def partial_failure_handler(request: Request, exc: PartialFailure):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "succeeded": exc.succeeded,
            "failed": exc.failed,
            "total": exc.total,
        },
    )


def bulk_out(result: BulkResult) -> BulkResultOut:
    return BulkResultOut(
        total=result.total, succeeded=result.succeeded, failed=result.failed
    )


def details_out(details: BillDetails) -> BillDetailsOut:
    return BillDetailsOut(
        bill=BillOut.model_validate(details.bill),
        total_cents=details.total_cents,
        transactions=[TransactionOut.model_validate(t) for t in details.transactions],
    )


def resolve_month(month: Optional[int], year: Optional[int]) -> tuple[int, int]:
    today = local_today()
    return month or today.month, year or today.year


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# Accounts


@app.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(payload: AccountIn, store: LedgerStore = Depends(get_store)):
    return AccountService(store).create(payload)


@app.get("/accounts", response_model=list[AccountOut])
def list_accounts(
    include_archived: bool = False, store: LedgerStore = Depends(get_store)
):
    return AccountService(store).list_all(include_archived=include_archived)


@app.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, store: LedgerStore = Depends(get_store)):
    return AccountService(store).get(account_id)


@app.patch("/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int, payload: AccountUpdate, store: LedgerStore = Depends(get_store)
):
    return AccountService(store).update(account_id, payload)


@app.delete("/accounts/{account_id}", response_model=BulkResultOut)
def delete_account(account_id: int, store: LedgerStore = Depends(get_store)):
    result = AccountService(store).delete(account_id)
    result.raise_for_failures()
    return bulk_out(result)


@app.post("/accounts/{account_id}/initial-balance", response_model=AccountOut)
def set_initial_balance(
    account_id: int, payload: InitialBalanceIn, store: LedgerStore = Depends(get_store)
):
    service = AccountService(store)
    service.set_initial_balance(account_id, payload.initial_balance_cents)
    return service.get(account_id)


@app.post("/accounts/{account_id}/archive", response_model=AccountOut)
def archive_account(account_id: int, store: LedgerStore = Depends(get_store)):
    service = AccountService(store)
    service.archive(account_id)
    return service.get(account_id)


@app.post("/accounts/{account_id}/unarchive", response_model=AccountOut)
def unarchive_account(account_id: int, store: LedgerStore = Depends(get_store)):
    service = AccountService(store)
    service.unarchive(account_id)
    return service.get(account_id)


@app.post("/accounts/{account_id}/reconcile", response_model=AccountOut)
def reconcile_account(account_id: int, store: LedgerStore = Depends(get_store)):
    service = AccountService(store)
    service.reconcile(account_id)
    return service.get(account_id)


@app.post("/accounts/{account_id}/adjust-balance", response_model=AccountOut)
def adjust_account_balance(
    account_id: int,
    payload: BalanceAdjustmentIn,
    store: LedgerStore = Depends(get_store),
):
    service = AccountService(store)
    service.adjust_balance(account_id, payload.balance_cents)
    return service.get(account_id)


# Credit cards


@app.post("/credit-cards", response_model=CreditCardOut, status_code=201)
def create_credit_card(payload: CreditCardIn, store: LedgerStore = Depends(get_store)):
    return CreditCardService(store).create(payload)


@app.get("/credit-cards", response_model=list[CreditCardOut])
def list_credit_cards(
    include_archived: bool = False, store: LedgerStore = Depends(get_store)
):
    return CreditCardService(store).list_all(include_archived=include_archived)


@app.patch("/credit-cards/{card_id}", response_model=CreditCardOut)
def update_credit_card(
    card_id: int, payload: CreditCardUpdate, store: LedgerStore = Depends(get_store)
):
    return CreditCardService(store).update(card_id, payload)


@app.delete("/credit-cards/{card_id}", response_model=BulkResultOut)
def delete_credit_card(card_id: int, store: LedgerStore = Depends(get_store)):
    result = CreditCardService(store).delete(card_id)
    result.raise_for_failures()
    return bulk_out(result)


@app.post("/credit-cards/{card_id}/reconcile", response_model=CreditCardOut)
def reconcile_credit_card(card_id: int, store: LedgerStore = Depends(get_store)):
    service = CreditCardService(store)
    service.reconcile(card_id)
    return service.get(card_id)


@app.get("/credit-cards/{card_id}/bills/{year}/{month}", response_model=BillDetailsOut)
def credit_card_bill(
    card_id: int, year: int, month: int, store: LedgerStore = Depends(get_store)
):
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    return details_out(BillService(store).details(card_id, month, year))


@app.get("/credit-cards/{card_id}/bill-validation")
def credit_card_bill_validation(
    card_id: int,
    on: date = Query(..., alias="date"),
    store: LedgerStore = Depends(get_store),
):
    card = CreditCardService(store).get(card_id)
    resolver = TransactionService(store).resolver
    validation = resolver.validate_for_transaction(card.id, on, card.closing_day)
    return {
        "can_add": validation.can_add,
        "bill_month": validation.bill_month,
        "bill_year": validation.bill_year,
        "is_paid": validation.is_paid,
        "is_closed": validation.is_closed,
        "redirected": validation.redirected,
        "suggested_month": validation.suggested_month,
        "suggested_year": validation.suggested_year,
        "message": validation.message,
    }


# Bills


@app.get("/bills", response_model=list[BillDetailsOut])
def list_bills(
    month: Optional[int] = None,
    year: Optional[int] = None,
    store: LedgerStore = Depends(get_store),
):
    month, year = resolve_month(month, year)
    return [details_out(d) for d in BillService(store).bills_for_month(month, year)]


@app.post("/bills/{bill_id}/pay", response_model=TransactionOut)
def pay_bill(bill_id: int, payload: BillPaymentIn, store: LedgerStore = Depends(get_store)):
    return BillService(store).pay(bill_id, payload.account_id, payload.amount_cents)


@app.post("/bills/{bill_id}/unpay", response_model=BillOut)
def unpay_bill(bill_id: int, store: LedgerStore = Depends(get_store)):
    service = BillService(store)
    service.unpay(bill_id)
    return service.get(bill_id)


# Transactions


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(payload: TransactionIn, store: LedgerStore = Depends(get_store)):
    return TransactionService(store).create(payload)


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    month: Optional[int] = None,
    year: Optional[int] = None,
    store: LedgerStore = Depends(get_store),
):
    month, year = resolve_month(month, year)
    return TransactionService(store).list_by_month(month, year)


@app.post("/transactions/series", response_model=list[TransactionOut], status_code=201)
def create_transaction_series(
    payload: InstallmentSeriesIn, store: LedgerStore = Depends(get_store)
):
    return TransactionService(store).create_series(
        payload.transaction, payload.installments
    )


@app.delete("/transactions/series/{series_id}", response_model=BulkResultOut)
def delete_transaction_series(series_id: str, store: LedgerStore = Depends(get_store)):
    result = TransactionService(store).delete_series(series_id)
    result.raise_for_failures()
    return bulk_out(result)


@app.post("/transactions/series/{series_id}/move-next")
def move_series_to_next_bill(
    series_id: str, credit_card_id: int, store: LedgerStore = Depends(get_store)
):
    move = TransactionService(store).move_series_to_next_bill(series_id, credit_card_id)
    return {
        "moved": move.moved,
        "failed": move.failed,
        "month": move.month,
        "year": move.year,
    }


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    store: LedgerStore = Depends(get_store),
):
    service = TransactionService(store)
    previous = service.get(transaction_id)
    return service.update(transaction_id, payload, previous)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, store: LedgerStore = Depends(get_store)):
    service = TransactionService(store)
    service.delete(service.get(transaction_id))


@app.post("/transactions/{transaction_id}/move-previous", response_model=TransactionOut)
def move_to_previous_bill(transaction_id: int, store: LedgerStore = Depends(get_store)):
    return TransactionService(store).move_to_previous_bill(transaction_id)


@app.post("/transactions/{transaction_id}/move-next", response_model=TransactionOut)
def move_to_next_bill(transaction_id: int, store: LedgerStore = Depends(get_store)):
    return TransactionService(store).move_to_next_bill(transaction_id)


# Categories and goals


@app.post("/categories", status_code=201)
def create_category(payload: CategoryIn, store: LedgerStore = Depends(get_store)):
    category = CategoryService(store).create(payload)
    return {"id": category.id, "name": category.name, "type": category.type.value}


@app.post("/goals", status_code=201)
def create_goal(payload: GoalIn, store: LedgerStore = Depends(get_store)):
    goal = GoalService(store).create(payload)
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount_cents": goal.target_amount_cents,
        "current_amount_cents": goal.current_amount_cents,
    }


@app.delete("/goals/{goal_id}", response_model=BulkResultOut)
def delete_goal(goal_id: int, store: LedgerStore = Depends(get_store)):
    return bulk_out(GoalService(store).delete(goal_id))


# Metrics


@app.get("/metrics/carry-over")
def carry_over(
    month: Optional[int] = None,
    year: Optional[int] = None,
    account_id: Optional[int] = None,
    store: LedgerStore = Depends(get_store),
):
    month, year = resolve_month(month, year)
    metrics = MetricsService(store)
    if account_id is not None:
        value = metrics.account_carry_over_balance(account_id, month, year)
    else:
        value = metrics.carry_over_balance(month, year)
    return {"month": month, "year": year, "carry_over_cents": value}


@app.get("/metrics/month-totals")
def month_totals(
    month: Optional[int] = None,
    year: Optional[int] = None,
    store: LedgerStore = Depends(get_store),
):
    month, year = resolve_month(month, year)
    totals = MetricsService(store).month_totals(month, year)
    next_month, next_year = shift_period(month, year, 1)
    return {
        "month": month,
        "year": year,
        "income": totals.income,
        "expense": totals.expense,
        "balance": totals.balance,
        "next_period": {"month": next_month, "year": next_year},
    }


@app.get("/metrics/month-report")
def month_report(
    month: Optional[int] = None,
    year: Optional[int] = None,
    store: LedgerStore = Depends(get_store),
):
    month, year = resolve_month(month, year)
    return MetricsService(store).month_report(month, year)


@app.post("/admin/reconcile")
def reconcile_all(store: LedgerStore = Depends(get_store)):
    report = ReconciliationService(store).reconcile_all()
    logger.info(f"manual_reconcile: accounts={len(report.accounts)} cards={len(report.cards)}")
    return {
        "accounts": report.accounts,
        "cards": report.cards,
        "failed": report.failed,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
