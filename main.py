import logging
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from database import SessionLocal
from errors import (
    ConcurrencyConflictError,
    InvalidInputError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
)
from models import BudgetStatus, TransactionType
from notifications import NotificationGateway, NotificationInbox, get_notification_service
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    CategoryIn,
    CategoryOut,
    GenerationOut,
    NotificationOut,
    RecurringTransactionIn,
    RecurringTransactionOut,
    RecurringTransactionUpdate,
    SweepOut,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from services import (
    BudgetService,
    CategoryService,
    RecurringTransactionService,
    TransactionService,
    get_current_user_id,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Ledger")

_STATUS_BY_ERROR = {
    InvalidInputError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    ConcurrencyConflictError: 409,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_notifier() -> NotificationGateway:
    return get_notification_service()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    get_notification_service().shutdown(wait=False)


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = _STATUS_BY_ERROR.get(type(exc), 400)
    if status_code >= 409:
        logger.warning(f"request_rejected: path={request.url.path} code={exc.code} detail={exc}")
    return JSONResponse(
        status_code=status_code, content={"detail": str(exc), "code": exc.code}
    )


@app.exception_handler(StaleDataError)
def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    logger.warning(f"request_conflict: path={request.url.path}")
    return JSONResponse(
        status_code=409,
        content={"detail": "Resource was modified concurrently", "code": "CONFLICT"},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


# Categories


@app.get("/api/categories", response_model=List[CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    return CategoryService(db).create(data)


# Transactions


@app.get("/api/transactions", response_model=List[TransactionOut])
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    today = local_today()
    start = start or today.replace(day=1)
    end = end or today
    if start > end:
        raise InvalidInputError("Start date must be before end date")
    return TransactionService(db, notifier=notifier).list(
        start, end, type=type, category_id=category_id, limit=limit, offset=offset
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    return TransactionService(db, notifier=notifier).create(data)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    return TransactionService(db, notifier=notifier).get(transaction_id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    return TransactionService(db, notifier=notifier).update(transaction_id, data)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    TransactionService(db, notifier=notifier).soft_delete(transaction_id)
    return Response(status_code=204)


@app.post("/api/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    return TransactionService(db, notifier=notifier).restore(transaction_id)


# Budgets


@app.get("/api/budgets", response_model=List[BudgetOut])
def list_budgets(
    status: Optional[List[BudgetStatus]] = Query(default=None),
    active_only: bool = False,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    today = local_today()
    return [
        service.summary(budget, today)
        for budget in service.list(status, active_only=active_only)
    ]


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    return service.summary(service.create(data))


@app.get("/api/budgets/exceeded", response_model=List[BudgetOut])
def list_exceeded_budgets(
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    return [service.summary(budget) for budget in service.exceeded()]


@app.post("/api/budgets/recalculate-all", response_model=SweepOut)
def recalculate_all_budgets(
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    report = BudgetService(db, notifier=notifier).recalculate_all()
    return SweepOut(processed=report.processed, failed=report.failed)


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    return service.summary(service.get(budget_id))


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetIn,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    return service.summary(service.update(budget_id, data))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    BudgetService(db, notifier=notifier).delete(budget_id)
    return Response(status_code=204)


@app.post("/api/budgets/{budget_id}/recalculate", response_model=BudgetOut)
def recalculate_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    return service.summary(service.recalculate(budget_id))


@app.post("/api/budgets/{budget_id}/pause", response_model=BudgetOut)
def pause_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    return service.summary(service.pause(budget_id))


@app.post("/api/budgets/{budget_id}/resume", response_model=BudgetOut)
def resume_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = BudgetService(db, notifier=notifier)
    return service.summary(service.resume(budget_id))


# Recurring transactions


@app.get("/api/recurring", response_model=List[RecurringTransactionOut])
def list_recurring(
    active_only: bool = False,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = RecurringTransactionService(db, notifier=notifier)
    templates = service.list_active() if active_only else service.list()
    today = local_today()
    return [service.to_out(template, today) for template in templates]


@app.post("/api/recurring", response_model=RecurringTransactionOut, status_code=201)
def create_recurring(
    data: RecurringTransactionIn,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = RecurringTransactionService(db, notifier=notifier)
    return service.to_out(service.create(data))


@app.post("/api/recurring/run", response_model=GenerationOut)
def run_recurring(
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    report = RecurringTransactionService(db, notifier=notifier).process_now()
    return GenerationOut(
        generated=report.generated, completed=report.completed, failed=report.failed
    )


@app.get("/api/recurring/{template_id}", response_model=RecurringTransactionOut)
def get_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = RecurringTransactionService(db, notifier=notifier)
    return service.to_out(service.get(template_id))


@app.put("/api/recurring/{template_id}", response_model=RecurringTransactionOut)
def update_recurring(
    template_id: int,
    data: RecurringTransactionUpdate,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = RecurringTransactionService(db, notifier=notifier)
    return service.to_out(service.update(template_id, data))


@app.delete("/api/recurring/{template_id}", status_code=204)
def delete_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    RecurringTransactionService(db, notifier=notifier).delete(template_id)
    return Response(status_code=204)


@app.post("/api/recurring/{template_id}/pause", response_model=RecurringTransactionOut)
def pause_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = RecurringTransactionService(db, notifier=notifier)
    return service.to_out(service.pause(template_id))


@app.post("/api/recurring/{template_id}/resume", response_model=RecurringTransactionOut)
def resume_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = RecurringTransactionService(db, notifier=notifier)
    return service.to_out(service.resume(template_id))


@app.post("/api/recurring/{template_id}/cancel", response_model=RecurringTransactionOut)
def cancel_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
):
    service = RecurringTransactionService(db, notifier=notifier)
    return service.to_out(service.cancel(template_id))


# Notifications


@app.get("/api/notifications", response_model=List[NotificationOut])
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return NotificationInbox(db, get_current_user_id()).list(unread_only, limit)


@app.post("/api/notifications/read-all", status_code=204)
def mark_all_notifications_read(db: Session = Depends(get_db)):
    NotificationInbox(db, get_current_user_id()).mark_all_read()
    return Response(status_code=204)


@app.post("/api/notifications/{notification_id}/read", status_code=204)
def mark_notification_read(notification_id: int, db: Session = Depends(get_db)):
    NotificationInbox(db, get_current_user_id()).mark_read(notification_id)
    return Response(status_code=204)
