import logging
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

from backup import BackupError, BackupService
from database import SessionLocal, session_scope
from forecast import Event, ProjectionPoint
from models import Category, PlannedItem, RecurringItem, SavingsGoal, Transaction
from periods import month_period, parse_month, resolve_period
from recurrence import ReconciliationError, local_today
from scheduler import SchedulerManager
from schemas import (
    BalanceEditIn,
    CategoryIn,
    CategoryUpdate,
    PlannedItemIn,
    RealizeOccurrenceIn,
    RecurringItemIn,
    RecurringItemUpdate,
    SavingsGoalIn,
    SavingsProgressIn,
    SettingIn,
    SkipOccurrenceIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    INITIAL_BALANCE_KEY,
    BalanceService,
    CategoryService,
    ForecastService,
    NotFoundError,
    OccurrenceService,
    PlannedItemService,
    RecurringItemService,
    SavingsGoalService,
    SettingService,
    TransactionService,
    seed_default_categories,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")

UNCATEGORIZED_LABEL = "Uncategorized"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    # tables come from `alembic upgrade head`
    with session_scope() as db:
        seed_default_categories(db)
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _category_payload(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "label": category.label,
        "type": category.type.value,
        "color": category.color,
        "icon": category.icon,
    }


def _transaction_payload(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "label": txn.label,
        "amount_cents": txn.amount_cents,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "category_id": txn.category_id,
        "category": txn.category_label,
        "status": txn.status.value if txn.status else "confirmed",
        "recurring_id": txn.recurring_id,
    }


def _recurring_payload(item: RecurringItem) -> dict[str, object]:
    return {
        "id": item.id,
        "label": item.label,
        "amount_cents": item.amount_cents,
        "type": item.type.value,
        "category_id": item.category_id,
        "category": item.category_label,
        "day_of_month": item.day_of_month,
        "start_date": item.start_date.isoformat() if item.start_date else None,
        "duration_months": item.duration_months,
        "end_date": item.end_date.isoformat() if item.end_date else None,
    }


def _planned_payload(item: PlannedItem) -> dict[str, object]:
    return {
        "id": item.id,
        "label": item.label,
        "amount_cents": item.amount_cents,
        "date": item.date.isoformat(),
        "type": item.type.value,
        "category_id": item.category_id,
        "status": item.status.value,
    }


def _savings_payload(goal: SavingsGoal) -> dict[str, object]:
    return {
        "id": goal.id,
        "label": goal.label,
        "target_cents": goal.target_cents,
        "current_cents": goal.current_cents,
        "deadline": goal.deadline.isoformat() if goal.deadline else None,
        "progress": goal.progress,
    }


def _event_payload(event: Event) -> dict[str, object]:
    return {
        "kind": event.kind.value,
        "id": event.source_id,
        "label": event.label,
        "date": event.date.isoformat(),
        "amount_cents": event.amount_cents,
        "status": event.status,
        "category_id": event.category_id,
        "recurring_id": event.recurring_id,
    }


def _point_payload(point: ProjectionPoint) -> dict[str, object]:
    payload: dict[str, object] = {
        "date": point.date.isoformat(),
        "balance": point.balance,
        "balance_cents": point.balance_cents,
    }
    if point.label is not None:
        payload["label"] = point.label
        payload["amount_cents"] = point.amount_cents
    return payload


def _forecast_failure(what: str) -> HTTPException:
    logger.exception(f"{what}_failed")
    return HTTPException(status_code=500, detail=f"Unable to compute {what}")


@app.get("/api/transactions")
def list_transactions(db: Session = Depends(get_db)):
    return [_transaction_payload(t) for t in TransactionService(db).list_all()]


@app.post("/api/transactions")
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_payload(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, data: TransactionUpdate, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/recurring")
def list_recurring(db: Session = Depends(get_db)):
    return [_recurring_payload(r) for r in RecurringItemService(db).list_all()]


@app.post("/api/recurring")
def create_recurring(data: RecurringItemIn, db: Session = Depends(get_db)):
    try:
        item = RecurringItemService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _recurring_payload(item)


@app.put("/api/recurring/{item_id}")
def update_recurring(
    item_id: int, data: RecurringItemUpdate, db: Session = Depends(get_db)
):
    try:
        item = RecurringItemService(db).update(item_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _recurring_payload(item)


@app.delete("/api/recurring/{item_id}")
def delete_recurring(item_id: int, db: Session = Depends(get_db)):
    try:
        RecurringItemService(db).delete(item_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/recurring/{item_id}/status")
def recurring_status(
    item_id: int, month: Optional[str] = None, db: Session = Depends(get_db)
):
    try:
        RecurringItemService(db).get(item_id)
        if month:
            year, month_number = parse_month(month)
        else:
            today = local_today()
            year, month_number = today.year, today.month
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        status = ForecastService(db).recurring_status(item_id, year, month_number)
    except ReconciliationError:
        raise _forecast_failure("status")
    return {"month": f"{year:04d}-{month_number:02d}", "status": status}


@app.post("/api/recurring/{item_id}/mark-paid")
def mark_recurring_paid(
    item_id: int, paid_on: Optional[date] = None, db: Session = Depends(get_db)
):
    try:
        txn = OccurrenceService(db).mark_paid(item_id, paid_on)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_payload(txn)


@app.post("/api/recurring/{item_id}/realize")
def realize_occurrence(
    item_id: int, data: RealizeOccurrenceIn, db: Session = Depends(get_db)
):
    try:
        txn = OccurrenceService(db).realize(item_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_payload(txn)


@app.post("/api/recurring/{item_id}/skip")
def skip_occurrence(
    item_id: int, data: SkipOccurrenceIn, db: Session = Depends(get_db)
):
    try:
        txn = OccurrenceService(db).skip(item_id, data.date)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_payload(txn)


@app.get("/api/planned")
def list_planned(db: Session = Depends(get_db)):
    return [_planned_payload(p) for p in PlannedItemService(db).list_all()]


@app.post("/api/planned")
def create_planned(data: PlannedItemIn, db: Session = Depends(get_db)):
    try:
        item = PlannedItemService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _planned_payload(item)


@app.delete("/api/planned/{item_id}")
def delete_planned(item_id: int, db: Session = Depends(get_db)):
    try:
        PlannedItemService(db).delete(item_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/savings")
def list_savings(db: Session = Depends(get_db)):
    return [_savings_payload(g) for g in SavingsGoalService(db).list_all()]


@app.post("/api/savings")
def create_savings(data: SavingsGoalIn, db: Session = Depends(get_db)):
    return _savings_payload(SavingsGoalService(db).create(data))


@app.put("/api/savings/{goal_id}")
def update_savings(
    goal_id: int, data: SavingsProgressIn, db: Session = Depends(get_db)
):
    try:
        goal = SavingsGoalService(db).update_progress(goal_id, data.current_cents)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _savings_payload(goal)


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [_category_payload(c) for c in CategoryService(db).list_all()]


@app.post("/api/categories")
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _category_payload(category)


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int, data: CategoryUpdate, db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db).update(category_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _category_payload(category)


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/settings/{key}")
def get_setting(key: str, db: Session = Depends(get_db)):
    return SettingService(db).get(key)


@app.post("/api/settings")
def set_setting(data: SettingIn, db: Session = Depends(get_db)):
    value = data.value
    if data.key == INITIAL_BALANCE_KEY:
        try:
            value = int(value or 0)
        except (TypeError, ValueError) as exc:
            raise HTTPException(
                status_code=400, detail="initialBalance must be an integer"
            ) from exc
    SettingService(db).set(data.key, value)
    return {"success": True}


@app.get("/api/balance")
def get_balance(db: Session = Depends(get_db)):
    service = BalanceService(db)
    try:
        balance = service.current_balance()
        initial = service.settings.initial_balance_cents()
    except ReconciliationError:
        raise _forecast_failure("balance")
    return {"balance_cents": balance, "initial_balance_cents": initial}


@app.put("/api/balance")
def edit_balance(data: BalanceEditIn, db: Session = Depends(get_db)):
    service = BalanceService(db)
    try:
        new_initial = service.set_current_balance(data.balance_cents)
        balance = service.current_balance()
    except ReconciliationError:
        raise _forecast_failure("balance")
    return {"balance_cents": balance, "initial_balance_cents": new_initial}


@app.get("/api/projection")
def api_projection(months: Optional[int] = None, db: Session = Depends(get_db)):
    try:
        points = ForecastService(db).projection(months)
    except ReconciliationError:
        raise _forecast_failure("projection")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [_point_payload(p) for p in points]


@app.get("/api/reports/monthly")
def api_monthly_report(month: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        if month:
            year, month_number = parse_month(month)
        else:
            today = local_today()
            year, month_number = today.year, today.month
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        service = ForecastService(db)
        items = service.monthly_report(year, month_number)
        summary = service.monthly_summary(year, month_number)
        spending = service.monthly_spending(year, month_number)
    except ReconciliationError:
        raise _forecast_failure("report")
    labels = {c.id: c.label for c in CategoryService(db).list_all()}
    for bucket in spending:
        bucket["category"] = labels.get(bucket["category_id"], UNCATEGORIZED_LABEL)
    return {
        "month": month_period(year, month_number).slug,
        "items": [_event_payload(e) for e in items],
        "summary": summary,
        "spending": spending,
    }


@app.get("/api/events")
def api_events(request: Request, db: Session = Depends(get_db)):
    try:
        period = resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
            today=local_today(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        events = ForecastService(db).events(period)
    except ReconciliationError:
        raise _forecast_failure("events")
    return {
        "start": period.start.isoformat(),
        "end": period.last_day.isoformat(),
        "items": [_event_payload(e) for e in events],
    }


@app.get("/api/backup")
def download_backup(db: Session = Depends(get_db)):
    blob = BackupService(db).export()
    filename = f"budget_backup_{datetime.now().strftime('%Y-%m-%d')}.budget"
    return Response(
        content=blob,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/restore")
async def restore_backup(
    file: UploadFile = File(...), db: Session = Depends(get_db)
):
    blob = await file.read()
    if not blob:
        raise HTTPException(status_code=400, detail="Empty file")
    try:
        counts = BackupService(db).restore(blob)
    except BackupError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "restored": counts}
