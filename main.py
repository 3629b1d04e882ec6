import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from auth import Caller, InvalidCallerToken, read_caller_token
from config import get_settings
from database import SessionLocal
from models import Expense
from schemas import (
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    ReminderIn,
    ReminderOut,
    ReminderUpdate,
    VehicleIn,
    VehicleOut,
)
from services import (
    CSVService,
    ExpenseService,
    FuelLogImportService,
    NotFound,
    Outcome,
    OwnershipViolation,
    ReminderService,
    VehicleService,
)


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


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

app = FastAPI(title="FuelScope", version=APP_VERSION)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_caller(request: Request) -> Caller:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        return read_caller_token(token.strip())
    except InvalidCallerToken as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, OwnershipViolation):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.exception_handler(StaleDataError)
async def stale_vehicle_handler(request: Request, exc: StaleDataError):
    logger.info(f"concurrent_update: path={request.url.path}")
    return JSONResponse(
        status_code=409,
        content={"detail": "Vehicle was modified by another request; please retry"},
    )


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"persistence_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _expense_json(expense: Expense) -> dict:
    return ExpenseOut.model_validate(expense).model_dump(mode="json")


async def _read_upload(file: UploadFile) -> str:
    raw = await file.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(raw) > get_settings().max_import_bytes:
        raise HTTPException(status_code=400, detail="File too large")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 CSV") from exc


@app.get("/api/ping")
def ping():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/vehicles", status_code=201)
def create_vehicle(
    data: VehicleIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    vehicle = VehicleService(db, caller.user_id).create(data)
    return VehicleOut.model_validate(vehicle).model_dump(mode="json")


@app.get("/api/vehicles")
def list_vehicles(
    db: Session = Depends(get_db), caller: Caller = Depends(current_caller)
):
    vehicles = VehicleService(db, caller.user_id).list_all()
    return [VehicleOut.model_validate(v).model_dump(mode="json") for v in vehicles]


@app.get("/api/vehicles/{vehicle_id}")
def get_vehicle(
    vehicle_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        vehicle = VehicleService(db, caller.user_id).get(vehicle_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    payload = VehicleOut.model_validate(vehicle).model_dump(mode="json")
    payload["reminders"] = [
        ReminderOut.model_validate(r).model_dump(mode="json") for r in vehicle.reminders
    ]
    return payload


@app.put("/api/vehicles/{vehicle_id}")
def update_vehicle(
    vehicle_id: int,
    data: VehicleIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        vehicle = VehicleService(db, caller.user_id).update(vehicle_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "message": "Vehicle updated successfully",
        "vehicle": VehicleOut.model_validate(vehicle).model_dump(mode="json"),
    }


@app.get("/api/vehicles/{vehicle_id}/expenses")
def list_expenses(
    vehicle_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        expenses = ExpenseService(db, caller.user_id).list_active(vehicle_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [_expense_json(e) for e in expenses]


@app.get("/api/vehicles/{vehicle_id}/expenses/deleted")
def list_deleted_expenses(
    vehicle_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        expenses = ExpenseService(db, caller.user_id).list_deleted(vehicle_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [_expense_json(e) for e in expenses]


@app.get("/api/vehicles/{vehicle_id}/expenses/export")
def export_expenses_endpoint(
    vehicle_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        csv_text = CSVService(db, caller.user_id).export(vehicle_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="expenses-{vehicle_id}.csv"'
        },
    )


@app.post("/api/vehicles/{vehicle_id}/expenses/import")
async def import_expenses_endpoint(
    vehicle_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    content = await _read_upload(file)
    try:
        summary = CSVService(db, caller.user_id).import_batch(vehicle_id, content)
    except ValueError as exc:
        raise http_error(exc) from exc
    return summary.model_dump()


@app.post("/api/import/fuel/{vehicle_id}", status_code=201)
async def import_fuel_log_endpoint(
    vehicle_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    content = await _read_upload(file)
    try:
        summary = FuelLogImportService(db, caller.user_id).import_file(
            vehicle_id, content
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "Fuel entries imported successfully", **summary.model_dump()}


@app.get("/api/vehicles/{vehicle_id}/reminders")
def list_reminders(
    vehicle_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        statuses = ReminderService(db, caller.user_id).pending(vehicle_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [status.as_dict() for status in statuses]


@app.post("/api/vehicles/{vehicle_id}/reminders", status_code=201)
def track_reminder(
    vehicle_id: int,
    data: ReminderIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        reminder = ReminderService(db, caller.user_id).track(vehicle_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ReminderOut.model_validate(reminder).model_dump(mode="json")


@app.put("/api/vehicles/{vehicle_id}/reminders/{reminder_id}")
def update_reminder(
    vehicle_id: int,
    reminder_id: int,
    data: ReminderUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        reminder = ReminderService(db, caller.user_id).update(
            vehicle_id, reminder_id, data
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return ReminderOut.model_validate(reminder).model_dump(mode="json")


@app.patch("/api/vehicles/{vehicle_id}/reminders/{reminder_id}/toggle")
def toggle_reminder(
    vehicle_id: int,
    reminder_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        reminder = ReminderService(db, caller.user_id).toggle(vehicle_id, reminder_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    state = "enabled" if reminder.enabled else "disabled"
    return {
        "message": f"Reminder has been {state}",
        "reminder": ReminderOut.model_validate(reminder).model_dump(mode="json"),
    }


@app.post("/api/expenses")
def add_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        result = ExpenseService(db, caller.user_id).add(data)
    except ValueError as exc:
        raise http_error(exc) from exc

    if result.outcome == Outcome.conflict:
        return JSONResponse(
            status_code=409,
            content={
                "error": "Duplicate expense detected.",
                "message": "A similar expense already exists. Resubmit with force_add to add it anyway.",
                "duplicate": _expense_json(result.expense),
            },
        )

    alert: Optional[str] = None
    if result.efficiency_alert:
        alert = result.efficiency_alert.message
    body = {
        "outcome": result.outcome.value,
        "alert": alert,
        "serviceAlerts": result.service_alerts,
        "expense": _expense_json(result.expense),
    }
    if result.outcome == Outcome.restored:
        body["message"] = "Soft-deleted expense restored successfully."
        return JSONResponse(status_code=200, content=body)
    body["message"] = "Expense recorded successfully"
    return JSONResponse(status_code=201, content=body)


@app.put("/api/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        expense = ExpenseService(db, caller.user_id).update(expense_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "Expense updated successfully", "expense": _expense_json(expense)}


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        ExpenseService(db, caller.user_id).soft_delete(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "Expense marked as deleted successfully"}
