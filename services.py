from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from csv_utils import (
    EXPENSE_HEADERS,
    export_expenses,
    parse_fuel_log,
    read_rows,
    validate_ledger_row,
)
from efficiency import EfficiencyAlert, check_fuel_entry
from models import Expense, ExpenseType, ServiceReminder, Vehicle
from reminders import (
    ReminderScheduler,
    ReminderStatus,
    pending_reminders,
    service_alerts,
)
from schemas import (
    ExpenseFields,
    ExpenseIn,
    ExpenseUpdate,
    FuelLogImportSummary,
    ImportRowError,
    ImportSummary,
    ReminderIn,
    ReminderUpdate,
    VehicleIn,
)


logger = logging.getLogger(__name__)


class NotFound(ValueError):
    pass


class OwnershipViolation(ValueError):
    pass


class OdometerRollback(ValueError):
    pass


def derive_liters(total_cost_cents: int, price_per_liter: Optional[float]) -> Optional[float]:
    if not price_per_liter:
        return None
    return round(total_cost_cents / 100 / price_per_liter, 3)


def build_expense(user_id: int, vehicle_id: int, data: ExpenseFields) -> Expense:
    liters = data.liters
    if data.type == ExpenseType.fuel and liters is None:
        liters = derive_liters(data.total_cost_cents, data.price_per_liter)
    return Expense(
        user_id=user_id,
        vehicle_id=vehicle_id,
        type=data.type,
        fuel_brand=data.fuel_brand,
        price_per_liter=data.price_per_liter,
        liters=liters,
        service_type=data.service_type.strip() if data.service_type else None,
        recurring_interval=data.recurring_interval,
        odometer=data.odometer,
        total_cost_cents=data.total_cost_cents,
        notes=data.notes,
        attachment_url=data.attachment_url,
        date=data.date,
    )


def owned_vehicle(session: Session, user_id: int, vehicle_id: int) -> Vehicle:
    vehicle = session.get(Vehicle, vehicle_id)
    if not vehicle:
        raise NotFound("Vehicle not found")
    if vehicle.user_id != user_id:
        raise OwnershipViolation("You can only access your own vehicles")
    return vehicle


class OdometerGuard:
    """Keeps a vehicle's odometer monotonically non-decreasing."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def highest_expense_odometer(
        self, vehicle_id: int, *, exclude_id: Optional[int] = None
    ) -> Optional[float]:
        stmt = select(func.max(Expense.odometer)).where(
            Expense.vehicle_id == vehicle_id, Expense.deleted_at.is_(None)
        )
        if exclude_id is not None:
            stmt = stmt.where(Expense.id != exclude_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def validate_vehicle_edit(self, vehicle: Vehicle, new_odometer: float) -> None:
        latest = self.highest_expense_odometer(vehicle.id)
        if latest is not None and new_odometer < latest:
            logger.info(
                f"odometer_rejected: vehicle_id={vehicle.id} value={new_odometer} "
                f"latest_expense={latest}"
            )
            raise OdometerRollback(f"Odometer must be >= latest recorded ({latest:g})")
        if new_odometer < vehicle.odometer:
            logger.info(
                f"odometer_rejected: vehicle_id={vehicle.id} value={new_odometer} "
                f"current={vehicle.odometer}"
            )
            raise OdometerRollback(
                f"Odometer cannot be lowered below current ({vehicle.odometer:g})"
            )

    def validate_expense_update(self, expense: Expense, new_odometer: float) -> None:
        highest = self.highest_expense_odometer(expense.vehicle_id, exclude_id=expense.id)
        if highest is not None and new_odometer < highest:
            logger.info(
                f"odometer_rejected: expense_id={expense.id} value={new_odometer} "
                f"highest={highest}"
            )
            raise OdometerRollback(
                f"Odometer must be >= highest recorded expense ({highest:g})"
            )

    def advance(self, vehicle: Vehicle, odometer: Optional[float]) -> bool:
        previous = vehicle.odometer
        advanced = vehicle.advance_odometer(odometer)
        if advanced:
            logger.info(
                f"odometer_advanced: vehicle_id={vehicle.id} from={previous} to={odometer}"
            )
        return advanced


class Outcome(str, Enum):
    created = "created"
    restored = "restored"
    conflict = "conflict"


@dataclass(frozen=True)
class DuplicateKey:
    vehicle_id: int
    type: ExpenseType
    odometer: float
    total_cost_cents: int
    date: datetime
    fuel_brand: Optional[str] = None
    service_type: Optional[str] = None

    @classmethod
    def of(cls, vehicle_id: int, data: ExpenseFields | Expense) -> "DuplicateKey":
        return cls(
            vehicle_id=vehicle_id,
            type=data.type,
            odometer=data.odometer,
            total_cost_cents=data.total_cost_cents,
            date=data.date,
            fuel_brand=data.fuel_brand if data.type == ExpenseType.fuel else None,
            service_type=data.service_type if data.type == ExpenseType.service else None,
        )


@dataclass
class Reconciliation:
    outcome: Outcome
    expense: Expense


# overwritten from the candidate when a soft-deleted twin comes back
RESTORED_FIELDS = (
    "price_per_liter",
    "liters",
    "recurring_interval",
    "notes",
    "attachment_url",
)


class DuplicateReconciler:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _matching(self, key: DuplicateKey):
        stmt = select(Expense).where(
            Expense.vehicle_id == key.vehicle_id,
            Expense.type == key.type,
            Expense.odometer == key.odometer,
            Expense.total_cost_cents == key.total_cost_cents,
            Expense.date == key.date,
        )
        if key.type == ExpenseType.fuel:
            stmt = stmt.where(Expense.fuel_brand == key.fuel_brand)
        elif key.type == ExpenseType.service:
            stmt = stmt.where(Expense.service_type == key.service_type)
        return stmt.order_by(Expense.id).limit(1)

    def find_active(self, key: DuplicateKey) -> Optional[Expense]:
        return self.session.scalar(self._matching(key).where(Expense.deleted_at.is_(None)))

    def find_deleted(self, key: DuplicateKey) -> Optional[Expense]:
        return self.session.scalar(
            self._matching(key).where(Expense.deleted_at.is_not(None))
        )

    def find_same_day(
        self,
        vehicle_id: int,
        expense_type: ExpenseType,
        odometer: float,
        total_cost_cents: int,
        day: date,
    ) -> Optional[Expense]:
        """Calendar-day match used by the fuel-log import; includes soft-deleted rows."""
        start = datetime.combine(day, datetime.min.time())
        stmt = (
            select(Expense)
            .where(
                Expense.vehicle_id == vehicle_id,
                Expense.type == expense_type,
                Expense.odometer == odometer,
                Expense.total_cost_cents == total_cost_cents,
                Expense.date >= start,
                Expense.date < start + timedelta(days=1),
            )
            .order_by(Expense.deleted_at.is_not(None), Expense.id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    def reconcile(self, candidate: Expense, force_add: bool = False) -> Reconciliation:
        key = DuplicateKey.of(candidate.vehicle_id, candidate)
        existing = self.find_active(key)
        if existing and not force_add:
            logger.info(
                f"expense_conflict: vehicle_id={key.vehicle_id} existing_id={existing.id}"
            )
            return Reconciliation(Outcome.conflict, existing)

        deleted = self.find_deleted(key)
        if deleted:
            for name in RESTORED_FIELDS:
                setattr(deleted, name, getattr(candidate, name))
            deleted.deleted_at = None
            deleted.deleted_by = None
            self.session.flush()
            logger.info(
                f"expense_restored: id={deleted.id} vehicle_id={key.vehicle_id}"
            )
            return Reconciliation(Outcome.restored, deleted)

        self.session.add(candidate)
        self.session.flush()
        logger.info(f"expense_created: id={candidate.id} vehicle_id={key.vehicle_id}")
        return Reconciliation(Outcome.created, candidate)


class VehicleService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: VehicleIn) -> Vehicle:
        vehicle = Vehicle(user_id=self.user_id, name=data.name, odometer=data.odometer)
        self.session.add(vehicle)
        self.session.commit()
        self.session.refresh(vehicle)
        return vehicle

    def get(self, vehicle_id: int) -> Vehicle:
        return owned_vehicle(self.session, self.user_id, vehicle_id)

    def list_all(self) -> list[Vehicle]:
        stmt = (
            select(Vehicle)
            .where(Vehicle.user_id == self.user_id)
            .order_by(Vehicle.created_at, Vehicle.id)
        )
        return self.session.scalars(stmt).all()

    def update(self, vehicle_id: int, data: VehicleIn) -> Vehicle:
        vehicle = self.get(vehicle_id)
        if data.odometer != vehicle.odometer:
            OdometerGuard(self.session).validate_vehicle_edit(vehicle, data.odometer)
        vehicle.name = data.name
        vehicle.odometer = data.odometer
        self.session.commit()
        self.session.refresh(vehicle)
        return vehicle


@dataclass
class AddExpenseResult:
    outcome: Outcome
    expense: Expense
    efficiency_alert: Optional[EfficiencyAlert] = None
    service_alerts: list[str] = field(default_factory=list)


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, expense_id: int, *, include_deleted: bool = False) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or (expense.is_deleted and not include_deleted):
            raise NotFound("Expense not found")
        if expense.user_id != self.user_id:
            raise OwnershipViolation("You can only access your own expenses")
        return expense

    def list_active(self, vehicle_id: int) -> list[Expense]:
        owned_vehicle(self.session, self.user_id, vehicle_id)
        stmt = (
            select(Expense)
            .where(Expense.vehicle_id == vehicle_id, Expense.deleted_at.is_(None))
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        return self.session.scalars(stmt).all()

    def list_deleted(self, vehicle_id: int) -> list[Expense]:
        owned_vehicle(self.session, self.user_id, vehicle_id)
        stmt = (
            select(Expense)
            .where(Expense.vehicle_id == vehicle_id, Expense.deleted_at.is_not(None))
            .order_by(Expense.deleted_at.desc(), Expense.id.desc())
        )
        return self.session.scalars(stmt).all()

    def add(self, data: ExpenseIn) -> AddExpenseResult:
        vehicle = owned_vehicle(self.session, self.user_id, data.vehicle_id)
        candidate = build_expense(self.user_id, vehicle.id, data)
        result = DuplicateReconciler(self.session).reconcile(candidate, data.force_add)
        if result.outcome == Outcome.conflict:
            return AddExpenseResult(result.outcome, result.expense)

        expense = result.expense
        OdometerGuard(self.session).advance(vehicle, expense.odometer)

        alert = None
        if expense.type == ExpenseType.fuel:
            alert = check_fuel_entry(self.session, expense)

        if expense.type == ExpenseType.service:
            scheduler = ReminderScheduler(self.session)
            if data.reminder is not None:
                scheduler.on_service_recorded(
                    vehicle,
                    expense,
                    enabled=data.reminder.enabled,
                    distance_interval=data.reminder.distance_interval,
                    time_interval_months=data.reminder.time_interval_months,
                )
            else:
                scheduler.sync_with_history(vehicle, expense.service_type)

        self.session.commit()
        self.session.refresh(expense)
        return AddExpenseResult(
            result.outcome,
            expense,
            efficiency_alert=alert,
            service_alerts=service_alerts(vehicle),
        )

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        vehicle = owned_vehicle(self.session, self.user_id, expense.vehicle_id)
        guard = OdometerGuard(self.session)
        if data.odometer != expense.odometer:
            guard.validate_expense_update(expense, data.odometer)

        old_service_type = (
            expense.service_type if expense.type == ExpenseType.service else None
        )
        old_anchor = (expense.date, expense.odometer)

        updated = build_expense(self.user_id, vehicle.id, data)
        for name in (
            "type",
            "fuel_brand",
            "price_per_liter",
            "liters",
            "service_type",
            "recurring_interval",
            "odometer",
            "total_cost_cents",
            "notes",
            "attachment_url",
            "date",
        ):
            setattr(expense, name, getattr(updated, name))
        self.session.flush()
        guard.advance(vehicle, expense.odometer)

        scheduler = ReminderScheduler(self.session)
        if old_service_type:
            scheduler.sync_with_history(
                vehicle, old_service_type, previous_anchor=old_anchor
            )
        if expense.type == ExpenseType.service and (
            not old_service_type
            or expense.service_type.lower() != old_service_type.lower()
        ):
            scheduler.sync_with_history(vehicle, expense.service_type)

        self.session.commit()
        self.session.refresh(expense)
        logger.info(f"expense_updated: id={expense.id} vehicle_id={vehicle.id}")
        return expense

    def soft_delete(self, expense_id: int) -> None:
        expense = self.get(expense_id, include_deleted=True)
        if expense.is_deleted:
            return
        vehicle = owned_vehicle(self.session, self.user_id, expense.vehicle_id)
        expense.deleted_at = datetime.utcnow()
        expense.deleted_by = self.user_id
        self.session.flush()

        if expense.type == ExpenseType.service and expense.service_type:
            ReminderScheduler(self.session).sync_with_history(
                vehicle, expense.service_type, removed=expense
            )
        self.session.commit()
        logger.info(f"expense_deleted: id={expense.id} vehicle_id={vehicle.id}")


class ReminderService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _reminder(self, vehicle: Vehicle, reminder_id: int) -> ServiceReminder:
        reminder = vehicle.get_reminder(reminder_id)
        if not reminder:
            raise NotFound("Service reminder not found")
        return reminder

    def list_all(self, vehicle_id: int) -> list[ServiceReminder]:
        return list(owned_vehicle(self.session, self.user_id, vehicle_id).reminders)

    def pending(self, vehicle_id: int, today: Optional[date] = None) -> list[ReminderStatus]:
        vehicle = owned_vehicle(self.session, self.user_id, vehicle_id)
        return pending_reminders(vehicle, today)

    def track(self, vehicle_id: int, data: ReminderIn) -> ServiceReminder:
        vehicle = owned_vehicle(self.session, self.user_id, vehicle_id)
        reminder = vehicle.reminder_for(data.type)
        if reminder is None:
            reminder = vehicle.track_reminder(
                data.type,
                distance_interval=data.distance_interval,
                time_interval_months=data.time_interval_months,
                last_service_odometer=vehicle.odometer,
                last_service_date=datetime.utcnow(),
            )
            logger.info(f"reminder_created: vehicle_id={vehicle.id} type={reminder.type}")
        else:
            reminder.set_intervals(data.distance_interval, data.time_interval_months)
            if not reminder.enabled:
                reminder.set_enabled(True)
            logger.info(f"reminder_updated: vehicle_id={vehicle.id} type={reminder.type}")
        self.session.commit()
        self.session.refresh(reminder)
        return reminder

    def update(
        self, vehicle_id: int, reminder_id: int, data: ReminderUpdate
    ) -> ServiceReminder:
        vehicle = owned_vehicle(self.session, self.user_id, vehicle_id)
        reminder = self._reminder(vehicle, reminder_id)
        reminder.set_intervals(data.distance_interval, data.time_interval_months)
        self.session.commit()
        self.session.refresh(reminder)
        return reminder

    def toggle(self, vehicle_id: int, reminder_id: int) -> ServiceReminder:
        vehicle = owned_vehicle(self.session, self.user_id, vehicle_id)
        reminder = self._reminder(vehicle, reminder_id)
        reminder.set_enabled(not reminder.enabled)
        self.session.commit()
        self.session.refresh(reminder)
        logger.info(
            f"reminder_toggled: vehicle_id={vehicle.id} type={reminder.type} "
            f"enabled={reminder.enabled}"
        )
        return reminder


class CSVService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def import_batch(self, vehicle_id: int, content: str) -> ImportSummary:
        vehicle = owned_vehicle(self.session, self.user_id, vehicle_id)
        rows = read_rows(content, EXPENSE_HEADERS)
        reconciler = DuplicateReconciler(self.session)
        errors: list[ImportRowError] = []
        imported = 0
        skipped = 0
        highest: Optional[float] = None

        for idx, row in enumerate(rows, start=1):
            parsed, row_errors = validate_ledger_row(row, idx)
            if parsed is None:
                errors.extend(row_errors)
                skipped += 1
                continue
            if reconciler.find_active(DuplicateKey.of(vehicle.id, parsed)):
                skipped += 1
                continue
            expense = build_expense(self.user_id, vehicle.id, parsed)
            if parsed.is_deleted:
                expense.deleted_at = datetime.utcnow()
                expense.deleted_by = self.user_id
            self.session.add(expense)
            # later rows of the same batch must see this one
            self.session.flush()
            imported += 1
            if parsed.is_deleted:
                continue
            if highest is None or expense.odometer > highest:
                highest = expense.odometer

        OdometerGuard(self.session).advance(vehicle, highest)
        self.session.commit()
        logger.info(
            f"csv_import: vehicle_id={vehicle.id} imported={imported} "
            f"skipped={skipped} errors={len(errors)}"
        )
        return ImportSummary(importedCount=imported, skippedCount=skipped, errors=errors)

    def export(self, vehicle_id: int) -> str:
        owned_vehicle(self.session, self.user_id, vehicle_id)
        stmt = (
            select(Expense)
            .where(Expense.vehicle_id == vehicle_id, Expense.deleted_at.is_(None))
            .order_by(Expense.date, Expense.id)
        )
        return export_expenses(self.session.scalars(stmt).all())


class FuelLogImportService:
    """Imports fuel-ups exported by third-party fuel logging apps."""

    BRAND = "imported"

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def import_file(self, vehicle_id: int, content: str) -> FuelLogImportSummary:
        vehicle = owned_vehicle(self.session, self.user_id, vehicle_id)
        rows, errors = parse_fuel_log(content)
        for message in errors:
            logger.warning(f"fuel_import_row_skipped: vehicle_id={vehicle.id} {message}")

        reconciler = DuplicateReconciler(self.session)
        imported = 0
        duplicates = 0
        highest: Optional[float] = None
        for row in rows:
            existing = reconciler.find_same_day(
                vehicle.id,
                ExpenseType.fuel,
                row.odometer,
                row.total_cost_cents,
                row.date.date(),
            )
            if existing:
                duplicates += 1
                if existing.is_deleted:
                    existing.deleted_at = None
                    existing.deleted_by = None
                    existing.fuel_brand = self.BRAND
                    existing.price_per_liter = row.price_per_liter
                    existing.liters = row.liters
                    existing.notes = row.notes
                    existing.date = row.date
                    self.session.flush()
                    logger.info(f"expense_restored: id={existing.id} vehicle_id={vehicle.id}")
                    if highest is None or existing.odometer > highest:
                        highest = existing.odometer
                continue

            self.session.add(
                Expense(
                    user_id=self.user_id,
                    vehicle_id=vehicle.id,
                    type=ExpenseType.fuel,
                    fuel_brand=self.BRAND,
                    price_per_liter=row.price_per_liter,
                    liters=row.liters,
                    odometer=row.odometer,
                    total_cost_cents=row.total_cost_cents,
                    notes=row.notes,
                    date=row.date,
                )
            )
            self.session.flush()
            imported += 1
            if highest is None or row.odometer > highest:
                highest = row.odometer

        OdometerGuard(self.session).advance(vehicle, highest)
        self.session.commit()
        logger.info(
            f"fuel_import: vehicle_id={vehicle.id} imported={imported} "
            f"duplicates={duplicates} invalid={len(errors)}"
        )
        return FuelLogImportSummary(
            imported=imported,
            duplicatesSkipped=duplicates,
            updatedOdometer=vehicle.odometer,
        )
