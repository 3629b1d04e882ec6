import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from models import Expense, ExpenseType, ServiceReminder, Vehicle


logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Calendar-month arithmetic; a day past the target month's end snaps to it."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


@dataclass(frozen=True)
class ReminderStatus:
    reminder_id: int
    type: str
    due_odometer: Optional[float]
    due_date: Optional[date]
    km_until_due: float
    days_until_due: int
    due_by_distance: bool
    due_by_time: bool
    upcoming: bool

    @property
    def is_due(self) -> bool:
        return self.due_by_distance or self.due_by_time

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.reminder_id,
            "type": self.type,
            "status": "due" if self.is_due else "upcoming",
            "dueOdometer": self.due_odometer,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "kmUntilDue": self.km_until_due,
            "daysUntilDue": self.days_until_due,
            "dueByDistance": self.due_by_distance,
            "dueByTime": self.due_by_time,
        }


def evaluate_reminder(
    reminder: ServiceReminder,
    current_odometer: float,
    today: Optional[date] = None,
    *,
    distance_threshold: Optional[float] = None,
    days_threshold: Optional[int] = None,
) -> ReminderStatus:
    """Distance and time triggers fire independently; either one makes it due."""
    settings = get_settings()
    today = today or local_today()
    if distance_threshold is None:
        distance_threshold = settings.reminder_distance_threshold
    if days_threshold is None:
        days_threshold = settings.reminder_days_threshold

    due_odometer = None
    km_until_due = 0.0
    due_by_distance = False
    near_by_distance = False
    if reminder.distance_interval:
        due_odometer = reminder.last_service_odometer + reminder.distance_interval
        remaining = due_odometer - current_odometer
        due_by_distance = current_odometer >= due_odometer
        near_by_distance = remaining <= distance_threshold
        km_until_due = max(remaining, 0)

    due_date = None
    days_until_due = 0
    due_by_time = False
    near_by_time = False
    if reminder.time_interval_months:
        due_date = add_months(
            reminder.last_service_date.date(), reminder.time_interval_months
        )
        remaining_days = (due_date - today).days
        due_by_time = today >= due_date
        near_by_time = remaining_days <= days_threshold
        days_until_due = max(remaining_days, 0)

    is_due = due_by_distance or due_by_time
    return ReminderStatus(
        reminder_id=reminder.id,
        type=reminder.type,
        due_odometer=due_odometer,
        due_date=due_date,
        km_until_due=km_until_due,
        days_until_due=days_until_due,
        due_by_distance=due_by_distance,
        due_by_time=due_by_time,
        upcoming=not is_due and (near_by_distance or near_by_time),
    )


def pending_reminders(
    vehicle: Vehicle, today: Optional[date] = None
) -> list[ReminderStatus]:
    """Due and upcoming statuses for the vehicle's enabled reminders, due first."""
    statuses = [
        evaluate_reminder(reminder, vehicle.odometer, today)
        for reminder in vehicle.reminders
        if reminder.enabled
    ]
    pending = [s for s in statuses if s.is_due or s.upcoming]
    return sorted(
        pending,
        key=lambda s: (
            not s.is_due,
            s.due_date or date.max,
            s.km_until_due if s.due_odometer is not None else float("inf"),
        ),
    )


def service_alerts(vehicle: Vehicle, today: Optional[date] = None) -> list[str]:
    alerts: list[str] = []
    for reminder in vehicle.reminders:
        if not reminder.enabled:
            continue
        status = evaluate_reminder(reminder, vehicle.odometer, today)
        if status.due_by_distance:
            alerts.append(f"Service due: {reminder.type} (odometer)")
        if status.due_by_time:
            alerts.append(f"Service due: {reminder.type} (time-based)")
    return alerts


class ReminderScheduler:
    """Keeps a vehicle's reminders in step with its service history."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def latest_service(
        self, vehicle_id: int, service_type: str, *, exclude_id: Optional[int] = None
    ) -> Optional[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.vehicle_id == vehicle_id,
                Expense.type == ExpenseType.service,
                Expense.deleted_at.is_(None),
                func.lower(Expense.service_type) == service_type.strip().lower(),
            )
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(1)
        )
        if exclude_id is not None:
            stmt = stmt.where(Expense.id != exclude_id)
        return self.session.scalar(stmt)

    def on_service_recorded(
        self,
        vehicle: Vehicle,
        expense: Expense,
        *,
        enabled: bool = True,
        distance_interval: Optional[float] = None,
        time_interval_months: Optional[int] = None,
    ) -> Optional[ServiceReminder]:
        reminder = vehicle.reminder_for(expense.service_type)
        if reminder is None:
            if not enabled:
                return None
            reminder = vehicle.track_reminder(
                expense.service_type,
                distance_interval=distance_interval or 0,
                time_interval_months=time_interval_months or 0,
                last_service_odometer=expense.odometer,
                last_service_date=expense.date,
            )
            logger.info(
                f"reminder_created: vehicle_id={vehicle.id} type={reminder.type}"
            )
            return reminder

        if enabled and not reminder.enabled:
            reminder.set_enabled(True)
        # a backdated service never moves the anchor backwards
        if expense.date >= reminder.last_service_date:
            reminder.record_service(expense.odometer, expense.date)
        if distance_interval or time_interval_months:
            reminder.set_intervals(
                distance_interval or None, time_interval_months or None
            )
        logger.info(
            f"reminder_updated: vehicle_id={vehicle.id} type={reminder.type} "
            f"odometer={expense.odometer}"
        )
        return reminder

    def sync_with_history(
        self,
        vehicle: Vehicle,
        service_type: str,
        *,
        removed: Optional[Expense] = None,
        previous_anchor: Optional[tuple[datetime, float]] = None,
    ) -> Optional[ServiceReminder]:
        """Point the reminder at the most recent surviving service of its type.

        A later surviving service always wins. When the reminder was anchored on
        the record that was removed or edited it rolls back to the survivor. With
        no service of the type left the reminder is disabled and kept.
        """
        reminder = vehicle.reminder_for(service_type)
        if reminder is None:
            return None
        survivor = self.latest_service(
            vehicle.id, service_type, exclude_id=removed.id if removed else None
        )
        if survivor is None:
            if reminder.enabled:
                reminder.set_enabled(False)
                logger.info(
                    f"reminder_disabled: vehicle_id={vehicle.id} type={reminder.type}"
                )
            return reminder

        anchor = (reminder.last_service_date, reminder.last_service_odometer)
        if removed is not None:
            previous_anchor = (removed.date, removed.odometer)
        anchored_on_changed = previous_anchor is not None and anchor == previous_anchor
        if survivor.date >= reminder.last_service_date or anchored_on_changed:
            if (survivor.date, survivor.odometer) != anchor:
                reminder.record_service(survivor.odometer, survivor.date)
                logger.info(
                    f"reminder_rolled_back: vehicle_id={vehicle.id} type={reminder.type} "
                    f"expense_id={survivor.id}"
                )
        return reminder
