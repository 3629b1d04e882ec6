from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ExpenseType(str, Enum):
    fuel = "fuel"
    service = "service"
    insurance = "insurance"
    registration = "registration"

    @property
    def detail_fields(self) -> tuple[str, ...]:
        """Category-specific fields that apply to this expense type."""
        return EXPENSE_DETAIL_FIELDS[self]

    @property
    def required_detail_fields(self) -> tuple[str, ...]:
        """Detail fields a single write must supply; the rest can be derived."""
        return tuple(f for f in self.detail_fields if f not in DERIVED_DETAIL_FIELDS)


# Shared by the single-write validator and the CSV row validator.
EXPENSE_DETAIL_FIELDS: dict[ExpenseType, tuple[str, ...]] = {
    ExpenseType.fuel: ("fuel_brand", "price_per_liter", "liters"),
    ExpenseType.service: ("service_type",),
    ExpenseType.insurance: (),
    ExpenseType.registration: (),
}

ALL_DETAIL_FIELDS: tuple[str, ...] = ("fuel_brand", "price_per_liter", "liters", "service_type")

# liters = total cost / price per liter when a single write leaves it out
DERIVED_DETAIL_FIELDS = frozenset({"liters"})


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Vehicle(Base, TimestampMixin):
    """Owning aggregate for service reminders.

    Reminders are reached through the methods below so that a reminder is never
    removed once created; it can only be disabled. Any reminder mutation goes
    through `touch()`, which bumps the row version so that two requests editing
    the same vehicle's reminders cannot both commit.
    """

    __tablename__ = "vehicles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    odometer: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    reminders: Mapped[list["ServiceReminder"]] = relationship(
        "ServiceReminder",
        back_populates="vehicle",
        order_by="ServiceReminder.id",
        cascade="save-update, merge",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("odometer >= 0", name="ck_vehicle_odometer_positive"),
        Index("ix_vehicles_user", "user_id"),
    )

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()

    def advance_odometer(self, value: float) -> bool:
        """Raise the stored odometer to `value`; never lowers it."""
        if value is None or value <= self.odometer:
            return False
        self.odometer = value
        return True

    def reminder_for(self, service_type: str) -> Optional["ServiceReminder"]:
        wanted = service_type.strip().lower()
        for reminder in self.reminders:
            if reminder.type.strip().lower() == wanted:
                return reminder
        return None

    def get_reminder(self, reminder_id: int) -> Optional["ServiceReminder"]:
        for reminder in self.reminders:
            if reminder.id == reminder_id:
                return reminder
        return None

    def track_reminder(
        self,
        service_type: str,
        *,
        distance_interval: float,
        time_interval_months: int,
        last_service_odometer: float,
        last_service_date: datetime,
    ) -> "ServiceReminder":
        if self.reminder_for(service_type) is not None:
            raise ValueError(f"Reminder for '{service_type}' already exists")
        reminder = ServiceReminder(
            type=service_type.strip(),
            distance_interval=distance_interval,
            time_interval_months=time_interval_months,
            last_service_odometer=last_service_odometer,
            last_service_date=last_service_date,
            enabled=True,
        )
        self.reminders.append(reminder)
        self.touch()
        return reminder


class ServiceReminder(Base, TimestampMixin):
    __tablename__ = "service_reminders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(
        ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(120), nullable=False)
    # 0 switches the matching trigger off
    distance_interval: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    time_interval_months: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_service_odometer: Mapped[float] = mapped_column(Float, nullable=False)
    last_service_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    vehicle: Mapped["Vehicle"] = relationship("Vehicle", back_populates="reminders")

    __table_args__ = (
        CheckConstraint("distance_interval >= 0", name="ck_reminder_distance_positive"),
        CheckConstraint("time_interval_months >= 0", name="ck_reminder_months_positive"),
        Index("ix_service_reminders_vehicle", "vehicle_id"),
    )

    def record_service(self, odometer: float, when: datetime) -> None:
        self.last_service_odometer = odometer
        self.last_service_date = when
        self.vehicle.touch()

    def set_intervals(
        self,
        distance_interval: Optional[float] = None,
        time_interval_months: Optional[int] = None,
    ) -> None:
        if distance_interval is not None:
            self.distance_interval = distance_interval
        if time_interval_months is not None:
            self.time_interval_months = time_interval_months
        self.vehicle.touch()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        self.vehicle.touch()


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    vehicle_id: Mapped[int] = mapped_column(
        ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[ExpenseType] = mapped_column(SAEnum(ExpenseType), nullable=False)
    fuel_brand: Mapped[Optional[str]] = mapped_column(String(120))
    price_per_liter: Mapped[Optional[float]] = mapped_column(Float)
    liters: Mapped[Optional[float]] = mapped_column(Float)
    service_type: Mapped[Optional[str]] = mapped_column(String(120))
    recurring_interval: Mapped[str] = mapped_column(
        String(40), nullable=False, default="none"
    )
    odometer: Mapped[float] = mapped_column(Float, nullable=False)
    total_cost_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    attachment_url: Mapped[Optional[str]] = mapped_column(String(500))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_by: Mapped[Optional[int]] = mapped_column(Integer)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    vehicle: Mapped["Vehicle"] = relationship("Vehicle")

    __table_args__ = (
        Index("ix_expenses_vehicle_type_date", "vehicle_id", "type", "date"),
        Index("ix_expenses_vehicle_deleted", "vehicle_id", "deleted_at"),
        CheckConstraint("total_cost_cents >= 0", name="ck_expenses_cost_positive"),
        CheckConstraint("odometer >= 0", name="ck_expenses_odometer_positive"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
