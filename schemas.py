import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import ALL_DETAIL_FIELDS, ExpenseType


class VehicleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    odometer: float = Field(..., ge=0)


class ReminderRequest(BaseModel):
    """Reminder tracking request attached to a service expense write."""

    enabled: bool = True
    distance_interval: Optional[float] = Field(default=None, ge=0)
    time_interval_months: Optional[int] = Field(default=None, ge=0)


class ReminderIn(BaseModel):
    type: str = Field(..., min_length=1, max_length=120)
    distance_interval: float = Field(default=0, ge=0)
    time_interval_months: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _needs_a_trigger(self) -> "ReminderIn":
        if not self.distance_interval and not self.time_interval_months:
            raise ValueError("A reminder needs a distance or a time interval")
        return self


class ReminderUpdate(BaseModel):
    distance_interval: Optional[float] = Field(default=None, ge=0)
    time_interval_months: Optional[int] = Field(default=None, ge=0)


class ExpenseFields(BaseModel):
    type: ExpenseType
    date: dt.datetime
    odometer: float = Field(..., ge=0)
    total_cost_cents: int = Field(..., ge=0)
    fuel_brand: Optional[str] = Field(default=None, max_length=120)
    price_per_liter: Optional[float] = Field(default=None, gt=0)
    liters: Optional[float] = Field(default=None, gt=0)
    service_type: Optional[str] = Field(default=None, max_length=120)
    recurring_interval: str = Field(default="none", max_length=40)
    notes: Optional[str] = None
    attachment_url: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _category_details(self):
        missing = []
        for name in self.type.required_detail_fields:
            value = getattr(self, name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        if missing:
            raise ValueError(
                f"Missing required field(s) for {self.type.value} expense: "
                + ", ".join(missing)
            )
        # Details of other categories never reach storage.
        for name in ALL_DETAIL_FIELDS:
            if name not in self.type.detail_fields:
                setattr(self, name, None)
        if self.date.tzinfo is not None:
            self.date = self.date.astimezone(dt.timezone.utc).replace(tzinfo=None)
        # stored precision matches the CSV timestamp format
        self.date = self.date.replace(microsecond=self.date.microsecond // 1000 * 1000)
        return self


class ExpenseIn(ExpenseFields):
    vehicle_id: int
    force_add: bool = False
    reminder: Optional[ReminderRequest] = None


class ExpenseUpdate(ExpenseFields):
    pass


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    vehicle_id: int
    type: ExpenseType
    date: dt.datetime
    odometer: float
    total_cost_cents: int
    fuel_brand: Optional[str]
    price_per_liter: Optional[float]
    liters: Optional[float]
    service_type: Optional[str]
    recurring_interval: str
    notes: Optional[str]
    attachment_url: Optional[str]
    deleted_at: Optional[dt.datetime]


class VehicleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    odometer: float
    created_at: dt.datetime


class ReminderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    distance_interval: float
    time_interval_months: int
    last_service_odometer: float
    last_service_date: dt.datetime
    enabled: bool


class ImportRowError(BaseModel):
    row: int
    message: str


class ImportSummary(BaseModel):
    importedCount: int
    skippedCount: int
    errors: list[ImportRowError] = Field(default_factory=list)


class FuelLogImportSummary(BaseModel):
    imported: int
    duplicatesSkipped: int
    updatedOdometer: float


class CSVExpenseRow(ExpenseFields):
    is_deleted: bool = False
