import csv
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional, Sequence

from models import ALL_DETAIL_FIELDS, Expense, ExpenseType
from schemas import CSVExpenseRow, ImportRowError


EXPENSE_HEADERS = [
    "type",
    "serviceDetails.serviceType",
    "fuelDetails.fuelBrand",
    "pricePerLiter",
    "liters",
    "recurringInterval",
    "odometer",
    "totalCost",
    "notes",
    "attachmentUrl",
    "isDeleted",
    "date",
]

COLUMN_FIELDS = {
    "type": "type",
    "serviceDetails.serviceType": "service_type",
    "fuelDetails.fuelBrand": "fuel_brand",
    "pricePerLiter": "price_per_liter",
    "liters": "liters",
    "recurringInterval": "recurring_interval",
    "odometer": "odometer",
    "totalCost": "total_cost_cents",
    "notes": "notes",
    "attachmentUrl": "attachment_url",
    "isDeleted": "is_deleted",
    "date": "date",
}

OPTIONAL_COLUMNS = frozenset({"notes", "attachmentUrl"})

TRUE_VALUES = {"1", "true", "yes", "y", "on"}


class CSVHeaderError(ValueError):
    pass


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_timestamp(value: str) -> datetime:
    """Parse an occurrence timestamp into a naive UTC datetime."""
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.strptime(value, "%d.%m.%Y")
        except ValueError:
            raise ValueError(f"Invalid date: {value}") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.replace(microsecond=parsed.microsecond // 1000 * 1000)


def format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def parse_number(value: str, column: str) -> float:
    try:
        return float(value.strip().replace(",", "."))
    except ValueError:
        raise ValueError(f"Invalid number for {column}: {value}") from None


def format_number(value: Optional[float]) -> str:
    if value is None:
        return ""
    return format(value, "f").rstrip("0").rstrip(".")


def format_cents(cents: int) -> str:
    return f"{cents / 100:.2f}"


def read_rows(content: str, required_headers: Sequence[str]) -> list[dict[str, str]]:
    """Read a CSV body; a missing required column rejects the whole file."""
    reader = csv.DictReader(StringIO(content.lstrip("\ufeff")))
    headers = [h.strip() for h in (reader.fieldnames or [])]
    missing = [h for h in required_headers if h not in headers]
    if missing:
        raise CSVHeaderError(f"Invalid CSV headers. Missing: {', '.join(missing)}")
    rows: list[dict[str, str]] = []
    for raw in reader:
        rows.append(
            {
                (key or "").strip(): (value or "").strip()
                for key, value in raw.items()
                if isinstance(value, str) or value is None
            }
        )
    return rows


def required_columns(expense_type: ExpenseType) -> list[str]:
    columns = []
    for column in EXPENSE_HEADERS:
        if column in OPTIONAL_COLUMNS:
            continue
        field = COLUMN_FIELDS[column]
        if field in ALL_DETAIL_FIELDS and field not in expense_type.detail_fields:
            continue
        columns.append(column)
    return columns


def validate_ledger_row(
    row: dict[str, str], index: int
) -> tuple[Optional[CSVExpenseRow], list[ImportRowError]]:
    type_raw = row.get("type", "")
    if not type_raw:
        return None, [
            ImportRowError(row=index, message="Missing value for required field: type")
        ]
    try:
        expense_type = ExpenseType(type_raw.lower())
    except ValueError:
        return None, [
            ImportRowError(row=index, message=f"Invalid expense type: {type_raw}")
        ]

    errors = [
        ImportRowError(row=index, message=f"Missing value for required field: {column}")
        for column in required_columns(expense_type)
        if not row.get(column)
    ]
    if errors:
        return None, errors

    try:
        parsed = CSVExpenseRow(
            type=expense_type,
            date=parse_timestamp(row["date"]),
            odometer=parse_number(row["odometer"], "odometer"),
            total_cost_cents=parse_amount(row["totalCost"]),
            fuel_brand=row.get("fuelDetails.fuelBrand") or None,
            price_per_liter=parse_number(row["pricePerLiter"], "pricePerLiter")
            if row.get("pricePerLiter")
            else None,
            liters=parse_number(row["liters"], "liters") if row.get("liters") else None,
            service_type=row.get("serviceDetails.serviceType") or None,
            recurring_interval=row["recurringInterval"],
            notes=row.get("notes") or None,
            attachment_url=row.get("attachmentUrl") or None,
            is_deleted=row["isDeleted"].lower() in TRUE_VALUES,
        )
    except ValueError as exc:
        return None, [ImportRowError(row=index, message=str(exc))]
    return parsed, []


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPENSE_HEADERS)
    for expense in expenses:
        writer.writerow(
            [
                expense.type.value,
                expense.service_type or "",
                expense.fuel_brand or "",
                format_number(expense.price_per_liter),
                format_number(expense.liters),
                expense.recurring_interval or "",
                format_number(expense.odometer),
                format_cents(expense.total_cost_cents),
                sanitize_csv_value(expense.notes or ""),
                expense.attachment_url or "",
                "true" if expense.is_deleted else "false",
                format_timestamp(expense.date),
            ]
        )
    return output.getvalue()


FUEL_LOG_HEADERS = ["fuelup_date", "odometer", "price", "litres"]


@dataclass(frozen=True)
class FuelLogRow:
    date: datetime
    odometer: float
    price_per_liter: float
    liters: float
    total_cost_cents: int
    notes: str


def parse_fuel_log(content: str) -> tuple[list[FuelLogRow], list[str]]:
    """Rows from a third-party fuel logging export; unusable rows are reported, not raised."""
    rows: list[FuelLogRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(read_rows(content, FUEL_LOG_HEADERS), start=1):
        try:
            odometer = parse_number(raw.get("odometer", ""), "odometer")
            price = parse_number(raw.get("price", ""), "price")
            liters = parse_number(raw.get("litres", ""), "litres")
            if liters <= 0 or price < 0 or odometer < 0:
                raise ValueError("odometer, price and litres must be positive")
            occurred = parse_timestamp(raw.get("fuelup_date", ""))
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
            continue
        total_cost_cents = int(
            (Decimal(str(price)) * Decimal(str(liters)) * 100).quantize(Decimal("1"))
        )
        rows.append(
            FuelLogRow(
                date=occurred,
                odometer=odometer,
                price_per_liter=price,
                liters=liters,
                total_cost_cents=total_cost_cents,
                notes=raw.get("notes", ""),
            )
        )
    return rows, errors
