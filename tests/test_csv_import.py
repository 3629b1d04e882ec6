from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from csv_utils import EXPENSE_HEADERS, CSVHeaderError, parse_amount, parse_timestamp
from database import Base
from models import Expense, ExpenseType
from schemas import ExpenseIn, VehicleIn
from services import CSVService, ExpenseService, VehicleService


HEADER = ",".join(EXPENSE_HEADERS)
FUEL_ROW = "fuel,,Shell,1.80,30,none,12000,54.00,,,false,2024-03-01T10:00:00.000Z"
SERVICE_ROW = (
    "service,Oil change,,,,none,12500,120.00,Synthetic,,false,2024-03-10T08:00:00.000Z"
)
FUEL_NO_LITERS = "fuel,,Shell,1.80,,none,12600,20.00,,,false,2024-03-12T08:00:00.000Z"
INSURANCE_ROW = "insurance,,,,,yearly,12600,400.00,,,false,2024-03-15T00:00:00Z"


def _csv(*rows: str, header: str = HEADER) -> str:
    return "\n".join((header,) + rows) + "\n"


def test_missing_header_aborts_whole_batch() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=10000))
        header = ",".join(h for h in EXPENSE_HEADERS if h != "totalCost")
        body = _csv(
            "fuel,,Shell,1.80,30,none,12000,,,false,2024-03-01T10:00:00Z",
            header=header,
        )

        with pytest.raises(CSVHeaderError, match="totalCost"):
            CSVService(session, 1).import_batch(vehicle.id, body)

        assert session.scalars(select(Expense)).all() == []
        assert vehicle.odometer == 10000


def test_invalid_row_is_reported_and_siblings_import() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=10000))
        summary = CSVService(session, 1).import_batch(
            vehicle.id, _csv(FUEL_ROW, SERVICE_ROW, FUEL_NO_LITERS, INSURANCE_ROW)
        )

        assert summary.importedCount == 3
        assert summary.skippedCount == 1
        assert [(e.row, e.message) for e in summary.errors] == [
            (3, "Missing value for required field: liters")
        ]
        assert vehicle.odometer == 12600

        types = sorted(e.type.value for e in session.scalars(select(Expense)))
        assert types == ["fuel", "insurance", "service"]
        fuel = session.scalars(select(Expense).where(Expense.type == ExpenseType.fuel)).one()
        assert fuel.total_cost_cents == 5400
        assert fuel.date == datetime(2024, 3, 1, 10, 0)
        assert fuel.service_type is None


def test_unknown_type_is_a_row_error() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=0))
        summary = CSVService(session, 1).import_batch(
            vehicle.id, _csv("parking,,,,,none,100,5.00,,,false,2024-03-01T10:00:00Z")
        )
        assert summary.importedCount == 0
        assert summary.errors[0].message == "Invalid expense type: parking"


def test_duplicates_within_batch_and_against_ledger_are_skipped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=0))
        service = CSVService(session, 1)

        first = service.import_batch(vehicle.id, _csv(FUEL_ROW, FUEL_ROW))
        assert (first.importedCount, first.skippedCount) == (1, 1)

        second = service.import_batch(vehicle.id, _csv(FUEL_ROW, SERVICE_ROW))
        assert (second.importedCount, second.skippedCount) == (1, 1)
        assert second.errors == []


def test_import_does_not_resurrect_deleted_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=0))
        expenses = ExpenseService(session, 1)
        original = expenses.add(
            ExpenseIn(
                vehicle_id=vehicle.id,
                type=ExpenseType.fuel,
                date=parse_timestamp("2024-03-01T10:00:00.000Z"),
                odometer=12000,
                total_cost_cents=5400,
                fuel_brand="Shell",
                price_per_liter=1.8,
                liters=30,
            )
        ).expense
        expenses.soft_delete(original.id)

        summary = CSVService(session, 1).import_batch(vehicle.id, _csv(FUEL_ROW))
        assert summary.importedCount == 1
        assert original.is_deleted
        assert len(expenses.list_active(vehicle.id)) == 1


def test_deleted_flag_is_kept_on_import() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=100))
        row = "insurance,,,,,yearly,90000,400.00,,,true,2024-03-15T00:00:00Z"
        summary = CSVService(session, 1).import_batch(vehicle.id, _csv(row))

        assert summary.importedCount == 1
        assert ExpenseService(session, 1).list_deleted(vehicle.id)[0].deleted_by == 1
        assert vehicle.odometer == 100


def test_export_writes_active_ledger_oldest_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=0))
        service = CSVService(session, 1)
        formula = "service,Oil change,,,,none,12500,120.00,=SUM(A1),,false,2024-03-10T08:00:00Z"
        service.import_batch(vehicle.id, _csv(formula, FUEL_ROW))

        lines = service.export(vehicle.id).splitlines()
        assert lines[0] == HEADER
        assert lines[1] == (
            "fuel,,Shell,1.8,30,none,12000,54.00,,,false,2024-03-01T10:00:00.000Z"
        )
        assert lines[2].startswith("service,Oil change,,,,none,12500,120.00,")
        assert "\t=SUM(A1)" in lines[2]
        assert lines[2].endswith("2024-03-10T08:00:00.000Z")


def test_parse_amount_accepts_comma_decimals() -> None:
    assert parse_amount("54,90") == 5490
    assert parse_amount("1.234,50") == 123450
    with pytest.raises(ValueError):
        parse_amount("-3")


def test_exported_ledger_reimports_as_duplicates() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=0))
        added = ExpenseService(session, 1).add(
            ExpenseIn(
                vehicle_id=vehicle.id,
                type=ExpenseType.insurance,
                date=datetime(2024, 3, 1, 10, 0, 0, 123456),
                odometer=12000,
                total_cost_cents=40000,
            )
        ).expense
        assert added.date == datetime(2024, 3, 1, 10, 0, 0, 123000)

        service = CSVService(session, 1)
        summary = service.import_batch(vehicle.id, service.export(vehicle.id))

        assert (summary.importedCount, summary.skippedCount) == (0, 1)
        assert len(session.scalars(select(Expense)).all()) == 1
