from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from csv_utils import CSVHeaderError, parse_fuel_log
from database import Base
from models import Expense
from schemas import VehicleIn
from services import ExpenseService, FuelLogImportService, VehicleService


FUEL_LOG = (
    "fuelup_date,odometer,price,litres,notes\n"
    "2024-01-05,10100,1.75,40,first\n"
    "2024-01-20,10600,1.80,38,second\n"
    "not-a-date,10700,1.80,30,\n"
)


def test_parse_fuel_log_computes_totals_and_reports_bad_rows() -> None:
    rows, errors = parse_fuel_log(FUEL_LOG)

    assert [r.total_cost_cents for r in rows] == [7000, 6840]
    assert rows[0].date == datetime(2024, 1, 5)
    assert errors == ["Row 3: Invalid date: not-a-date"]


def test_parse_fuel_log_requires_its_columns() -> None:
    with pytest.raises(CSVHeaderError, match="litres"):
        parse_fuel_log("fuelup_date,odometer,price\n2024-01-05,10100,1.75\n")


def test_import_inserts_and_advances_odometer() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=10000))
        summary = FuelLogImportService(session, 1).import_file(vehicle.id, FUEL_LOG)

        assert summary.imported == 2
        assert summary.duplicatesSkipped == 0
        assert summary.updatedOdometer == 10600

        brands = {e.fuel_brand for e in session.scalars(select(Expense))}
        assert brands == {"imported"}


def test_reimport_matches_same_calendar_day() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=10000))
        importer = FuelLogImportService(session, 1)
        importer.import_file(vehicle.id, FUEL_LOG)

        later_same_day = (
            "fuelup_date,odometer,price,litres,notes\n"
            "2024-01-05 18:30,10100,1.75,40,again\n"
        )
        summary = importer.import_file(vehicle.id, later_same_day)
        assert summary.imported == 0
        assert summary.duplicatesSkipped == 1
        assert len(session.scalars(select(Expense)).all()) == 2


def test_reimport_restores_soft_deleted_fill_up() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=10000))
        importer = FuelLogImportService(session, 1)
        importer.import_file(vehicle.id, FUEL_LOG)

        expenses = ExpenseService(session, 1)
        first = next(e for e in expenses.list_active(vehicle.id) if e.odometer == 10100)
        expenses.soft_delete(first.id)

        summary = importer.import_file(vehicle.id, FUEL_LOG)
        assert summary.imported == 0
        assert summary.duplicatesSkipped == 2
        assert not first.is_deleted
        assert len(expenses.list_active(vehicle.id)) == 2
