from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import ExpenseType
from schemas import ExpenseIn, VehicleIn
from services import (
    CSVService,
    ExpenseService,
    OwnershipViolation,
    ReminderService,
    VehicleService,
)


def test_user_zero_sees_nothing_of_user_one() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vehicle = VehicleService(session, 1).create(VehicleIn(name="Golf", odometer=0))
        expense = ExpenseService(session, 1).add(
            ExpenseIn(
                vehicle_id=vehicle.id,
                type=ExpenseType.registration,
                date=datetime(2024, 2, 1),
                odometer=100,
                total_cost_cents=9000,
            )
        ).expense

        assert VehicleService(session, 0).list_all() == []
        with pytest.raises(OwnershipViolation):
            VehicleService(session, 0).get(vehicle.id)
        with pytest.raises(OwnershipViolation):
            ExpenseService(session, 0).soft_delete(expense.id)
        with pytest.raises(OwnershipViolation):
            ReminderService(session, 0).pending(vehicle.id)
        with pytest.raises(OwnershipViolation):
            CSVService(session, 0).export(vehicle.id)
        assert not expense.is_deleted


def test_services_require_a_caller() -> None:
    engine = create_engine("sqlite:///:memory:")

    with Session(engine) as session:
        with pytest.raises(TypeError):
            VehicleService(session)
