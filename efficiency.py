import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import Expense, ExpenseType


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EfficiencyAlert:
    baseline: float
    current: float

    @property
    def drop_percent(self) -> float:
        return round((1 - self.current / self.baseline) * 100, 1)

    @property
    def message(self) -> str:
        return (
            f"Significant drop detected! Fuel efficiency is {self.drop_percent}% below "
            f"your recent average ({self.current:.2f} vs {self.baseline:.2f} per liter)."
        )


def recent_fuel_entries(
    session: Session,
    vehicle_id: int,
    *,
    exclude_id: Optional[int] = None,
    limit: Optional[int] = None,
) -> list[Expense]:
    """Most recent active fuel entries of a vehicle, newest first."""
    limit = limit or get_settings().efficiency_window
    stmt = (
        select(Expense)
        .where(
            Expense.vehicle_id == vehicle_id,
            Expense.type == ExpenseType.fuel,
            Expense.deleted_at.is_(None),
        )
        .order_by(Expense.date.desc(), Expense.id.desc())
        .limit(limit)
    )
    if exclude_id is not None:
        stmt = stmt.where(Expense.id != exclude_id)
    return list(session.scalars(stmt).all())


def baseline_rate(entries: Sequence[Expense]) -> Optional[float]:
    """Mean distance per liter over consecutive pairs of newest-first entries.

    Pairs without a positive distance and a positive volume are left out.
    """
    rates: list[float] = []
    for newer, older in zip(entries, entries[1:]):
        distance = newer.odometer - older.odometer
        liters = newer.liters or 0
        if distance > 0 and liters > 0:
            rates.append(distance / liters)
    if not rates:
        return None
    return sum(rates) / len(rates)


def analyze(
    prior: Sequence[Expense],
    new_entry: Expense,
    *,
    window: Optional[int] = None,
    drop_ratio: Optional[float] = None,
) -> Optional[EfficiencyAlert]:
    settings = get_settings()
    window = window or settings.efficiency_window
    drop_ratio = drop_ratio or settings.efficiency_drop_ratio
    if new_entry.type != ExpenseType.fuel or len(prior) < window:
        return None
    prior = list(prior)[:window]
    baseline = baseline_rate(prior)
    if baseline is None:
        return None
    distance = new_entry.odometer - prior[0].odometer
    if distance <= 0 or not new_entry.liters or new_entry.liters <= 0:
        return None
    current = distance / new_entry.liters
    if current < baseline * drop_ratio:
        return EfficiencyAlert(baseline=baseline, current=current)
    return None


def check_fuel_entry(session: Session, expense: Expense) -> Optional[EfficiencyAlert]:
    prior = recent_fuel_entries(session, expense.vehicle_id, exclude_id=expense.id)
    alert = analyze(prior, expense)
    if alert:
        logger.info(
            f"efficiency_drop: vehicle_id={expense.vehicle_id} expense_id={expense.id} "
            f"baseline={alert.baseline:.2f} current={alert.current:.2f}"
        )
    return alert
