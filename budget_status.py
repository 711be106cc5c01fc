"""Budget status derivation and alert throttling.

Everything in this module is pure: callers pass in the budget's current state,
the freshly aggregated spent amount and the clock readings, and get back what
the budget should look like afterwards. Persisting the result and delivering
the alert is the job of :mod:`recalculation`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from errors import InvalidStateError
from models import Budget, BudgetStatus

ALERT_COOLDOWN = timedelta(hours=24)

_HUNDRED = Decimal(100)
_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class BudgetSnapshot:
    limit_cents: Optional[int]
    start_date: date
    end_date: date
    threshold_percent: int
    status: BudgetStatus
    last_alert_sent_at: Optional[datetime]

    @classmethod
    def of(cls, budget: Budget) -> "BudgetSnapshot":
        return cls(
            limit_cents=budget.limit_cents,
            start_date=budget.start_date,
            end_date=budget.end_date,
            threshold_percent=budget.threshold_percent,
            status=budget.status,
            last_alert_sent_at=budget.last_alert_sent_at,
        )


@dataclass(frozen=True)
class BudgetEvaluation:
    spent_cents: int
    percent_used: Decimal
    status: BudgetStatus
    send_alert: bool
    threshold_reached: bool


def format_amount(cents: int) -> str:
    return str((Decimal(cents) / _HUNDRED).quantize(_CENTS))


def percent_used(spent_cents: int, limit_cents: int) -> Decimal:
    """Spent as a percentage of the limit, half-up to two decimals.

    A zero limit yields 0 rather than a division error.
    """
    if limit_cents == 0:
        return Decimal("0.00")
    ratio = Decimal(spent_cents) * _HUNDRED / Decimal(limit_cents)
    return ratio.quantize(_CENTS, rounding=ROUND_HALF_UP)


def is_period_active(start_date: date, end_date: date, today: date) -> bool:
    return start_date <= today <= end_date


def derive_status(
    snapshot: BudgetSnapshot, spent_cents: int, today: date
) -> BudgetStatus:
    """Status for the given spend.

    Paused is user-owned and survives recalculation. Otherwise the first
    matching rule wins: over the limit, then outside the period, then active.
    """
    if snapshot.status == BudgetStatus.paused:
        return BudgetStatus.paused
    if spent_cents > snapshot.limit_cents:
        return BudgetStatus.exceeded
    if not is_period_active(snapshot.start_date, snapshot.end_date, today):
        return BudgetStatus.completed
    return BudgetStatus.active


def should_alert(
    previous: BudgetStatus,
    new: BudgetStatus,
    last_alert_sent_at: Optional[datetime],
    now: datetime,
    cooldown: timedelta = ALERT_COOLDOWN,
) -> bool:
    """Fire only on the edge into exceeded, and never twice inside the cooldown."""
    if new != BudgetStatus.exceeded or previous == BudgetStatus.exceeded:
        return False
    if last_alert_sent_at is None:
        return True
    return now - last_alert_sent_at >= cooldown


def _check_contract(snapshot: BudgetSnapshot, spent_cents: int) -> None:
    if snapshot.limit_cents is None:
        raise InvalidStateError("Budget limit is missing")
    if snapshot.limit_cents < 0:
        raise InvalidStateError("Budget limit cannot be negative")
    if spent_cents is None or spent_cents < 0:
        raise InvalidStateError("Spent amount cannot be negative")
    if not 1 <= snapshot.threshold_percent <= 100:
        raise InvalidStateError("Threshold percent must be between 1 and 100")
    if snapshot.start_date > snapshot.end_date:
        raise InvalidStateError("Budget period ends before it starts")


def evaluate(
    snapshot: BudgetSnapshot,
    spent_cents: int,
    *,
    today: date,
    now: datetime,
    cooldown: timedelta = ALERT_COOLDOWN,
) -> BudgetEvaluation:
    _check_contract(snapshot, spent_cents)
    used = percent_used(spent_cents, snapshot.limit_cents)
    status = derive_status(snapshot, spent_cents, today)
    send_alert = should_alert(
        snapshot.status, status, snapshot.last_alert_sent_at, now, cooldown
    )
    return BudgetEvaluation(
        spent_cents=spent_cents,
        percent_used=used,
        status=status,
        send_alert=send_alert,
        threshold_reached=used >= Decimal(snapshot.threshold_percent),
    )


def alert_message(name: str, evaluation: BudgetEvaluation, limit_cents: int) -> str:
    return (
        f"Budget '{name}' exceeded its limit: spent "
        f"{format_amount(evaluation.spent_cents)} of {format_amount(limit_cents)} "
        f"({evaluation.percent_used}%)."
    )
