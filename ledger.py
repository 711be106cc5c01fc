from datetime import date
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from models import (
    Budget,
    BudgetStatus,
    RecurringStatus,
    RecurringTransaction,
    Transaction,
    TransactionType,
)

NON_TERMINAL_BUDGET_STATUSES = (BudgetStatus.active, BudgetStatus.exceeded)


class LedgerQueryService:
    """Read-side queries the recalculation and generation sweeps depend on."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def sum_expenses(
        self,
        user_id: int,
        category_id: Optional[int],
        start: date,
        end: date,
    ) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == user_id,
            Transaction.deleted_at.is_(None),
            Transaction.type == TransactionType.expense,
            Transaction.transaction_date.between(start, end),
        )
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def find_non_terminal_budgets(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.status.in_(NON_TERMINAL_BUDGET_STATUSES))
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()

    def find_budgets_overlapping(
        self, user_id: int, on_date: date, category_id: int
    ) -> list[Budget]:
        # Any status: paused and completed budgets still track their spend.
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == user_id,
                Budget.start_date <= on_date,
                Budget.end_date >= on_date,
                or_(Budget.category_id == category_id, Budget.category_id.is_(None)),
            )
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()

    def find_due_templates(self, today: date) -> list[RecurringTransaction]:
        # Templates past their end date are included so the sweep can complete them.
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.status == RecurringStatus.active,
                or_(
                    RecurringTransaction.next_execution_date <= today,
                    RecurringTransaction.end_date < today,
                ),
            )
            .order_by(RecurringTransaction.next_execution_date, RecurringTransaction.id)
        )
        return self.session.scalars(stmt).all()
