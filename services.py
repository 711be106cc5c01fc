from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from audit import AuditService, budget_snapshot, template_snapshot, transaction_snapshot
from budget_status import is_period_active, percent_used
from errors import InvalidInputError, InvalidStateError, NotFoundError
from models import (
    Budget,
    BudgetStatus,
    Category,
    RecurringStatus,
    RecurringTransaction,
    Transaction,
    TransactionType,
)
from notifications import NotificationGateway
from recalculation import BudgetRecalculator, SweepReport, TransactionScope
from recurrence import GenerationReport, RecurringEngine, local_today
from schemas import (
    BudgetIn,
    BudgetOut,
    CategoryIn,
    RecurringTransactionIn,
    RecurringTransactionOut,
    RecurringTransactionUpdate,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = select(Category).where(Category.user_id == self.user_id)
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        stmt = stmt.order_by(Category.type, Category.name)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        exists = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                Category.name == data.name.strip(),
            )
        )
        if exists:
            raise InvalidInputError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        notifier: Optional[NotificationGateway] = None,
        recalculator: Optional[BudgetRecalculator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.recalculator = recalculator or BudgetRecalculator(session, notifier)
        self.audit = AuditService(session, self.user_id)

    def _category_for(self, category_id: int, txn_type: TransactionType) -> Category:
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.type != txn_type:
            raise InvalidInputError("Category type mismatch")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        self._category_for(data.category_id, data.type)
        txn = Transaction(
            user_id=self.user_id,
            title=data.title,
            description=data.description,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            transaction_date=data.transaction_date,
            payment_method=data.payment_method,
        )
        self.session.add(txn)
        self.session.flush()
        self.audit.record("TRANSACTION_CREATE", "Transaction", txn.id, None, transaction_snapshot(txn))
        self.session.commit()
        self.session.refresh(txn)
        self._sync_budgets(txn)
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        start: date,
        end: date,
        *,
        type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
            Transaction.transaction_date.between(start, end),
        )
        if type:
            stmt = stmt.where(Transaction.type == type)
        if category_id:
            stmt = stmt.where(Transaction.category_id == category_id)
        stmt = (
            stmt.order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        previous = TransactionScope.of(txn)
        before = transaction_snapshot(txn)

        if data.category_id is not None and data.category_id != txn.category_id:
            self._category_for(data.category_id, txn.type)
            txn.category_id = data.category_id
        if data.title is not None:
            txn.title = data.title
        if data.description is not None:
            txn.description = data.description
        if data.amount_cents is not None:
            txn.amount_cents = data.amount_cents
        if data.transaction_date is not None:
            txn.transaction_date = data.transaction_date

        self.session.flush()
        self.audit.record("TRANSACTION_UPDATE", "Transaction", txn.id, before, transaction_snapshot(txn))
        self.session.commit()
        self.session.refresh(txn)
        # Budgets of the old scope lose the amount, budgets of the new scope gain it.
        self._sync_budgets(txn, previous)
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        if txn.deleted_at is not None:
            return
        before = transaction_snapshot(txn)
        txn.deleted_at = datetime.utcnow()
        self.audit.record("TRANSACTION_DELETE", "Transaction", txn.id, before, transaction_snapshot(txn))
        self.session.commit()
        self._sync_budgets(txn)

    def restore(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        if txn.deleted_at is None:
            return txn
        before = transaction_snapshot(txn)
        txn.deleted_at = None
        self.audit.record("TRANSACTION_RESTORE", "Transaction", txn.id, before, transaction_snapshot(txn))
        self.session.commit()
        self._sync_budgets(txn)
        return txn

    def _sync_budgets(
        self, txn: Transaction, previous: Optional[TransactionScope] = None
    ) -> None:
        # The ledger change is already committed; the daily sweep repairs any miss.
        try:
            self.recalculator.recalculate_affected_by_transaction(txn, previous)
        except Exception:
            self.session.rollback()
            logger.warning(
                f"budget_sync_failed: transaction_id={txn.id}", exc_info=True
            )


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        notifier: Optional[NotificationGateway] = None,
        recalculator: Optional[BudgetRecalculator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.recalculator = recalculator or BudgetRecalculator(session, notifier)
        self.audit = AuditService(session, self.user_id)

    def _validate_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        if category.type != TransactionType.expense:
            raise InvalidInputError("Budgets can only be set for expense categories")

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def list(
        self,
        statuses: Optional[list[BudgetStatus]] = None,
        *,
        active_only: bool = False,
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
        )
        if active_only:
            stmt = stmt.where(
                Budget.status.in_([BudgetStatus.active, BudgetStatus.exceeded])
            )
        elif statuses:
            stmt = stmt.where(Budget.status.in_(statuses))
        stmt = stmt.order_by(Budget.start_date.desc(), Budget.id.desc())
        return self.session.scalars(stmt).all()

    def exceeded(self) -> list[Budget]:
        return self.list([BudgetStatus.exceeded])

    def create(self, data: BudgetIn) -> Budget:
        self._validate_category(data.category_id)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            name=data.name,
            description=data.description,
            limit_cents=data.limit_cents,
            spent_cents=0,
            start_date=data.start_date,
            end_date=data.end_date,
            status=BudgetStatus.active,
            threshold_percent=data.threshold_percent,
        )
        self.session.add(budget)
        self.session.flush()
        self.audit.record("BUDGET_CREATE", "Budget", budget.id, None, budget_snapshot(budget))
        # The insert commits together with the first recalculation.
        return self.recalculator.recalculate_one(budget.id)

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        self._validate_category(data.category_id)
        self.get(budget_id)

        def apply(budget: Budget) -> None:
            before = budget_snapshot(budget)
            budget.name = data.name
            budget.description = data.description
            budget.category_id = data.category_id
            budget.limit_cents = data.limit_cents
            budget.start_date = data.start_date
            budget.end_date = data.end_date
            budget.threshold_percent = data.threshold_percent
            self.audit.record("BUDGET_UPDATE", "Budget", budget.id, before, budget_snapshot(budget))

        return self.recalculator.recalculate_one(budget_id, mutate=apply)

    def delete(self, budget_id: int) -> None:
        with self.recalculator.locks.hold(("budget", budget_id)):
            budget = self.get(budget_id)
            self.audit.record("BUDGET_DELETE", "Budget", budget.id, budget_snapshot(budget), None)
            self.session.delete(budget)
            self.session.commit()

    def pause(self, budget_id: int) -> Budget:
        with self.recalculator.locks.hold(("budget", budget_id)):
            budget = self.get(budget_id)
            if budget.status != BudgetStatus.paused:
                before = budget_snapshot(budget)
                budget.status = BudgetStatus.paused
                self.audit.record("BUDGET_PAUSE", "Budget", budget.id, before, budget_snapshot(budget))
                self.session.commit()
            return budget

    def resume(self, budget_id: int) -> Budget:
        budget = self.get(budget_id)
        if budget.status != BudgetStatus.paused:
            return budget

        def apply(budget: Budget) -> None:
            if budget.status != BudgetStatus.paused:
                return
            before = budget_snapshot(budget)
            # Replaced by the derived status before the commit.
            budget.status = BudgetStatus.active
            self.audit.record("BUDGET_RESUME", "Budget", budget.id, before, budget_snapshot(budget))

        return self.recalculator.recalculate_one(budget_id, mutate=apply)

    def recalculate(self, budget_id: int) -> Budget:
        before = budget_snapshot(self.get(budget_id))
        budget = self.recalculator.recalculate_one(budget_id)
        self.audit.record("BUDGET_RECALCULATE", "Budget", budget.id, before, budget_snapshot(budget))
        self.session.commit()
        return budget

    def recalculate_all(self) -> SweepReport:
        return self.recalculator.recalculate_all_active()

    def summary(self, budget: Budget, today: Optional[date] = None) -> BudgetOut:
        today = today or local_today()
        used = percent_used(budget.spent_cents, budget.limit_cents)
        return BudgetOut(
            id=budget.id,
            name=budget.name,
            description=budget.description,
            category_id=budget.category_id,
            category_name=budget.category.name if budget.category else "All Categories",
            limit_cents=budget.limit_cents,
            spent_cents=budget.spent_cents,
            remaining_cents=budget.limit_cents - budget.spent_cents,
            percent_used=used,
            status=budget.status,
            start_date=budget.start_date,
            end_date=budget.end_date,
            threshold_percent=budget.threshold_percent,
            last_alert_sent_at=budget.last_alert_sent_at,
            is_period_active=is_period_active(budget.start_date, budget.end_date, today),
            is_threshold_reached=used >= budget.threshold_percent,
            created_at=budget.created_at,
            updated_at=budget.updated_at,
        )


class RecurringTransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        notifier: Optional[NotificationGateway] = None,
        recalculator: Optional[BudgetRecalculator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.recalculator = recalculator or BudgetRecalculator(session, notifier)
        self.audit = AuditService(session, self.user_id)

    def get(self, template_id: int) -> RecurringTransaction:
        template = self.session.get(RecurringTransaction, template_id)
        if not template or template.user_id != self.user_id:
            raise NotFoundError("Recurring transaction not found")
        return template

    def list(self) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .options(joinedload(RecurringTransaction.category))
            .where(RecurringTransaction.user_id == self.user_id)
            .order_by(RecurringTransaction.next_execution_date)
        )
        return self.session.scalars(stmt).all()

    def list_active(self) -> list[RecurringTransaction]:
        return [t for t in self.list() if t.status == RecurringStatus.active]

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type != data.type:
            raise InvalidInputError("Category type mismatch")
        template = RecurringTransaction(
            user_id=self.user_id,
            title=data.title,
            description=data.description,
            amount_cents=data.amount_cents,
            type=data.type,
            category_id=data.category_id,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            next_execution_date=data.start_date,
            status=RecurringStatus.active,
        )
        self.session.add(template)
        self.session.flush()
        self.audit.record("RECURRING_CREATE", "RecurringTransaction", template.id, None, template_snapshot(template))
        self.session.commit()
        self.session.refresh(template)
        return template

    def update(
        self, template_id: int, data: RecurringTransactionUpdate
    ) -> RecurringTransaction:
        with self.recalculator.locks.hold(("template", template_id)):
            template = self.get(template_id)
            before = template_snapshot(template)
            if data.title is not None:
                template.title = data.title
            if data.description is not None:
                template.description = data.description
            if data.amount_cents is not None:
                template.amount_cents = data.amount_cents
            if data.end_date is not None:
                if data.end_date < template.start_date:
                    raise InvalidInputError("End date must not be before start date")
                template.end_date = data.end_date
            self.audit.record("RECURRING_UPDATE", "RecurringTransaction", template.id, before, template_snapshot(template))
            self.session.commit()
            return template

    def delete(self, template_id: int) -> None:
        with self.recalculator.locks.hold(("template", template_id)):
            template = self.get(template_id)
            self.audit.record("RECURRING_DELETE", "RecurringTransaction", template.id, template_snapshot(template), None)
            self.session.delete(template)
            self.session.commit()

    def _set_status(
        self, template_id: int, action: str, allowed: set[RecurringStatus], target: RecurringStatus
    ) -> RecurringTransaction:
        with self.recalculator.locks.hold(("template", template_id)):
            template = self.get(template_id)
            if template.status == target:
                return template
            if template.status not in allowed:
                raise InvalidStateError(
                    f"Cannot {action.lower()} a {template.status.value} recurring transaction"
                )
            before = template_snapshot(template)
            template.status = target
            self.audit.record(f"RECURRING_{action}", "RecurringTransaction", template.id, before, template_snapshot(template))
            self.session.commit()
            return template

    def pause(self, template_id: int) -> RecurringTransaction:
        return self._set_status(
            template_id, "PAUSE", {RecurringStatus.active}, RecurringStatus.paused
        )

    def resume(self, template_id: int) -> RecurringTransaction:
        template = self.get(template_id)
        if template.status != RecurringStatus.paused:
            return template
        return self._set_status(
            template_id, "RESUME", {RecurringStatus.paused}, RecurringStatus.active
        )

    def cancel(self, template_id: int) -> RecurringTransaction:
        return self._set_status(
            template_id,
            "CANCEL",
            {RecurringStatus.active, RecurringStatus.paused},
            RecurringStatus.cancelled,
        )

    def process_now(self, today: Optional[date] = None) -> GenerationReport:
        engine = RecurringEngine(self.session, self.recalculator)
        return engine.process_due(today)

    def to_out(
        self, template: RecurringTransaction, today: Optional[date] = None
    ) -> RecurringTransactionOut:
        today = today or local_today()
        out = RecurringTransactionOut.model_validate(template)
        out.days_until_next_execution = (template.next_execution_date - today).days
        return out
