from datetime import date
from typing import Optional

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidStateError
from models import (
    AUTO_PAYMENT_METHOD,
    Budget,
    Category,
    NotificationKind,
    RecurrenceFrequency,
    RecurringStatus,
    RecurringTransaction,
    Transaction,
    TransactionType,
)
from recurrence import CatchUpPolicy, RecurringEngine
from schemas import RecurringTransactionIn, RecurringTransactionUpdate
from services import RecurringTransactionService


def _memory_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _seed_template(
    session: Session,
    *,
    title: str = "Gym",
    next_execution_date: date = date(2024, 1, 1),
    end_date: Optional[date] = None,
    frequency: RecurrenceFrequency = RecurrenceFrequency.weekly,
    type: TransactionType = TransactionType.expense,
) -> RecurringTransaction:
    category = session.scalar(select(Category).where(Category.type == type))
    if category is None:
        category = Category(user_id=1, name=type.value.title(), type=type)
        session.add(category)
        session.flush()
    template = RecurringTransaction(
        user_id=1,
        title=title,
        amount_cents=2_500,
        type=type,
        category_id=category.id,
        frequency=frequency,
        start_date=date(2024, 1, 1),
        end_date=end_date,
        next_execution_date=next_execution_date,
        status=RecurringStatus.active,
    )
    session.add(template)
    session.commit()
    return template


def _generated(session: Session, template_id: int) -> list[Transaction]:
    stmt = (
        select(Transaction)
        .where(Transaction.origin_template_id == template_id)
        .order_by(Transaction.transaction_date)
    )
    return session.scalars(stmt).all()


def test_weekly_template_generates_and_advances(notifier):
    with _memory_session() as session:
        template = _seed_template(session)

        report = RecurringEngine(session, notifier=notifier).process_due(date(2024, 1, 1))

        assert report.generated == 1
        generated = _generated(session, template.id)
        assert len(generated) == 1
        txn = generated[0]
        assert txn.transaction_date == date(2024, 1, 1)
        assert txn.occurrence_date == date(2024, 1, 1)
        assert txn.payment_method == AUTO_PAYMENT_METHOD
        assert txn.amount_cents == 2_500
        session.refresh(template)
        assert template.last_generated_date == date(2024, 1, 1)
        assert template.next_execution_date == date(2024, 1, 8)
        assert template.status == RecurringStatus.active
        assert len(notifier.of_kind(NotificationKind.recurring_generated)) == 1


def test_template_completes_when_next_date_passes_end(notifier):
    with _memory_session() as session:
        template = _seed_template(session, end_date=date(2024, 1, 5))

        report = RecurringEngine(session, notifier=notifier).process_due(date(2024, 1, 1))

        assert report.generated == 1
        assert report.completed == 1
        session.refresh(template)
        assert template.next_execution_date == date(2024, 1, 8)
        assert template.status == RecurringStatus.completed


def test_running_twice_on_same_day_generates_once(notifier):
    with _memory_session() as session:
        template = _seed_template(session, frequency=RecurrenceFrequency.daily)
        engine = RecurringEngine(session, notifier=notifier)

        engine.process_due(date(2024, 1, 1))
        second = engine.process_recurring_transactions(date(2024, 1, 1))

        assert second.generated == 0
        assert len(_generated(session, template.id)) == 1


def test_generated_expense_updates_matching_budget(notifier):
    with _memory_session() as session:
        template = _seed_template(session)
        budget = Budget(
            user_id=1,
            category_id=template.category_id,
            name="January",
            limit_cents=2_000,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
        )
        session.add(budget)
        session.commit()

        RecurringEngine(session, notifier=notifier).process_due(date(2024, 1, 1))

        session.refresh(budget)
        assert budget.spent_cents == 2_500
        assert len(notifier.of_kind(NotificationKind.budget_exceeded)) == 1


def test_income_template_leaves_budgets_alone(notifier):
    with _memory_session() as session:
        template = _seed_template(session, title="Salary", type=TransactionType.income)
        session.add(
            Budget(
                user_id=1,
                name="Everything",
                limit_cents=1_000,
                start_date=date(2024, 1, 1),
                end_date=date(2024, 1, 31),
            )
        )
        session.commit()

        RecurringEngine(session, notifier=notifier).process_due(date(2024, 1, 1))

        assert len(_generated(session, template.id)) == 1
        assert session.scalar(select(Budget.spent_cents)) == 0


def test_single_policy_does_not_back_fill(notifier):
    with _memory_session() as session:
        template = _seed_template(session)

        RecurringEngine(session, notifier=notifier, policy=CatchUpPolicy.single).process_due(
            date(2024, 1, 20)
        )

        generated = _generated(session, template.id)
        assert [t.transaction_date for t in generated] == [date(2024, 1, 20)]
        session.refresh(template)
        assert template.next_execution_date == date(2024, 1, 27)


def test_back_fill_policy_generates_missed_occurrences(notifier):
    with _memory_session() as session:
        template = _seed_template(session)

        report = RecurringEngine(
            session, notifier=notifier, policy=CatchUpPolicy.back_fill
        ).process_due(date(2024, 1, 20))

        assert report.generated == 3
        generated = _generated(session, template.id)
        assert [t.occurrence_date for t in generated] == [
            date(2024, 1, 1),
            date(2024, 1, 8),
            date(2024, 1, 15),
        ]
        session.refresh(template)
        assert template.next_execution_date == date(2024, 1, 22)


def test_expired_template_is_completed_without_transaction(notifier):
    with _memory_session() as session:
        template = _seed_template(
            session, next_execution_date=date(2024, 1, 8), end_date=date(2024, 1, 10)
        )

        report = RecurringEngine(session, notifier=notifier).process_due(date(2024, 2, 1))

        assert report.generated == 0
        assert report.completed == 1
        assert _generated(session, template.id) == []
        session.refresh(template)
        assert template.status == RecurringStatus.completed


def test_failing_template_does_not_stop_sweep(notifier, monkeypatch):
    with _memory_session() as session:
        broken = _seed_template(session, title="Broken")
        healthy = _seed_template(session, title="Rent")
        original = RecurringEngine._build_transaction

        def build(template, occurrence_date):
            if template.title == "Broken":
                raise RuntimeError("cannot build")
            return original(template, occurrence_date)

        monkeypatch.setattr(RecurringEngine, "_build_transaction", staticmethod(build))

        report = RecurringEngine(session, notifier=notifier).process_due(date(2024, 1, 1))

        assert report.failed == 1
        assert report.generated == 1
        assert _generated(session, broken.id) == []
        assert len(_generated(session, healthy.id)) == 1
        session.refresh(broken)
        assert broken.next_execution_date == date(2024, 1, 1)
        assert broken.last_generated_date is None


def test_paused_template_is_skipped_until_resumed(notifier):
    with _memory_session() as session:
        template = _seed_template(session)
        service = RecurringTransactionService(session, notifier=notifier)
        service.pause(template.id)

        assert service.process_now(date(2024, 1, 1)).generated == 0

        service.resume(template.id)
        assert service.process_now(date(2024, 1, 1)).generated == 1


def test_service_creates_template_due_on_start_date(notifier):
    with _memory_session() as session:
        session.add(Category(user_id=1, name="Housing", type=TransactionType.expense))
        session.commit()
        category_id = session.scalar(select(Category.id))
        service = RecurringTransactionService(session, notifier=notifier)

        template = service.create(
            RecurringTransactionIn(
                title="Rent",
                amount_cents=90_000,
                type=TransactionType.expense,
                category_id=category_id,
                frequency=RecurrenceFrequency.monthly,
                start_date=date(2024, 1, 31),
            )
        )

        assert template.next_execution_date == date(2024, 1, 31)
        assert template.status == RecurringStatus.active
        out = service.to_out(template, today=date(2024, 1, 29))
        assert out.days_until_next_execution == 2


def test_cancelled_template_cannot_be_paused(notifier):
    with _memory_session() as session:
        template = _seed_template(session)
        service = RecurringTransactionService(session, notifier=notifier)

        assert service.cancel(template.id).status == RecurringStatus.cancelled
        with pytest.raises(InvalidStateError):
            service.pause(template.id)
        # Resume only applies to paused templates.
        assert service.resume(template.id).status == RecurringStatus.cancelled


def test_update_changes_amount_for_future_generations(notifier):
    with _memory_session() as session:
        template = _seed_template(session)
        service = RecurringTransactionService(session, notifier=notifier)

        service.update(template.id, RecurringTransactionUpdate(amount_cents=3_000))
        service.process_now(date(2024, 1, 1))

        assert _generated(session, template.id)[0].amount_cents == 3_000


def test_deleting_template_keeps_generated_transactions(notifier):
    with _memory_session() as session:
        template = _seed_template(session)
        service = RecurringTransactionService(session, notifier=notifier)
        service.process_now(date(2024, 1, 1))
        template_id = template.id

        service.delete(template_id)

        txn = session.scalar(select(Transaction))
        assert txn is not None
        assert txn.origin_template_id is None
        assert session.get(RecurringTransaction, template_id) is None


def test_back_fill_generates_missed_occurrences_before_completing(notifier):
    with _memory_session() as session:
        template = _seed_template(
            session, next_execution_date=date(2024, 1, 1), end_date=date(2024, 1, 10)
        )

        report = RecurringEngine(
            session, notifier=notifier, policy=CatchUpPolicy.back_fill
        ).process_due(date(2024, 2, 1))

        assert report.generated == 2
        assert report.completed == 1
        assert [t.occurrence_date for t in _generated(session, template.id)] == [
            date(2024, 1, 1),
            date(2024, 1, 8),
        ]
        session.refresh(template)
        assert template.status == RecurringStatus.completed
