from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import ConcurrencyConflictError, NotFoundError
from ledger import LedgerQueryService
from models import AuditLog, Budget, BudgetStatus, Category, NotificationKind, Transaction, TransactionType
from recalculation import BudgetRecalculator, TransactionScope
from schemas import BudgetIn, CategoryIn, TransactionIn, TransactionUpdate
from services import BudgetService, CategoryService, TransactionService

PERIOD_START = date(2000, 1, 1)
PERIOD_END = date(2099, 12, 31)
TODAY = date(2024, 5, 15)
NOW = datetime(2024, 5, 15, 9, 0)


def _memory_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _category(session: Session, name: str, type=TransactionType.expense) -> Category:
    return CategoryService(session).create(CategoryIn(name=name, type=type))


def _expense(category_id: int, amount_cents: int, on: date = TODAY, type=TransactionType.expense) -> TransactionIn:
    return TransactionIn(
        title="Purchase",
        type=type,
        amount_cents=amount_cents,
        category_id=category_id,
        transaction_date=on,
    )


def test_expense_over_limit_marks_budget_exceeded_and_alerts_once(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, notifier=notifier)
        budget = budgets.create(
            BudgetIn(
                name="Food",
                category_id=food.id,
                limit_cents=100_000,
                start_date=PERIOD_START,
                end_date=PERIOD_END,
            )
        )
        assert budget.status == BudgetStatus.active
        assert budget.spent_cents == 0

        TransactionService(session, notifier=notifier).create(_expense(food.id, 120_000))

        budget = budgets.get(budget.id)
        assert budget.spent_cents == 120_000
        assert budget.status == BudgetStatus.exceeded
        assert budget.last_alert_sent_at is not None
        alerts = notifier.of_kind(NotificationKind.budget_exceeded)
        assert len(alerts) == 1
        assert "1200.00 of 1000.00" in alerts[0][1]

        budgets.recalculate(budget.id)
        assert len(notifier.of_kind(NotificationKind.budget_exceeded)) == 1


def test_recalculate_one_is_idempotent(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        budget = Budget(
            user_id=1,
            category_id=food.id,
            name="Food",
            limit_cents=1_000,
            start_date=date(2024, 5, 1),
            end_date=date(2024, 5, 31),
        )
        session.add(budget)
        session.add(
            Transaction(
                user_id=1,
                title="Lunch",
                type=TransactionType.expense,
                amount_cents=1_500,
                category_id=food.id,
                transaction_date=date(2024, 5, 10),
            )
        )
        session.commit()

        recalculator = BudgetRecalculator(session, notifier)
        first = recalculator.recalculate_one(budget.id, today=TODAY, now=NOW)
        state = (first.spent_cents, first.status, first.last_alert_sent_at)
        second = recalculator.recalculate_one(
            budget.id, today=TODAY, now=NOW + timedelta(minutes=5)
        )

        assert (second.spent_cents, second.status, second.last_alert_sent_at) == state
        assert state == (1_500, BudgetStatus.exceeded, NOW)
        assert len(notifier.sent) == 1


def test_missing_budget_raises_not_found(notifier):
    with _memory_session() as session:
        with pytest.raises(NotFoundError):
            BudgetRecalculator(session, notifier).recalculate_one(404, today=TODAY, now=NOW)


def test_all_categories_budget_counts_every_expense(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        travel = _category(session, "Travel")
        salary = _category(session, "Salary", TransactionType.income)
        budgets = BudgetService(session, notifier=notifier)
        overall = budgets.create(
            BudgetIn(
                name="Everything",
                limit_cents=50_000,
                start_date=PERIOD_START,
                end_date=PERIOD_END,
            )
        )
        transactions = TransactionService(session, notifier=notifier)
        transactions.create(_expense(food.id, 10_000))
        transactions.create(_expense(travel.id, 20_000))
        transactions.create(_expense(salary.id, 500_000, type=TransactionType.income))

        overall = budgets.get(overall.id)
        assert overall.spent_cents == 30_000
        assert overall.status == BudgetStatus.active
        assert budgets.summary(overall).category_name == "All Categories"


def test_income_transactions_do_not_touch_budgets(notifier, monkeypatch):
    with _memory_session() as session:
        calls = []
        monkeypatch.setattr(
            LedgerQueryService,
            "find_budgets_overlapping",
            lambda self, *args: calls.append(args) or [],
        )
        scope = TransactionScope(
            user_id=1,
            type=TransactionType.income,
            category_id=1,
            transaction_date=TODAY,
        )
        result = BudgetRecalculator(session, notifier).recalculate_affected_by_transaction(scope)
        assert result == []
        assert calls == []


def test_paused_budget_tracks_spend_without_alerting(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, notifier=notifier)
        budget = budgets.create(
            BudgetIn(
                name="Food",
                category_id=food.id,
                limit_cents=1_000,
                start_date=PERIOD_START,
                end_date=PERIOD_END,
            )
        )
        budgets.pause(budget.id)
        TransactionService(session, notifier=notifier).create(_expense(food.id, 5_000))

        budget = budgets.get(budget.id)
        assert budget.status == BudgetStatus.paused
        assert budget.spent_cents == 5_000
        assert notifier.sent == []

        resumed = budgets.resume(budget.id)
        assert resumed.status == BudgetStatus.exceeded
        assert len(notifier.of_kind(NotificationKind.budget_exceeded)) == 1


def test_update_recalculates_old_and_new_scope(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        travel = _category(session, "Travel")
        budgets = BudgetService(session, notifier=notifier)
        food_budget = budgets.create(
            BudgetIn(name="Food", category_id=food.id, limit_cents=10_000, start_date=PERIOD_START, end_date=PERIOD_END)
        )
        travel_budget = budgets.create(
            BudgetIn(name="Travel", category_id=travel.id, limit_cents=10_000, start_date=PERIOD_START, end_date=PERIOD_END)
        )
        transactions = TransactionService(session, notifier=notifier)
        txn = transactions.create(_expense(food.id, 4_000))
        assert budgets.get(food_budget.id).spent_cents == 4_000

        transactions.update(txn.id, TransactionUpdate(category_id=travel.id))

        assert budgets.get(food_budget.id).spent_cents == 0
        assert budgets.get(travel_budget.id).spent_cents == 4_000


def test_soft_delete_and_restore_recalculate(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, notifier=notifier)
        budget = budgets.create(
            BudgetIn(name="Food", category_id=food.id, limit_cents=10_000, start_date=PERIOD_START, end_date=PERIOD_END)
        )
        transactions = TransactionService(session, notifier=notifier)
        txn = transactions.create(_expense(food.id, 12_000))
        assert budgets.get(budget.id).status == BudgetStatus.exceeded

        transactions.soft_delete(txn.id)
        budget = budgets.get(budget.id)
        assert budget.spent_cents == 0
        assert budget.status == BudgetStatus.active

        transactions.restore(txn.id)
        assert budgets.get(budget.id).spent_cents == 12_000


def test_sweep_isolates_failing_budget(notifier, monkeypatch):
    with _memory_session() as session:
        food = _category(session, "Food")
        for name in ("First", "Broken", "Last"):
            session.add(
                Budget(
                    user_id=1,
                    category_id=food.id,
                    name=name,
                    limit_cents=1_000,
                    start_date=date(2024, 5, 1),
                    end_date=date(2024, 5, 31),
                )
            )
        session.add(
            Budget(
                user_id=1,
                category_id=food.id,
                name="Paused",
                limit_cents=1_000,
                start_date=date(2024, 5, 1),
                end_date=date(2024, 5, 31),
                status=BudgetStatus.paused,
            )
        )
        session.commit()
        broken_id = session.query(Budget).filter_by(name="Broken").one().id

        original = LedgerQueryService.sum_expenses

        def flaky_sum(self, user_id, category_id, start, end):
            if flaky_sum.budget_id == broken_id:
                raise RuntimeError("ledger unavailable")
            return original(self, user_id, category_id, start, end)

        original_load = BudgetRecalculator._load_for_update

        def tracking_load(self, budget_id):
            flaky_sum.budget_id = budget_id
            return original_load(self, budget_id)

        flaky_sum.budget_id = None
        monkeypatch.setattr(LedgerQueryService, "sum_expenses", flaky_sum)
        monkeypatch.setattr(BudgetRecalculator, "_load_for_update", tracking_load)

        report = BudgetRecalculator(session, notifier).recalculate_all_active(today=TODAY, now=NOW)

        assert report.processed == 2
        assert report.failed == 1
        assert report.failed_ids == [broken_id]


def test_completed_period_budget_is_marked_completed(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        budget = Budget(
            user_id=1,
            category_id=food.id,
            name="April",
            limit_cents=1_000,
            start_date=date(2024, 4, 1),
            end_date=date(2024, 4, 30),
        )
        session.add(budget)
        session.commit()

        result = BudgetRecalculator(session, notifier).recalculate_one(budget.id, today=TODAY, now=NOW)
        assert result.status == BudgetStatus.completed


def _seed_file_db(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        food = Category(user_id=1, name="Food", type=TransactionType.expense)
        session.add(food)
        session.flush()
        budget = Budget(
            user_id=1,
            category_id=food.id,
            name="Food",
            limit_cents=10_000,
            start_date=date(2024, 5, 1),
            end_date=date(2024, 5, 31),
        )
        session.add(budget)
        session.add(
            Transaction(
                user_id=1,
                title="Market",
                type=TransactionType.expense,
                amount_cents=500,
                category_id=food.id,
                transaction_date=date(2024, 5, 3),
            )
        )
        session.commit()
        return engine, budget.id


def _bump_version(engine, budget_id, label):
    with Session(engine) as other:
        row = other.get(Budget, budget_id)
        row.description = label
        other.commit()


def test_recalculation_retries_after_concurrent_write(tmp_path, monkeypatch, notifier):
    engine, budget_id = _seed_file_db(tmp_path)
    original = LedgerQueryService.sum_expenses
    calls = []

    def sum_after_concurrent_edit(self, *args):
        if not calls:
            _bump_version(engine, budget_id, "edited elsewhere")
        calls.append(args)
        return original(self, *args)

    monkeypatch.setattr(LedgerQueryService, "sum_expenses", sum_after_concurrent_edit)

    with Session(engine) as session:
        budget = BudgetRecalculator(session, notifier).recalculate_one(budget_id, today=TODAY, now=NOW)
        assert budget.spent_cents == 500
        assert budget.description == "edited elsewhere"
        assert budget.version_id == 3
    assert len(calls) == 2


def test_recalculation_gives_up_after_max_retries(tmp_path, monkeypatch, notifier):
    engine, budget_id = _seed_file_db(tmp_path)
    original = LedgerQueryService.sum_expenses
    calls = []

    def always_conflicting(self, *args):
        calls.append(args)
        _bump_version(engine, budget_id, f"edit {len(calls)}")
        return original(self, *args)

    monkeypatch.setattr(LedgerQueryService, "sum_expenses", always_conflicting)

    with Session(engine) as session:
        recalculator = BudgetRecalculator(session, notifier, max_retries=3)
        with pytest.raises(ConcurrencyConflictError):
            recalculator.recalculate_one(budget_id, today=TODAY, now=NOW)

    with Session(engine) as session:
        assert session.get(Budget, budget_id).spent_cents == 0
    assert len(calls) == 3


def test_zero_retries_means_a_single_attempt(tmp_path, monkeypatch, notifier):
    engine, budget_id = _seed_file_db(tmp_path)
    original = LedgerQueryService.sum_expenses
    calls = []

    def always_conflicting(self, *args):
        calls.append(args)
        _bump_version(engine, budget_id, f"edit {len(calls)}")
        return original(self, *args)

    monkeypatch.setattr(LedgerQueryService, "sum_expenses", always_conflicting)

    with Session(engine) as session:
        recalculator = BudgetRecalculator(
            session, notifier, max_retries=0, cooldown=timedelta(0)
        )
        assert recalculator.cooldown == timedelta(0)
        with pytest.raises(ConcurrencyConflictError):
            recalculator.recalculate_one(budget_id, today=TODAY, now=NOW)
    assert len(calls) == 1


def _budget_in(category_id, limit_cents) -> BudgetIn:
    return BudgetIn(
        name="Food",
        category_id=category_id,
        limit_cents=limit_cents,
        start_date=PERIOD_START,
        end_date=PERIOD_END,
    )


def test_lowering_limit_below_spend_marks_budget_exceeded(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, notifier=notifier)
        budget = budgets.create(_budget_in(food.id, 10_000))
        TransactionService(session, notifier=notifier).create(_expense(food.id, 6_000))
        assert budgets.get(budget.id).status == BudgetStatus.active

        updated = budgets.update(budget.id, _budget_in(food.id, 5_000))

        assert updated.limit_cents == 5_000
        assert updated.spent_cents == 6_000
        assert updated.status == BudgetStatus.exceeded
        assert len(notifier.of_kind(NotificationKind.budget_exceeded)) == 1


def test_moving_budget_to_another_category_recomputes_spend(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        travel = _category(session, "Travel")
        budgets = BudgetService(session, notifier=notifier)
        budget = budgets.create(_budget_in(food.id, 10_000))
        transactions = TransactionService(session, notifier=notifier)
        transactions.create(_expense(food.id, 3_000))
        transactions.create(_expense(travel.id, 7_000))
        assert budgets.get(budget.id).spent_cents == 3_000

        updated = budgets.update(budget.id, _budget_in(travel.id, 10_000))

        assert updated.category_id == travel.id
        assert updated.spent_cents == 7_000
        assert updated.status == BudgetStatus.active


def test_failed_update_leaves_budget_and_audit_untouched(notifier, monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, notifier=notifier)
        budget_id = budgets.create(_budget_in(food.id, 10_000)).id
        TransactionService(session, notifier=notifier).create(_expense(food.id, 5_000))

        def ledger_unavailable(self, *args):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(LedgerQueryService, "sum_expenses", ledger_unavailable)
        with pytest.raises(RuntimeError):
            budgets.update(budget_id, _budget_in(food.id, 1_000))

    with Session(engine) as fresh:
        stored = fresh.get(Budget, budget_id)
        assert (stored.limit_cents, stored.spent_cents, stored.status) == (
            10_000,
            5_000,
            BudgetStatus.active,
        )
        updates = fresh.scalar(
            select(func.count())
            .select_from(AuditLog)
            .where(AuditLog.action == "BUDGET_UPDATE")
        )
        assert updates == 0
    assert notifier.sent == []


def test_failed_resume_keeps_budget_paused(notifier, monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, notifier=notifier)
        budget_id = budgets.create(_budget_in(food.id, 1_000)).id
        budgets.pause(budget_id)
        TransactionService(session, notifier=notifier).create(_expense(food.id, 5_000))

        def ledger_unavailable(self, *args):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(LedgerQueryService, "sum_expenses", ledger_unavailable)
        with pytest.raises(RuntimeError):
            budgets.resume(budget_id)

    with Session(engine) as fresh:
        stored = fresh.get(Budget, budget_id)
        assert stored.status == BudgetStatus.paused
        assert stored.spent_cents == 5_000


def test_second_crossing_within_a_day_does_not_alert_again(notifier):
    with _memory_session() as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, notifier=notifier)
        budget = budgets.create(_budget_in(food.id, 1_000))
        transactions = TransactionService(session, notifier=notifier)
        txn = transactions.create(_expense(food.id, 1_500))
        assert budgets.get(budget.id).status == BudgetStatus.exceeded

        transactions.soft_delete(txn.id)
        assert budgets.get(budget.id).status == BudgetStatus.active

        transactions.restore(txn.id)
        assert budgets.get(budget.id).status == BudgetStatus.exceeded
        assert len(notifier.sent) == 1
