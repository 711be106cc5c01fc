import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from budget_status import BudgetSnapshot, alert_message, evaluate
from config import get_settings
from errors import ConcurrencyConflictError, NotFoundError
from ledger import LedgerQueryService
from locks import KeyedLock, entity_locks
from models import Budget, NotificationKind, Transaction, TransactionType
from notifications import NotificationGateway, get_notification_service


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionScope:
    """The part of a transaction that decides which budgets it counts towards."""

    user_id: int
    type: TransactionType
    category_id: int
    transaction_date: date

    @classmethod
    def of(cls, txn: Union[Transaction, "TransactionScope"]) -> "TransactionScope":
        if isinstance(txn, TransactionScope):
            return txn
        return cls(
            user_id=txn.user_id,
            type=txn.type,
            category_id=txn.category_id,
            transaction_date=txn.transaction_date,
        )


@dataclass
class SweepReport:
    processed: int = 0
    failed: int = 0
    failed_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class _PendingAlert:
    budget_id: int
    user_id: int
    message: str


class BudgetRecalculator:
    """Keeps ``Budget.spent_cents`` and ``Budget.status`` in line with the ledger.

    Each recalculation is a read-modify-write of one budget, serialized by the
    per-budget lock and guarded by the row's version counter. Alerts are handed
    to the notification gateway only after the new state is committed.
    """

    def __init__(
        self,
        session: Session,
        notifier: Optional[NotificationGateway] = None,
        *,
        locks: Optional[KeyedLock] = None,
        max_retries: Optional[int] = None,
        cooldown: Optional[timedelta] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.ledger = LedgerQueryService(session)
        self.notifier = notifier if notifier is not None else get_notification_service()
        self.locks = locks or entity_locks
        if max_retries is None:
            max_retries = settings.recalc_max_retries
        if cooldown is None:
            cooldown = timedelta(hours=settings.alert_cooldown_hours)
        self.max_retries = max(1, max_retries)
        self.cooldown = cooldown

    def recalculate_one(
        self,
        budget_id: int,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
        mutate: Optional[Callable[[Budget], None]] = None,
    ) -> Budget:
        """Recalculate one budget, optionally applying an edit first.

        ``mutate`` runs on the freshly locked row before the spend is
        aggregated, so the edit, the new spend and the new status commit
        together or not at all. It is re-applied on every retry.
        """
        today, now = self._clock(today, now)
        with self.locks.hold(("budget", budget_id)):
            budget, alert = self._recalculate_locked(budget_id, today, now, mutate)
        if alert is not None:
            self._dispatch(alert)
        return budget

    def recalculate_affected_by_transaction(
        self,
        transaction: Union[Transaction, TransactionScope],
        previous: Optional[Union[Transaction, TransactionScope]] = None,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> list[Budget]:
        scopes = [TransactionScope.of(transaction)]
        if previous is not None:
            scopes.append(TransactionScope.of(previous))

        budget_ids: list[int] = []
        for scope in scopes:
            if scope.type != TransactionType.expense:
                continue
            for budget in self.ledger.find_budgets_overlapping(
                scope.user_id, scope.transaction_date, scope.category_id
            ):
                if budget.id not in budget_ids:
                    budget_ids.append(budget.id)

        if not budget_ids:
            return []

        today, now = self._clock(today, now)
        recalculated: list[Budget] = []
        for budget_id in budget_ids:
            try:
                recalculated.append(
                    self.recalculate_one(budget_id, today=today, now=now)
                )
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_recalc_failed: budget_id={budget_id}")
        return recalculated

    def recalculate_all_active(
        self,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> SweepReport:
        today, now = self._clock(today, now)
        budget_ids = [b.id for b in self.ledger.find_non_terminal_budgets()]
        logger.info(f"budget_sweep_started: budgets={len(budget_ids)} today={today}")

        report = SweepReport()
        for budget_id in budget_ids:
            try:
                self.recalculate_one(budget_id, today=today, now=now)
            except Exception:
                self.session.rollback()
                report.failed += 1
                report.failed_ids.append(budget_id)
                logger.exception(f"budget_recalc_failed: budget_id={budget_id}")
            else:
                report.processed += 1

        logger.info(
            f"budget_sweep_finished: processed={report.processed} failed={report.failed}"
        )
        return report

    @staticmethod
    def _clock(
        today: Optional[date], now: Optional[datetime]
    ) -> tuple[date, datetime]:
        from recurrence import local_today

        return today or local_today(), now or datetime.utcnow()

    def _load_for_update(self, budget_id: int) -> Budget:
        stmt = (
            select(Budget)
            .where(Budget.id == budget_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        budget = self.session.scalars(stmt).first()
        if budget is None:
            raise NotFoundError("Budget not found")
        return budget

    def _recalculate_locked(
        self,
        budget_id: int,
        today: date,
        now: datetime,
        mutate: Optional[Callable[[Budget], None]] = None,
    ) -> tuple[Budget, Optional[_PendingAlert]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                budget = self._load_for_update(budget_id)
                if mutate is not None:
                    mutate(budget)
                spent = self.ledger.sum_expenses(
                    budget.user_id, budget.category_id, budget.start_date, budget.end_date
                )
                evaluation = evaluate(
                    BudgetSnapshot.of(budget),
                    spent,
                    today=today,
                    now=now,
                    cooldown=self.cooldown,
                )

                budget.spent_cents = evaluation.spent_cents
                budget.status = evaluation.status
                # Stamped in the same commit as the status so two racing
                # recalculations cannot both alert. A crash between this
                # commit and the dispatch below loses that one alert.
                if evaluation.send_alert:
                    budget.last_alert_sent_at = now
                self.session.commit()
            except StaleDataError:
                self.session.rollback()
                if attempt >= self.max_retries:
                    raise ConcurrencyConflictError(
                        f"Budget {budget_id} changed concurrently; gave up after "
                        f"{attempt} attempts"
                    )
                logger.warning(
                    f"budget_recalc_conflict: budget_id={budget_id} attempt={attempt}"
                )
                continue
            except Exception:
                # Nothing of the edit or the evaluation survives a failure.
                self.session.rollback()
                raise

            logger.debug(
                f"budget_recalculated: budget_id={budget_id} "
                f"spent_cents={evaluation.spent_cents} status={evaluation.status.value} "
                f"percent_used={evaluation.percent_used}"
            )
            alert = None
            if evaluation.send_alert:
                alert = _PendingAlert(
                    budget_id=budget.id,
                    user_id=budget.user_id,
                    message=alert_message(budget.name, evaluation, budget.limit_cents),
                )
            return budget, alert

    def _dispatch(self, alert: _PendingAlert) -> None:
        try:
            self.notifier.send_alert(
                alert.user_id, alert.message, NotificationKind.budget_exceeded
            )
        except Exception:
            logger.exception(f"budget_alert_failed: budget_id={alert.budget_id}")
            return
        logger.info(f"budget_alert_dispatched: budget_id={alert.budget_id}")
