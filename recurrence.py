import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from budget_status import format_amount
from config import get_settings
from errors import ConcurrencyConflictError
from ledger import LedgerQueryService
from locks import KeyedLock, entity_locks
from models import (
    AUTO_PAYMENT_METHOD,
    NotificationKind,
    RecurrenceFrequency,
    RecurringStatus,
    RecurringTransaction,
    Transaction,
    TransactionType,
)
from notifications import NotificationGateway
from recalculation import BudgetRecalculator


logger = logging.getLogger(__name__)

# Upper bound on occurrences generated for one template in one back-fill run.
MAX_BACK_FILL = 365


class CatchUpPolicy(str, Enum):
    single = "single"
    back_fill = "back_fill"


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def calculate_next_date(frequency: RecurrenceFrequency, from_date: date) -> date:
    if frequency == RecurrenceFrequency.daily:
        return from_date + timedelta(days=1)
    if frequency == RecurrenceFrequency.weekly:
        return from_date + timedelta(weeks=1)
    if frequency == RecurrenceFrequency.bi_weekly:
        return from_date + timedelta(weeks=2)
    if frequency == RecurrenceFrequency.monthly:
        return _add_months(from_date, 1)
    if frequency == RecurrenceFrequency.quarterly:
        return _add_months(from_date, 3)
    if frequency == RecurrenceFrequency.yearly:
        return _add_months(from_date, 12)
    raise ValueError(f"Unknown frequency: {frequency}")


def is_active(template: RecurringTransaction, today: date) -> bool:
    return (
        template.status == RecurringStatus.active
        and today >= template.start_date
        and (template.end_date is None or today <= template.end_date)
    )


def is_due(template: RecurringTransaction, today: date) -> bool:
    # The last clause keeps a second run on the same day from generating again.
    return (
        is_active(template, today)
        and today >= template.next_execution_date
        and template.last_generated_date != today
    )


@dataclass(frozen=True)
class GenerationPlan:
    occurrence_dates: tuple[date, ...]
    next_execution_date: date
    last_generated_date: Optional[date]
    status: RecurringStatus


def _missed_occurrences(
    template: RecurringTransaction, today: date
) -> tuple[list[date], date]:
    last = today
    if template.end_date is not None:
        last = min(today, template.end_date)
    occurrences: list[date] = []
    occurrence = template.next_execution_date
    while occurrence <= last and len(occurrences) < MAX_BACK_FILL:
        occurrences.append(occurrence)
        occurrence = calculate_next_date(template.frequency, occurrence)
    return occurrences, occurrence


def plan_generation(
    template: RecurringTransaction,
    today: date,
    policy: CatchUpPolicy = CatchUpPolicy.single,
) -> Optional[GenerationPlan]:
    """What a sweep running on ``today`` should do with ``template``.

    Returns None when nothing is due. A template whose end date has already
    passed is completed; under back-fill it first gets the occurrences it
    missed up to its end date, otherwise it gets none.
    """
    if template.status != RecurringStatus.active:
        return None
    expired = template.end_date is not None and today > template.end_date
    if expired and (
        policy != CatchUpPolicy.back_fill
        or template.next_execution_date > template.end_date
    ):
        return GenerationPlan(
            occurrence_dates=(),
            next_execution_date=template.next_execution_date,
            last_generated_date=template.last_generated_date,
            status=RecurringStatus.completed,
        )
    if not expired and not is_due(template, today):
        return None

    if policy == CatchUpPolicy.back_fill:
        occurrences, next_date = _missed_occurrences(template, today)
    else:
        occurrences = [today]
        next_date = calculate_next_date(template.frequency, today)

    status = RecurringStatus.active
    if template.end_date is not None and next_date > template.end_date:
        status = RecurringStatus.completed
    return GenerationPlan(
        occurrence_dates=tuple(occurrences),
        next_execution_date=next_date,
        last_generated_date=today,
        status=status,
    )


@dataclass
class GenerationReport:
    generated: int = 0
    completed: int = 0
    failed: int = 0


class RecurringEngine:
    def __init__(
        self,
        session: Session,
        recalculator: Optional[BudgetRecalculator] = None,
        *,
        notifier: Optional[NotificationGateway] = None,
        locks: Optional[KeyedLock] = None,
        policy: Optional[CatchUpPolicy] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.ledger = LedgerQueryService(session)
        self.recalculator = recalculator or BudgetRecalculator(session, notifier)
        self.notifier = self.recalculator.notifier
        self.locks = locks or entity_locks
        self.policy = policy or CatchUpPolicy(settings.catch_up_policy)
        self.max_retries = max(1, settings.recalc_max_retries)

    def process_due(self, today: Optional[date] = None) -> GenerationReport:
        today = today or local_today()
        template_ids = [t.id for t in self.ledger.find_due_templates(today)]
        logger.info(
            f"recurring_sweep_started: templates={len(template_ids)} today={today} "
            f"policy={self.policy.value}"
        )

        report = GenerationReport()
        for template_id in template_ids:
            try:
                plan, generated = self.process_template(template_id, today)
            except Exception:
                self.session.rollback()
                report.failed += 1
                logger.exception(f"recurring_generation_failed: template_id={template_id}")
                continue
            report.generated += len(generated)
            if plan is not None and plan.status == RecurringStatus.completed:
                report.completed += 1

        logger.info(
            f"recurring_sweep_finished: generated={report.generated} "
            f"completed={report.completed} failed={report.failed}"
        )
        return report

    process_recurring_transactions = process_due

    def process_template(
        self, template_id: int, today: date
    ) -> tuple[Optional[GenerationPlan], list[Transaction]]:
        with self.locks.hold(("template", template_id)):
            plan, generated = self._generate_locked(template_id, today)

        for txn in generated:
            self._notify_generated(txn)
            if txn.type == TransactionType.expense:
                self.recalculator.recalculate_affected_by_transaction(txn, today=today)
        return plan, generated

    def _load_for_update(self, template_id: int) -> Optional[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(RecurringTransaction.id == template_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).first()

    def _generate_locked(
        self, template_id: int, today: date
    ) -> tuple[Optional[GenerationPlan], list[Transaction]]:
        attempt = 0
        while True:
            attempt += 1
            template = self._load_for_update(template_id)
            if template is None:
                return None, []
            plan = plan_generation(template, today, self.policy)
            if plan is None:
                logger.debug(f"recurring_not_due: template_id={template_id}")
                return None, []

            generated = [
                self._build_transaction(template, occurrence)
                for occurrence in plan.occurrence_dates
            ]
            # Transactions and the advanced template commit together or not at all.
            self.session.add_all(generated)
            template.last_generated_date = plan.last_generated_date
            template.next_execution_date = plan.next_execution_date
            template.status = plan.status
            try:
                self.session.commit()
            except StaleDataError:
                self.session.rollback()
                if attempt >= self.max_retries:
                    raise ConcurrencyConflictError(
                        f"Recurring transaction {template_id} changed concurrently"
                    )
                logger.warning(
                    f"recurring_generation_conflict: template_id={template_id} "
                    f"attempt={attempt}"
                )
                continue

            logger.info(
                f"recurring_generated: template_id={template_id} "
                f"transactions={len(generated)} next={plan.next_execution_date} "
                f"status={plan.status.value}"
            )
            return plan, generated

    @staticmethod
    def _build_transaction(
        template: RecurringTransaction, occurrence_date: date
    ) -> Transaction:
        return Transaction(
            user_id=template.user_id,
            title=template.title,
            description=template.description,
            type=template.type,
            amount_cents=template.amount_cents,
            category_id=template.category_id,
            transaction_date=occurrence_date,
            payment_method=AUTO_PAYMENT_METHOD,
            origin_template_id=template.id,
            occurrence_date=occurrence_date,
        )

    def _notify_generated(self, txn: Transaction) -> None:
        message = (
            f"Recurring payment executed: {txn.title} - "
            f"{format_amount(txn.amount_cents)} on {txn.transaction_date}"
        )
        try:
            self.notifier.send_alert(
                txn.user_id, message, NotificationKind.recurring_generated
            )
        except Exception:
            logger.exception(f"recurring_notification_failed: transaction_id={txn.id}")
