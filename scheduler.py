import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import SessionFactory, session_scope
from notifications import NotificationGateway
from recalculation import BudgetRecalculator
from recurrence import RecurringEngine


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

RECURRING_JOB_ID = "recurring_daily"
BUDGET_SWEEP_JOB_ID = "budget_sweep_daily"


class SchedulerManager:
    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        notifier: Optional[NotificationGateway] = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory
        self.notifier = notifier
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job={RECURRING_JOB_ID} source={source}")
        with session_scope(self.session_factory) as session:
            engine = RecurringEngine(session, notifier=self.notifier)
            report = engine.process_due()
        logger.info(
            f"scheduler_run: job={RECURRING_JOB_ID} source={source} "
            f"generated={report.generated} completed={report.completed} "
            f"failed={report.failed}"
        )

    def run_budget_sweep(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job={BUDGET_SWEEP_JOB_ID} source={source}")
        with session_scope(self.session_factory) as session:
            report = BudgetRecalculator(session, self.notifier).recalculate_all_active()
        logger.info(
            f"scheduler_run: job={BUDGET_SWEEP_JOB_ID} source={source} "
            f"processed={report.processed} failed={report.failed}"
        )

    def register_jobs(self) -> None:
        tz = self.settings.timezone
        self.scheduler.add_job(
            self.run_recurring,
            CronTrigger.from_crontab(self.settings.recurring_cron, timezone=tz),
            args=["cron"],
            id=RECURRING_JOB_ID,
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_budget_sweep,
            CronTrigger.from_crontab(self.settings.budget_sweep_cron, timezone=tz),
            args=["cron"],
            id=BUDGET_SWEEP_JOB_ID,
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        if self.settings.run_on_startup:
            try:
                self.run_recurring("startup")
            except Exception:
                logger.exception(f"scheduler_startup_run_failed: job={RECURRING_JOB_ID}")

        self.register_jobs()
        self.scheduler.start()
        logger.info(
            f"Scheduler started: recurring='{self.settings.recurring_cron}' "
            f"budget_sweep='{self.settings.budget_sweep_cron}' tz={self.settings.timezone}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
