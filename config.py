import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        recurring_cron: str,
        budget_sweep_cron: str,
        run_on_startup: bool,
        alert_cooldown_hours: int,
        recalc_max_retries: int,
        notification_workers: int,
        catch_up_policy: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.recurring_cron = recurring_cron
        self.budget_sweep_cron = budget_sweep_cron
        self.run_on_startup = run_on_startup
        self.alert_cooldown_hours = alert_cooldown_hours
        self.recalc_max_retries = recalc_max_retries
        self.notification_workers = notification_workers
        self.catch_up_policy = catch_up_policy


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    # Cron expressions use the standard five-field crontab syntax.
    recurring_cron = os.getenv("LEDGER_RECURRING_CRON", "0 1 * * *")
    budget_sweep_cron = os.getenv("LEDGER_BUDGET_SWEEP_CRON", "0 2 * * *")
    run_on_startup = _env_flag("LEDGER_RUN_ON_STARTUP", True)
    alert_cooldown_hours = int(os.getenv("LEDGER_ALERT_COOLDOWN_HOURS", "24"))
    recalc_max_retries = int(os.getenv("LEDGER_RECALC_MAX_RETRIES", "3"))
    notification_workers = int(os.getenv("LEDGER_NOTIFICATION_WORKERS", "2"))
    catch_up_policy = os.getenv("LEDGER_CATCH_UP_POLICY", "single").lower()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        recurring_cron=recurring_cron,
        budget_sweep_cron=budget_sweep_cron,
        run_on_startup=run_on_startup,
        alert_cooldown_hours=alert_cooldown_hours,
        recalc_max_retries=recalc_max_retries,
        notification_workers=notification_workers,
        catch_up_policy=catch_up_policy,
    )
