import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from reconciliation import reconcile_all_tenants


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.hour = settings.reconcile_hour
        self.minute = settings.reconcile_minute
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            reports = reconcile_all_tenants(session)
        discrepancies = sum(len(r.discrepancies) for r in reports)
        failed = sum(len(r.failed_periods) for r in reports)
        logger.info(
            f"scheduler_run: source={source} tenants={len(reports)} "
            f"discrepancies={discrepancies} failed_periods={failed}"
        )

    def start(self) -> None:
        trigger = CronTrigger(hour=self.hour, minute=self.minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{self.hour:02d}:{self.minute:02d}"],
            id="cube_reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily reconciliation at {self.hour:02d}:{self.minute:02d}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
