import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from models import Account, CreditCard
from services import ReconciliationService
from store import LedgerStore


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, store: Optional[LedgerStore] = None) -> None:
        settings = get_settings()
        self.store = store or LedgerStore()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        owners = sorted(
            set(self.store.owners(Account)) | set(self.store.owners(CreditCard))
        )
        failed = 0
        for user_id in owners:
            report = ReconciliationService(self.store, user_id).reconcile_all()
            failed += report.failed
        logger.info(
            f"scheduler_run: source={source} users={len(owners)} failed={failed}"
        )
        return len(owners)

    def start(self) -> None:
        settings = get_settings()
        self._run_job("startup")

        trigger = CronTrigger(
            hour=settings.reconcile_hour, minute=settings.reconcile_minute
        )
        label = f"daily_{settings.reconcile_hour:02d}:{settings.reconcile_minute:02d}"
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[label],
            id="reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {label} reconciliation")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
