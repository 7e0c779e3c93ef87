import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from aggregator import HttpAggregatorClient
from config import get_settings
from database import SessionLocal, session_scope
from models import Budget
from services import SpendingService
from sync import SyncService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_sync(self, source: str = "manual") -> None:
        logger.info(f"scheduler_sync: source={source}")
        service = SyncService(SessionLocal, HttpAggregatorClient(self.settings), settings=self.settings)
        report = service.sync_all()
        logger.info(
            f"scheduler_sync: source={source} items_ok={len(report.results)} items_failed={len(report.errors)}"
        )

    def _run_rollover(self, source: str = "manual") -> None:
        # a new month needs its rollup rows even before anything is spent
        with session_scope() as session:
            budget_ids = list(session.scalars(select(Budget.id)).all())
            spending = SpendingService(session)
            for budget_id in budget_ids:
                spending.rebuild(budget_id)
        logger.info(f"scheduler_rollover: source={source} budgets={len(budget_ids)}")

    def start(self) -> None:
        self.scheduler.add_job(
            self._run_sync,
            args=["startup"],
            id="sync_startup",
            replace_existing=True,
        )

        trigger = IntervalTrigger(minutes=self.settings.sync_interval_minutes)
        self.scheduler.add_job(
            self._run_sync,
            trigger,
            args=["interval"],
            id="sync_interval",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
        )

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_rollover,
            trigger,
            args=["daily_03:15"],
            id="spending_rollover",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with sync every {self.settings.sync_interval_minutes} min and daily 03:15 rollover"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
