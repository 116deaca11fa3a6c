import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import Settings
from core.database import create_db_engine, create_session_factory
from ingestion.runner import SyncRunner

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, runner: SyncRunner, interval_minutes: int = 30):
        self.scheduler = AsyncIOScheduler()
        self.runner = runner
        self.interval_minutes = interval_minutes

    @classmethod
    def from_settings(cls, config: Settings) -> "SyncScheduler":
        engine = create_db_engine(config.DATABASE_URL)
        runner = SyncRunner.from_settings(config, create_session_factory(engine))
        return cls(runner, interval_minutes=config.SYNC_INTERVAL_MINUTES)

    async def run_sync_job(self, sources: Optional[list] = None):
        """Job to sync every enabled source"""
        logger.info("Scheduler: Starting sync job")
        try:
            results = await self.runner.sync(sources)
        except Exception as e:
            logger.error(f"Scheduler: sync job failed - {e}", exc_info=True)
            return []

        for result in results:
            if result.success:
                logger.info(f"Scheduler: {result.source_name} ok - {result.message}")
            else:
                logger.warning(f"Scheduler: {result.source_name} failed - {result.message}")
        return results

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="sync_job",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(f"Sync Scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
