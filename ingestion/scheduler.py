import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.exceptions import ETLException, ImportAlreadyRunningError
from ingestion.registry import ImportRegistry
from models.base import ImportType

logger = logging.getLogger(__name__)


class ImportScheduler:
    def __init__(self, registry: ImportRegistry, interval_minutes: int = None):
        self.registry = registry
        self.interval_minutes = interval_minutes or settings.SCHEDULER_INTERVAL_MINUTES
        self.scheduler = AsyncIOScheduler()

    async def run_import_job(self):
        """Job to trigger an incremental import"""
        if self.registry.active() is not None:
            logger.info("Scheduler: import already running, skipping")
            return
        try:
            handle = await self.registry.start(ImportType.INCREMENTAL)
            logger.info(f"Scheduler: started incremental import {handle.run_id}")
        except ImportAlreadyRunningError as e:
            logger.info(f"Scheduler: import already running elsewhere, skipping ({e.message})")
        except ETLException as e:
            logger.error(f"Scheduler: import job failed - {e}", extra={"error_context": e.to_dict()})

    async def cleanup_job(self):
        """Job to purge resolved skipped entities past retention"""
        try:
            await self.registry.skipped.cleanup_completed()
        except Exception as e:
            logger.error(f"Scheduler: skipped entity cleanup failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_import_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="incremental_import",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.cleanup_job,
            trigger=IntervalTrigger(hours=24),
            id="skipped_cleanup",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Import scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Import scheduler stopped")
