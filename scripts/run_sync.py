"""
Script to run one sync for all enabled sources, or the ones named on the
command line.

    python scripts/run_sync.py                 # every enabled source
    python scripts/run_sync.py github          # only GitHub
    python scripts/run_sync.py --schedule      # keep running every SYNC_INTERVAL_MINUTES
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import create_session_factory, engine_from_settings
from core.logging import setup_logging
from ingestion.runner import SyncRunner
from ingestion.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


async def run_sync(sources):
    """Run one sync and return the process exit code"""
    engine = engine_from_settings(settings)

    try:
        runner = SyncRunner.from_settings(settings, create_session_factory(engine))
        results = await runner.sync(sources or None)

        if not results:
            logger.warning("No data sources enabled. Skipping sync.")
            return 0

        for result in results:
            status = "OK" if result.success else ("TIMEOUT" if result.timed_out else "FAILED")
            logger.info(
                f"[{status}] {result.source_name}: "
                f"Extracted={result.records_extracted}, "
                f"Sent={result.rows_sent} - {result.message}"
            )

        logger.info("All sync jobs completed")
        return 0 if all(r.success for r in results) else 1
    finally:
        await engine.dispose()


async def run_scheduled():
    scheduler = SyncScheduler.from_settings(settings)
    scheduler.start()
    await scheduler.run_sync_job()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()


if __name__ == "__main__":
    setup_logging(settings)
    args = sys.argv[1:]
    if "--schedule" in args:
        try:
            asyncio.run(run_scheduled())
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
    else:
        sys.exit(asyncio.run(run_sync(args)))
