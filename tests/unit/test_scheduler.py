import pytest
from unittest.mock import AsyncMock, patch
from apscheduler.triggers.interval import IntervalTrigger

from ingestion.scheduler import SyncScheduler
from schemas.records import SourceSyncResult


@pytest.mark.asyncio
async def test_scheduler_registers_interval_job():
    scheduler = SyncScheduler(runner=AsyncMock(), interval_minutes=15)
    scheduler.start()
    try:
        job = scheduler.scheduler.get_job("sync_job")
        assert job is not None
        assert isinstance(job.trigger, IntervalTrigger)
        assert job.trigger.interval.total_seconds() == 15 * 60
        assert job.max_instances == 1
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_scheduler_job_execution():
    runner = AsyncMock()
    runner.sync.return_value = [
        SourceSyncResult(source_name="github", success=True, message="ok"),
        SourceSyncResult(source_name="strava", success=False, message="Strava integration is disabled"),
    ]
    scheduler = SyncScheduler(runner=runner)

    results = await scheduler.run_sync_job(["github", "strava"])

    runner.sync.assert_awaited_once_with(["github", "strava"])
    assert [r.source_name for r in results] == ["github", "strava"]


@pytest.mark.asyncio
async def test_scheduler_job_survives_runner_crash():
    runner = AsyncMock()
    runner.sync.side_effect = RuntimeError("database unavailable")
    scheduler = SyncScheduler(runner=runner)

    assert await scheduler.run_sync_job() == []


def test_scheduler_from_settings(test_settings):
    with patch("ingestion.scheduler.SyncRunner") as mock_runner_cls:
        scheduler = SyncScheduler.from_settings(test_settings.model_copy(update={"SYNC_INTERVAL_MINUTES": 45}))

    assert scheduler.interval_minutes == 45
    assert scheduler.runner is mock_runner_cls.from_settings.return_value
