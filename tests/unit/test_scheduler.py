import pytest
from unittest.mock import AsyncMock, MagicMock

from core.exceptions import ImportAlreadyRunningError, DatabaseConnectionError
from ingestion.scheduler import ImportScheduler
from models.base import ImportType


def mock_registry(active=None):
    registry = MagicMock()
    registry.active.return_value = active
    registry.start = AsyncMock()
    registry.skipped.cleanup_completed = AsyncMock(return_value=3)
    return registry


@pytest.mark.asyncio
async def test_scheduler_initialization():
    scheduler = ImportScheduler(mock_registry(), interval_minutes=30)
    assert scheduler.scheduler is not None
    assert scheduler.interval_minutes == 30

@pytest.mark.asyncio
async def test_scheduler_job_starts_incremental_import():
    registry = mock_registry()
    scheduler = ImportScheduler(registry)

    await scheduler.run_import_job()

    registry.start.assert_awaited_once_with(ImportType.INCREMENTAL)

@pytest.mark.asyncio
async def test_scheduler_job_skips_when_import_active():
    registry = mock_registry(active=MagicMock())
    scheduler = ImportScheduler(registry)

    await scheduler.run_import_job()

    registry.start.assert_not_called()

@pytest.mark.asyncio
async def test_scheduler_job_tolerates_lock_held_elsewhere():
    registry = mock_registry()
    registry.start.side_effect = ImportAlreadyRunningError("Import operation already in progress")
    scheduler = ImportScheduler(registry)

    # Must not raise
    await scheduler.run_import_job()

@pytest.mark.asyncio
async def test_scheduler_job_logs_start_failures():
    registry = mock_registry()
    registry.start.side_effect = DatabaseConnectionError("Could not open connection for advisory lock")
    scheduler = ImportScheduler(registry)

    await scheduler.run_import_job()

    registry.start.assert_awaited_once()

@pytest.mark.asyncio
async def test_cleanup_job():
    registry = mock_registry()
    scheduler = ImportScheduler(registry)

    await scheduler.cleanup_job()

    registry.skipped.cleanup_completed.assert_awaited_once()

@pytest.mark.asyncio
async def test_scheduler_registers_jobs():
    scheduler = ImportScheduler(mock_registry(), interval_minutes=60)

    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {"incremental_import", "skipped_cleanup"}
        assert scheduler.scheduler.get_job("incremental_import").max_instances == 1
    finally:
        scheduler.stop()
