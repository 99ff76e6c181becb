"""
Run registry: the process-local handle table for import runs.

The registry is created once per application (FastAPI lifespan) and handed to
route handlers and the scheduler through dependency injection. It owns the
asyncio tasks that execute runs; everything another process needs to see
(run log, checkpoint, sync status) lives in the database.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import settings
from core.exceptions import ImportAlreadyRunningError, NoImportRunningError
from ingestion.cancellation import CancellationToken
from ingestion.checkpoint import CheckpointManager
from ingestion.lock import AdvisoryLockManager
from ingestion.orchestrator import ImportOrchestrator, RunSummary, build_orchestrator
from ingestion.rate_limiter import RateLimiter
from ingestion.retry import RetryManager
from ingestion.retry_service import RetryService, RetryRequest, RetryOutcome
from ingestion.run_log import RunLogManager
from ingestion.skipped import SkippedEntitiesManager
from ingestion.source_client import SourceClient
from ingestion.status import SyncStatusTracker
from ingestion.store import ImportStore
from models.base import ImportType, RunStatus
from schemas.checkpoint import CheckpointState

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[..., ImportOrchestrator]


@dataclass
class RunHandle:
    run_id: uuid.UUID
    import_type: ImportType
    orchestrator: ImportOrchestrator
    token: CancellationToken
    task: Optional[asyncio.Task] = None
    started_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.task is not None and not self.task.done()


class ImportRegistry:
    """
    Start and control import runs.

    Args:
        session_factory: async_sessionmaker for the import database
        engine: Engine used for the advisory lock connection
        orchestrator_factory: Builds an orchestrator for (session_factory,
            engine, import_type, token); replaced in tests
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine: AsyncEngine,
        orchestrator_factory: OrchestratorFactory = build_orchestrator,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.orchestrator_factory = orchestrator_factory
        self.status = SyncStatusTracker(session_factory)
        self.checkpoints = CheckpointManager(session_factory, self.status)
        self.run_logs = RunLogManager(session_factory)
        self.skipped = SkippedEntitiesManager(session_factory)
        self._handles: Dict[uuid.UUID, RunHandle] = {}
        self._retries: Dict[uuid.UUID, Tuple[RetryService, asyncio.Task]] = {}
        self._start_guard = asyncio.Lock()

    # --------------------------------------------------
    # Runs
    # --------------------------------------------------

    async def start(self, import_type: ImportType) -> RunHandle:
        """
        Prepare a run and schedule it on the event loop.

        Raises:
            ImportAlreadyRunningError: another run holds the lock or is live
        """
        async with self._start_guard:
            if self.active() is not None:
                raise ImportAlreadyRunningError(
                    "Import operation already in progress",
                    context={"sync_log_id": str(self.active().run_id), "reason": "local_run"}
                )

            token = CancellationToken()
            orchestrator = self.orchestrator_factory(
                self.session_factory, self.engine, import_type, token=token
            )
            run_id = await orchestrator.prepare()
            handle = RunHandle(run_id=run_id, import_type=import_type, orchestrator=orchestrator, token=token)
            handle.task = asyncio.create_task(self._execute(handle), name=f"import-{run_id}")
            self._handles[run_id] = handle

        logger.info(f"Started {import_type.value} import {run_id}")
        return handle

    async def _execute(self, handle: RunHandle) -> RunSummary:
        try:
            return await handle.orchestrator.run()
        finally:
            self._handles.pop(handle.run_id, None)

    def get(self, run_id: uuid.UUID) -> Optional[RunHandle]:
        return self._handles.get(run_id)

    def active(self) -> Optional[RunHandle]:
        for handle in self._handles.values():
            if handle.is_active:
                return handle
        return None

    async def cancel(self, run_id: Optional[uuid.UUID] = None) -> uuid.UUID:
        """
        Cancel a run. A run owned by this process is signalled directly; a
        run owned elsewhere is marked CANCELLED in the run log, which its
        worker observes at the next batch boundary.

        Raises:
            NoImportRunningError: no matching RUNNING import exists
        """
        handle = self.get(run_id) if run_id is not None else self.active()
        if handle is not None and handle.is_active:
            handle.token.cancel("Import cancelled by user")
            logger.info(f"Cancellation requested for import {handle.run_id}")
            return handle.run_id

        running = await self.run_logs.find_running()
        if running is not None and (run_id is None or running.run_id == run_id):
            await self.run_logs.finish(
                running.run_id,
                RunStatus.CANCELLED,
                errors=[{
                    "message": "Import cancelled by user",
                    "code": "IMPORT_CANCELLED",
                    "timestamp": datetime.utcnow().isoformat(),
                    "details": {"remote": True},
                }],
            )
            logger.info(f"Marked import {running.run_id} CANCELLED for its owning process")
            return running.run_id

        raise NoImportRunningError(
            "No import operation is currently running",
            context={"import_id": str(run_id) if run_id else None}
        )

    async def pause(self) -> CheckpointState:
        """
        Raises:
            NoImportRunningError: there is no checkpoint to pause
        """
        state = await self.checkpoints.set_paused(True)
        if state is None:
            raise NoImportRunningError("No import operation is currently running", context={"operation": "pause"})
        return state

    async def resume(self) -> CheckpointState:
        """
        Clear the pause flag. When no worker is alive to pick the flag up
        (the paused process exited), a new run of the checkpoint's type is
        started and continues from the checkpoint.
        """
        state = await self.checkpoints.set_paused(False)
        if state is None:
            raise NoImportRunningError("No paused import to resume", context={"operation": "resume"})

        if self.active() is None:
            try:
                await self.start(state.import_type)
            except ImportAlreadyRunningError as e:
                logger.info(f"Resume: import already running elsewhere ({e.message})")
        return state

    async def reset_checkpoint(self) -> None:
        """
        Raises:
            ImportAlreadyRunningError: refused while a run is active
        """
        if self.active() is not None or await self.run_logs.find_running() is not None:
            raise ImportAlreadyRunningError(
                "Import operation already in progress",
                context={"operation": "reset_checkpoint"}
            )
        await self.checkpoints.clear_checkpoint()

    # --------------------------------------------------
    # Skipped entity retries
    # --------------------------------------------------

    def build_retry_service(self) -> RetryService:
        store = ImportStore(self.session_factory, self.checkpoints, self.run_logs, self.skipped)
        return RetryService(
            skipped=self.skipped,
            store=store,
            lock=AdvisoryLockManager(self.engine),
            source=SourceClient(RateLimiter(settings.RATE_LIMIT_MS), RetryManager()),
        )

    async def start_retry(self, request: RetryRequest) -> Tuple[uuid.UUID, int]:
        """
        Select the rows now and retry them in the background. Returns the
        retry ID and the number of rows selected.

        Raises:
            ImportAlreadyRunningError: an import is running in this process
        """
        if self.active() is not None:
            raise ImportAlreadyRunningError(
                "Import operation already in progress",
                context={"operation": "retry", "phase": request.phase.value}
            )
        service = self.build_retry_service()
        rows = await service.select(request)
        retry_id = uuid.uuid4()
        task = asyncio.create_task(self._execute_retry(retry_id, service, request, rows), name=f"retry-{retry_id}")
        self._retries[retry_id] = (service, task)
        return retry_id, len(rows)

    async def _execute_retry(self, retry_id, service: RetryService, request: RetryRequest, rows) -> Optional[RetryOutcome]:
        try:
            return await service.run(request, rows)
        except ImportAlreadyRunningError as e:
            logger.warning(f"Retry {retry_id} for {request.phase.value} not started: {e.message}")
            return None
        finally:
            self._retries.pop(retry_id, None)

    # --------------------------------------------------
    # Shutdown
    # --------------------------------------------------

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel active work and wait for it to reach a terminal state."""
        tasks = []
        for handle in list(self._handles.values()):
            handle.token.cancel("Import cancelled by server shutdown")
            if handle.task is not None:
                tasks.append(handle.task)
        for service, task in list(self._retries.values()):
            service.token.cancel("Retry cancelled by server shutdown")
            tasks.append(task)
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        logger.info(f"Registry shut down ({len(done)} finished, {len(pending)} cancelled)")
