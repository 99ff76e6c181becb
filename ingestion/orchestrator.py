# ============================================================================
# File: ingestion/orchestrator.py
# Description: Resumable, phase-ordered import orchestrator
# ============================================================================
"""
Import Orchestrator - runs the seven import phases in order.

This module provides resumable import orchestration with:
- Advisory-lock mutual exclusion (one RUNNING import across processes)
- Per-batch transactions: upserts, quarantined records and the checkpoint
  advance commit together
- Record-level quarantine (Skipped Entities) without aborting the phase
- Cooperative pause / cancel at batch boundaries
- A run-level timeout that fails the run but keeps its checkpoint

Batch layout:
    CLUBS, PLAYERS, TOURNAMENTS              one source listing page per batch
    PLAYER_YEAR_STATS, PLAYER_TOURNAMENT_    BATCH_SIZE entity IDs per batch
    HISTORY, GAMES, STATISTICS
"""

import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import settings
from core.exceptions import (
    ETLException,
    ImportAlreadyRunningError,
    ImportCancelledError,
    ResourceNotFoundError,
    RetryExhaustedError,
    RunTimeoutError,
    SourceUnavailableError,
    ValidationError,
)
from ingestion.cancellation import CancellationToken
from ingestion.checkpoint import CheckpointManager, calculate_overall_progress
from ingestion.deduplicator import deduplicate_batch
from ingestion.integrity import IntegrityChecker
from ingestion.lock import AdvisoryLockManager
from ingestion.pagination import PageScan
from ingestion.phases import (
    PHASE_KINDS,
    LISTING_PHASES,
    fetch_listing_page,
    fetch_entity,
)
from ingestion.rate_limiter import RateLimiter
from ingestion.retry import RetryManager
from ingestion.run_log import RunLogManager, error_entry
from ingestion.skipped import SkippedEntitiesManager
from ingestion.source_client import SourceClient
from ingestion.status import SyncStatusTracker
from ingestion.store import ImportStore, BatchCommit, Rejection
from ingestion.validators import validate_record
from models.base import ImportPhase, ImportType, RunStatus, EntityKind
from schemas.checkpoint import CheckpointState, CheckpointReadStatus

logger = logging.getLogger(__name__)

# (source entity ID, item); the source is the player or tournament whose page
# produced the item, None for listing pages
Sourced = Tuple[Optional[str], Any]


# ============================================================================
# Run bookkeeping
# ============================================================================

@dataclass
class ValidationMetrics:
    total_fetched: int = 0
    valid: int = 0
    invalid: int = 0
    duplicates_skipped: int = 0

    @property
    def validation_rate(self) -> float:
        if self.total_fetched == 0:
            return 100.0
        return round(self.valid / self.total_fetched * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return dict(asdict(self), validation_rate=self.validation_rate)


class ImportErrorLog:
    """Non-fatal errors of one run, summarised by phase and code."""

    def __init__(self, keep: int = 200):
        self.keep = keep
        self.entries: List[Dict[str, Any]] = []
        self.by_phase: Counter = Counter()
        self.by_code: Counter = Counter()

    def record(
        self,
        phase: ImportPhase,
        code: str,
        message: str,
        entity_id: Optional[str] = None,
        page_number: Optional[int] = None,
    ) -> None:
        self.by_phase[phase.value] += 1
        self.by_code[code] += 1
        if len(self.entries) < self.keep:
            self.entries.append({
                "phase": phase.value,
                "code": code,
                "message": message,
                "entity_id": entity_id,
                "page_number": page_number,
                "timestamp": datetime.utcnow().isoformat(),
            })

    @property
    def total(self) -> int:
        return sum(self.by_code.values())

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_phase": dict(self.by_phase),
            "by_code": dict(self.by_code),
        }


@dataclass
class RunSummary:
    run_id: uuid.UUID
    import_type: ImportType
    status: RunStatus
    records_processed: int
    progress: int
    validation: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    integrity: Optional[Dict[str, Any]] = None


def format_duration(seconds: float) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    return f"{hours}h {remainder // 60}m"


# ============================================================================
# Orchestrator
# ============================================================================

class ImportOrchestrator:
    """
    One import run, from lock acquisition to terminal run-log status.

    Usage:
        orchestrator = build_orchestrator(session_factory, engine, ImportType.FULL)
        run_id = await orchestrator.prepare()   # raises ImportAlreadyRunningError
        summary = await orchestrator.run()

    All collaborators are injected so the orchestrator can run against
    in-memory fakes.
    """

    def __init__(
        self,
        *,
        store: ImportStore,
        checkpoints: CheckpointManager,
        run_logs: RunLogManager,
        lock: AdvisoryLockManager,
        source: SourceClient,
        status: SyncStatusTracker,
        integrity: Optional[IntegrityChecker] = None,
        import_type: ImportType = ImportType.FULL,
        token: Optional[CancellationToken] = None,
        batch_size: Optional[int] = None,
        max_duration_hours: Optional[float] = None,
        pause_poll_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.run_logs = run_logs
        self.lock = lock
        self.source = source
        self.status = status
        self.integrity = integrity
        self.import_type = import_type
        self.token = token or CancellationToken()
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.max_duration_seconds = (max_duration_hours or settings.MAX_RUN_DURATION_HOURS) * 3600
        self.pause_poll_seconds = settings.PAUSE_POLL_SECONDS if pause_poll_seconds is None else pause_poll_seconds
        self.clock = clock

        self.run_id: Optional[uuid.UUID] = None
        self.state: Optional[CheckpointState] = None
        self.metrics = ValidationMetrics()
        self.error_log = ImportErrorLog()
        self.records_processed = 0
        self.progress = 0
        self.skipped_pages: Dict[str, List[int]] = {}
        self.resumed_from: Optional[Dict[str, Any]] = None
        self._started: Optional[float] = None
        self._prepared = False

    # --------------------------------------------------
    # Start-up
    # --------------------------------------------------

    async def prepare(self) -> uuid.UUID:
        """
        Acquire the lock, settle any previous run and create the run log.

        Raises:
            ImportAlreadyRunningError: the lock is held elsewhere or a live
                RUNNING run log exists
        """
        if not await self.lock.acquire_lock():
            raise ImportAlreadyRunningError(
                "Import operation already in progress",
                context={"import_type": self.import_type.value, "reason": "lock_held"}
            )

        try:
            await self._settle_previous_run()
            self.state = await self._resume_point()
            log = await self.run_logs.create(self.import_type, metadata=self._metadata())
            self.run_id = log.run_id
            if self.state is not None:
                self.state.run_id = str(self.run_id)
            await self.status.update(
                is_running=True,
                progress=self.progress,
                phase=self.state.phase if self.state else None,
                run_id=self.run_id,
                current_operation=f"Starting {self.import_type.value} import",
                last_error=None,
            )
        except Exception:
            await self.lock.release_lock()
            raise

        self._prepared = True
        logger.info(f"Prepared {self.import_type.value} import {self.run_id}")
        return self.run_id

    async def _settle_previous_run(self) -> None:
        running = await self.run_logs.find_running()
        if running is None:
            return

        cutoff = datetime.utcnow() - timedelta(minutes=settings.STALE_RUN_MINUTES)
        if running.updated_at is not None and running.updated_at >= cutoff:
            raise ImportAlreadyRunningError(
                "Import operation already in progress",
                context={"sync_log_id": str(running.run_id), "reason": "live_run_log"}
            )

        logger.warning(f"Run {running.run_id} stopped reporting at {running.updated_at}; marking it FAILED")
        await self.run_logs.finish(
            running.run_id,
            RunStatus.FAILED,
            errors=[{
                "message": "Run stopped without finishing (process exited)",
                "code": "INTERRUPTED",
                "timestamp": datetime.utcnow().isoformat(),
                "details": {"last_activity": running.updated_at.isoformat() if running.updated_at else None},
            }],
        )

    async def _resume_point(self) -> Optional[CheckpointState]:
        state = await self.checkpoints.load_checkpoint()
        if state is None:
            if self.checkpoints.last_read_status == CheckpointReadStatus.CORRUPT:
                await self.checkpoints.clear_checkpoint()
            return None

        if state.import_type != self.import_type:
            logger.warning(
                f"Discarding {state.import_type.value} checkpoint at {state.phase.value}; "
                f"starting a fresh {self.import_type.value} import"
            )
            await self.checkpoints.clear_checkpoint()
            return None

        if state.is_paused:
            await self.checkpoints.set_paused(False)
            state.is_paused = False

        self.resumed_from = {
            "run_id": state.run_id,
            "phase": state.phase.value,
            "last_batch_index": state.last_batch_index,
        }
        self.progress = calculate_overall_progress(
            len(state.completed_phases), state.last_batch_index, state.total_batches
        )
        logger.info(f"Resuming from checkpoint at {state.phase.value} batch {state.last_batch_index}")
        return state

    # --------------------------------------------------
    # Run
    # --------------------------------------------------

    async def run(self) -> RunSummary:
        """
        Execute every remaining phase and finalize the run log.

        Never raises for import failures: the outcome is returned as a
        RunSummary and recorded in the run log. The advisory lock is always
        released.
        """
        if not self._prepared:
            await self.prepare()

        self._started = self.clock()
        logger.info(f"Starting {self.import_type.value} import {self.run_id}")

        try:
            async with self.source:
                for phase in ImportPhase.ordered():
                    if self.state is not None and phase in self.state.completed_phases:
                        continue
                    await self._run_phase(phase)
            return await self._complete()

        except ImportCancelledError as e:
            return await self._finish_cancelled(e)

        except ETLException as e:
            return await self._finish_failed(e)

        except Exception as e:
            logger.exception("Unexpected error in import pipeline")
            return await self._finish_failed(ETLException(
                "Unexpected error in import pipeline",
                context={"phase": self.state.phase.value if self.state else None},
                original_exception=e
            ))

        finally:
            await self.lock.release_lock()

    async def _run_phase(self, phase: ImportPhase) -> None:
        state = await self._enter_phase(phase)
        logger.info(f"Phase {phase.value} started at batch {state.last_batch_index}")

        if phase in LISTING_PHASES:
            await self._run_listing_phase(phase, state)
        else:
            await self._run_entity_phase(phase, state)

        state.completed_phases.append(phase)
        await self._report_progress(phase_finished=True)
        logger.info(f"Phase {phase.value} completed ({state.last_batch_index} batches)")

    async def _enter_phase(self, phase: ImportPhase) -> CheckpointState:
        if self.state is not None and self.state.phase == phase:
            return self.state

        completed = list(self.state.completed_phases) if self.state else []
        self.state = CheckpointState(
            phase=phase,
            run_id=str(self.run_id),
            import_type=self.import_type,
            completed_phases=completed,
        )
        # Gives the pause flag a row to live on from the first batch
        await self._commit(phase, None, advance=False)
        return self.state

    async def _run_listing_phase(self, phase: ImportPhase, state: CheckpointState) -> None:
        kind = PHASE_KINDS[phase]
        scan = PageScan.from_metadata(state.last_batch_index + 1, state.phase_metadata)
        skip_ids = set(state.processed_ids)

        while not scan.finished:
            await self._at_boundary()
            page = scan.next_page

            try:
                extraction = await fetch_listing_page(self.source, kind, page, self.token)
            except ResourceNotFoundError as e:
                scan.record_skipped(page)
                self.skipped_pages.setdefault(phase.value, []).append(page)
                state.phase_metadata = scan.to_metadata()
                self._set_total(scan.known_total)
                rejection = Rejection(kind, e.code, e.message, page_number=page)
                await self._commit_records(phase, kind, [], [], rejections=[rejection], page=page)
                continue

            scan.record_page(page, extraction)
            state.phase_metadata = scan.to_metadata()
            self._set_total(scan.known_total)

            candidates = [(None, c) for c in extraction.records if c.get("external_id") not in skip_ids]
            errors = [(None, err) for err in extraction.errors]
            await self._commit_records(phase, kind, candidates, errors, page=page)
            skip_ids = set()

    async def _run_entity_phase(self, phase: ImportPhase, state: CheckpointState) -> None:
        kind = PHASE_KINDS[phase]
        stale_before = selected_at = None
        if self.import_type == ImportType.INCREMENTAL and phase != ImportPhase.STATISTICS:
            selected_at = _parse_time(state.phase_metadata.get("selected_at")) or datetime.utcnow()
            state.phase_metadata["selected_at"] = selected_at.isoformat()
            stale_before = selected_at - timedelta(hours=settings.STALE_AFTER_HOURS)
        if phase == ImportPhase.PLAYER_YEAR_STATS:
            state.phase_metadata.setdefault("year", datetime.utcnow().year)

        ids = await self.store.entity_ids(phase, stale_before=stale_before, selected_at=selected_at)
        chunks = [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        self._set_total(len(chunks))
        logger.info(f"Phase {phase.value}: {len(ids)} entities in {len(chunks)} batches")

        skip_ids = set(state.processed_ids)
        for index in range(state.last_batch_index, len(chunks)):
            await self._at_boundary()
            chunk = [entity_id for entity_id in chunks[index] if entity_id not in skip_ids]
            skip_ids = set()

            if phase == ImportPhase.STATISTICS:
                await self._commit(phase, None, processed_ids=chunk, statistics_for=chunk)
                continue

            candidates: List[Sourced] = []
            row_errors: List[Sourced] = []
            rejections: List[Rejection] = []
            for entity_id in chunk:
                try:
                    fetched = await fetch_entity(
                        self.source, phase, entity_id, self.token,
                        current_year=state.phase_metadata.get("year"),
                    )
                except ImportCancelledError:
                    raise
                except ETLException as e:
                    if _fails_run(e):
                        raise
                    rejections.append(Rejection(
                        kind, e.code, e.message, entity_id=entity_id,
                        details={"category": e.category},
                    ))
                    continue
                candidates.extend((entity_id, record) for record in fetched.records)
                row_errors.extend((entity_id, err) for err in fetched.errors)

            await self._commit_records(
                phase, kind, candidates, row_errors,
                rejections=rejections, processed_ids=chunk,
            )

    # --------------------------------------------------
    # Batches
    # --------------------------------------------------

    async def _commit_records(
        self,
        phase: ImportPhase,
        kind: EntityKind,
        candidates: Sequence[Sourced],
        row_errors: Sequence[Sourced],
        rejections: Optional[List[Rejection]] = None,
        page: Optional[int] = None,
        processed_ids: Optional[Sequence[str]] = None,
    ) -> None:
        """validate -> dedupe -> upsert + checkpoint for one batch."""
        rejections = list(rejections or [])
        for source, err in row_errors:
            self.metrics.total_fetched += 1
            self.metrics.invalid += 1
            rejections.append(Rejection(
                kind, err.code, err.message, entity_id=err.entity_id, page_number=page,
                details=_details(source, row_index=err.row_index),
            ))

        valid = []
        for source, candidate in candidates:
            self.metrics.total_fetched += 1
            outcome = validate_record(kind, candidate)
            if outcome.is_valid:
                self.metrics.valid += 1
                valid.append(outcome.record)
            else:
                self.metrics.invalid += 1
                rejections.append(Rejection(
                    kind, ValidationError.code, outcome.summary(),
                    entity_id=outcome.external_id, page_number=page,
                    details=_details(source, issues=outcome.issues_as_dicts()),
                ))

        records, duplicates = deduplicate_batch(valid)
        self.metrics.duplicates_skipped += duplicates

        for rejection in rejections:
            self.error_log.record(
                phase, rejection.error_code, rejection.error_message,
                entity_id=rejection.entity_id, page_number=rejection.page_number,
            )

        if processed_ids is None:
            processed_ids = [record.external_id for record in records]
        await self._commit(phase, kind, records=records, rejections=rejections, processed_ids=processed_ids)

    async def _commit(
        self,
        phase: ImportPhase,
        kind: Optional[EntityKind],
        records: Sequence[Any] = (),
        rejections: Sequence[Rejection] = (),
        processed_ids: Sequence[str] = (),
        statistics_for: Sequence[str] = (),
        advance: bool = True,
    ) -> None:
        state = self.state
        if advance:
            state.last_batch_index += 1
            state.processed_ids = list(processed_ids)
        if state.total_batches and state.last_batch_index > state.total_batches:
            state.total_batches = state.last_batch_index

        processed = self.records_processed + len(records) + len(statistics_for)
        await self.store.commit_batch(BatchCommit(
            phase=phase,
            kind=kind,
            state=state,
            run_id=self.run_id,
            records=records,
            rejections=rejections,
            records_processed=processed,
            metadata=self._metadata(),
            statistics_for=statistics_for,
        ))
        self.records_processed = processed
        if advance:
            await self._report_progress()

    def _set_total(self, total: int) -> None:
        # Open-ended listings report 0 until the page count is known
        if total:
            total = max(total, self.state.last_batch_index)
        self.state.total_batches = total

    async def _report_progress(self, phase_finished: bool = False) -> None:
        state = self.state
        if phase_finished:
            overall = calculate_overall_progress(len(state.completed_phases), 0, 0)
        else:
            overall = calculate_overall_progress(
                len(state.completed_phases), state.last_batch_index, state.total_batches
            )
        self.progress = max(self.progress, overall)
        await self.status.update(progress=self.progress, validation=self.metrics.to_dict())

    # --------------------------------------------------
    # Batch boundaries: cancel, timeout, pause
    # --------------------------------------------------

    async def _at_boundary(self) -> None:
        self.token.raise_if_cancelled()
        self._check_timeout()
        await self._check_remote_cancel()
        if await self.checkpoints.is_paused():
            await self._wait_while_paused()

    def _check_timeout(self) -> None:
        if self._started is None:
            return
        elapsed = self.clock() - self._started
        if elapsed >= self.max_duration_seconds:
            raise RunTimeoutError(
                f"Import operation timed out after {format_duration(elapsed)}",
                context={
                    "phase": self.state.phase.value if self.state else None,
                    "max_duration_hours": self.max_duration_seconds / 3600,
                }
            )

    async def _check_remote_cancel(self) -> None:
        """Honor a cancel recorded in the run log by another process."""
        if self.run_id is None:
            return
        if await self.run_logs.status_of(self.run_id) == RunStatus.CANCELLED:
            self.token.cancel("Import cancelled by user")
            self.token.raise_if_cancelled()

    async def _wait_while_paused(self) -> None:
        state = self.state
        logger.info(f"Import paused at {state.phase.value} batch {state.last_batch_index}")
        await self.status.update(current_operation=f"Paused at {state.phase.value} (batch {state.last_batch_index})")

        while True:
            await self.token.sleep(self.pause_poll_seconds)
            self._check_timeout()
            await self._check_remote_cancel()
            await self.run_logs.touch(self.run_id)
            if not await self.checkpoints.is_paused():
                break

        logger.info(f"Import resumed at {state.phase.value} batch {state.last_batch_index}")
        await self.status.update(current_operation=f"Resuming {state.phase.value}")

    # --------------------------------------------------
    # Terminal states
    # --------------------------------------------------

    async def _complete(self) -> RunSummary:
        integrity = None
        if self.import_type == ImportType.FULL and self.integrity is not None:
            try:
                integrity = (await self.integrity.check_all()).to_dict()
            except Exception as e:
                logger.error(f"Integrity check after import failed: {e}")
                integrity = {"status": "ERROR", "message": str(e)}

        await self.checkpoints.clear_checkpoint()
        self.progress = 100
        await self.run_logs.finish(
            self.run_id,
            RunStatus.COMPLETED,
            records_processed=self.records_processed,
            metadata=self._metadata(integrity=integrity),
        )
        await self.status.update(
            is_running=False,
            progress=100,
            phase=None,
            current_operation=None,
            last_sync_time=datetime.utcnow(),
            validation=self.metrics.to_dict(),
        )
        logger.info(
            f"Import {self.run_id} completed: {self.records_processed} records, "
            f"validation rate {self.metrics.validation_rate}%, {self.error_log.total} errors"
        )
        return self._summary(RunStatus.COMPLETED, integrity=integrity)

    async def _finish_cancelled(self, error: ImportCancelledError) -> RunSummary:
        logger.info(f"Import {self.run_id} cancelled: {error.message}")
        entry = error_entry(error, phase=self.state.phase.value if self.state else None)
        await self._record_terminal(RunStatus.CANCELLED, entry, last_error=None)
        return self._summary(RunStatus.CANCELLED, error=entry)

    async def _finish_failed(self, error: ETLException) -> RunSummary:
        logger.error(
            f"Import {self.run_id} failed: {error.message}",
            extra={"error_context": error.to_dict()}
        )
        entry = error_entry(error, phase=self.state.phase.value if self.state else None)
        await self._record_terminal(RunStatus.FAILED, entry, last_error=f"[{error.code}] {error.message}")
        return self._summary(RunStatus.FAILED, error=entry)

    async def _record_terminal(self, status: RunStatus, entry: Dict[str, Any], last_error: Optional[str]) -> None:
        """Checkpoint is kept so a later run of the same type resumes from it."""
        try:
            await self.run_logs.finish(
                self.run_id,
                status,
                records_processed=self.records_processed,
                errors=[entry],
                metadata=self._metadata(),
            )
            await self.status.update(
                is_running=False,
                current_operation=None,
                last_error=last_error,
                validation=self.metrics.to_dict(),
            )
        except Exception as e:
            logger.error(
                f"Could not record {status.value} state for run {self.run_id}: {e}",
                extra={"error_context": entry}
            )

    def _summary(self, status: RunStatus, **extra: Any) -> RunSummary:
        return RunSummary(
            run_id=self.run_id,
            import_type=self.import_type,
            status=status,
            records_processed=self.records_processed,
            progress=self.progress,
            validation=self.metrics.to_dict(),
            **extra,
        )

    def _metadata(self, integrity: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        metadata = {
            "validation": self.metrics.to_dict(),
            "error_summary": self.error_log.summary(),
            "recent_errors": self.error_log.entries[-20:],
            "skipped_pages": {phase: list(pages) for phase, pages in self.skipped_pages.items()},
            "resumed_from": self.resumed_from,
            "completed_phases": [p.value for p in self.state.completed_phases] if self.state else [],
        }
        if integrity is not None:
            metadata["integrity"] = integrity
        return metadata


def _fails_run(error: ETLException) -> bool:
    """Entity-level fetch failures are quarantined unless the source itself is down."""
    return isinstance(error, RetryExhaustedError) and isinstance(error.original_exception, SourceUnavailableError)


def _details(source: Optional[str], **details: Any) -> Dict[str, Any]:
    if source is not None:
        details["source_entity_id"] = source
    return details


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def build_orchestrator(
    session_factory: async_sessionmaker,
    engine: AsyncEngine,
    import_type: ImportType,
    token: Optional[CancellationToken] = None,
) -> ImportOrchestrator:
    """Wire an orchestrator to the real database and source site."""
    status = SyncStatusTracker(session_factory)
    checkpoints = CheckpointManager(session_factory, status)
    run_logs = RunLogManager(session_factory)
    skipped = SkippedEntitiesManager(session_factory)
    return ImportOrchestrator(
        store=ImportStore(session_factory, checkpoints, run_logs, skipped),
        checkpoints=checkpoints,
        run_logs=run_logs,
        lock=AdvisoryLockManager(engine),
        source=SourceClient(RateLimiter(settings.RATE_LIMIT_MS), RetryManager()),
        status=status,
        integrity=IntegrityChecker(session_factory),
        import_type=import_type,
        token=token,
    )
