"""
Checkpoint manager: durable, resumable pipeline position.

The checkpoint is a single row holding a versioned CheckpointState document.
Reading distinguishes three outcomes (FOUND, NONE, CORRUPT). Callers that only
want "something to resume from" use load_checkpoint(), which treats CORRUPT as
"start clean" but raises a CRITICAL alert and records it in the sync status so
a discarded run never disappears silently.
"""

import logging
import math
from datetime import datetime
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, delete, func, literal_column
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import CheckpointError, CorruptCheckpointError
from ingestion.status import SyncStatusTracker
from models.base import ImportPhase
from models.checkpoint import ImportCheckpoint, CHECKPOINT_KEY, CHECKPOINT_VERSION
from schemas.checkpoint import CheckpointState, CheckpointReadResult, CheckpointReadStatus

logger = logging.getLogger(__name__)

TOTAL_PHASES = len(ImportPhase)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_phase_progress(last_batch_index: int, total_batches: int) -> int:
    """round(last_batch_index / total_batches * 100), clamped to [0, 100]."""
    if total_batches <= 0:
        return 0
    percent = _round_half_up(last_batch_index / total_batches * 100)
    return max(0, min(100, percent))


def calculate_overall_progress(
    completed_phases: int,
    last_batch_index: int,
    total_batches: int,
    total_phases: int = TOTAL_PHASES,
) -> int:
    """
    Whole-run progress: ((completed_phases + batch_fraction) / total_phases) * 100.

    Example: batch 25 of 50 in the second of seven phases gives
    round((1 + 0.5) / 7 * 100) = 21.
    """
    fraction = 0.0
    if total_batches > 0:
        fraction = min(max(last_batch_index / total_batches, 0.0), 1.0)
    percent = _round_half_up((completed_phases + fraction) / total_phases * 100)
    return max(0, min(100, percent))


class CheckpointManager:
    """
    Persist, load and clear the import checkpoint.

    Ownership: only the orchestrator (and the pause/resume control path)
    writes the checkpoint.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        status_tracker: Optional[SyncStatusTracker] = None,
    ):
        self.session_factory = session_factory
        self.status_tracker = status_tracker or SyncStatusTracker(session_factory)
        self.last_read_status: Optional[CheckpointReadStatus] = None

    async def save_checkpoint(
        self,
        state: CheckpointState,
        session: Optional[AsyncSession] = None,
        preserve_pause: bool = False,
    ) -> int:
        """
        Upsert the checkpoint row.

        When `session` is given the write joins the caller's transaction, so a
        batch's upserts and its checkpoint advance commit together.
        `preserve_pause` keeps whatever pause flag is already stored.

        Returns:
            The derived per-phase progress percentage
        """
        state.timestamp = datetime.utcnow()
        progress = calculate_phase_progress(state.last_batch_index, state.total_batches)

        if session is not None:
            await self._write(session, state, progress, preserve_pause)
            return progress

        try:
            async with self.session_factory() as own_session:
                await self._write(own_session, state, progress, preserve_pause)
                await own_session.commit()
        except Exception as e:
            raise CheckpointError(
                "Failed to save checkpoint",
                context={"phase": state.phase.value, "operation": "write"},
                original_exception=e
            )
        return progress

    async def _write(
        self,
        session: AsyncSession,
        state: CheckpointState,
        progress: int,
        preserve_pause: bool = False,
    ) -> None:
        values = {
            "version": CHECKPOINT_VERSION,
            "state": state.to_document(),
            "progress": progress,
            "updated_at": datetime.utcnow(),
        }
        stmt = insert(ImportCheckpoint).values(id=CHECKPOINT_KEY, **values)
        update_values = dict(values)
        if preserve_pause:
            # A pause requested by another request must survive the worker's batch write
            update_values["state"] = func.jsonb_set(
                stmt.excluded.state,
                literal_column("'{is_paused}'::text[]"),
                func.coalesce(ImportCheckpoint.state["is_paused"], literal_column("'false'::jsonb")),
            )
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=update_values)
        await session.execute(stmt)

        batch_label = f"{state.last_batch_index}/{state.total_batches}" if state.total_batches else str(state.last_batch_index)
        await self.status_tracker.update(
            session,
            phase=state.phase,
            current_operation=f"Processing {state.phase.value} (batch {batch_label})",
        )

    async def read_checkpoint(self) -> CheckpointReadResult:
        """Read the stored checkpoint, reporting NONE and CORRUPT separately."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportCheckpoint).where(ImportCheckpoint.id == CHECKPOINT_KEY)
            )
            row = result.scalar_one_or_none()

        if row is None:
            read = CheckpointReadResult(status=CheckpointReadStatus.NONE)
        elif row.version != CHECKPOINT_VERSION:
            read = CheckpointReadResult(
                status=CheckpointReadStatus.CORRUPT,
                error=f"Unsupported checkpoint version {row.version} (expected {CHECKPOINT_VERSION})",
            )
        else:
            try:
                state = CheckpointState.model_validate(row.state)
                read = CheckpointReadResult(status=CheckpointReadStatus.FOUND, state=state)
            except (PydanticValidationError, TypeError, ValueError) as e:
                read = CheckpointReadResult(status=CheckpointReadStatus.CORRUPT, error=str(e))

        self.last_read_status = read.status
        return read

    async def load_checkpoint(self) -> Optional[CheckpointState]:
        """
        Return the saved state, or None when missing or malformed. Never raises
        on malformed data.
        """
        read = await self.read_checkpoint()
        if read.status == CheckpointReadStatus.CORRUPT:
            error = CorruptCheckpointError("Stored checkpoint is corrupt and will be ignored", context={"error": read.error})
            logger.critical(f"{error.message}: {read.error}", extra={"error_context": error.to_dict()})
            try:
                await self.status_tracker.update(last_error=f"Corrupt checkpoint discarded: {read.error}")
            except Exception as e:
                logger.error(f"Could not record corrupt checkpoint alert: {e}")
        return read.state

    async def clear_checkpoint(self, session: Optional[AsyncSession] = None) -> None:
        """Delete the checkpoint. A missing row is not an error."""
        stmt = delete(ImportCheckpoint).where(ImportCheckpoint.id == CHECKPOINT_KEY)
        if session is not None:
            await session.execute(stmt)
            return
        async with self.session_factory() as own_session:
            await own_session.execute(stmt)
            await own_session.commit()
        logger.info("Checkpoint cleared")

    async def set_paused(self, paused: bool) -> Optional[CheckpointState]:
        """
        Flip the cooperative pause flag in place. Returns the updated state, or
        None when there is no checkpoint to pause.

        Only the flag is written so a concurrent batch commit by the worker is
        never rolled back.
        """
        flag = literal_column("'true'::jsonb" if paused else "'false'::jsonb")
        async with self.session_factory() as session:
            result = await session.execute(
                update(ImportCheckpoint)
                .where(ImportCheckpoint.id == CHECKPOINT_KEY)
                .values(
                    state=func.jsonb_set(ImportCheckpoint.state, literal_column("'{is_paused}'::text[]"), flag),
                    updated_at=datetime.utcnow(),
                )
            )
            await session.commit()
        if not result.rowcount:
            return None

        state = await self.load_checkpoint()
        if state is not None:
            logger.info(f"Checkpoint {'paused' if paused else 'resumed'} at {state.phase.value} batch {state.last_batch_index}")
        return state

    async def is_paused(self) -> bool:
        read = await self.read_checkpoint()
        return bool(read.state and read.state.is_paused)
