"""
Database side of the import pipeline.

Each batch commits in exactly one transaction: entity upserts, quarantined
records, the checkpoint advance and the run-log liveness touch. A crash
between "persist" and "advance checkpoint" is therefore impossible; together
with external_id upserts this makes resuming a batch idempotent.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ingestion.checkpoint import CheckpointManager
from ingestion.loaders.postgres_loader import PostgresLoader, LoadResult
from ingestion.run_log import RunLogManager
from ingestion.skipped import SkippedEntitiesManager
from ingestion.statistics import compute_role_stats
from models.base import ImportPhase, EntityKind, EventStatus, SyncState
from models.game import Game, GameParticipation
from models.player import Player, PlayerYearStats
from models.tournament import Tournament, PlayerTournament
from schemas.checkpoint import CheckpointState
from schemas.records import RecordBase

logger = logging.getLogger(__name__)

# Dependent table whose freshness decides whether an entity needs re-fetching
FRESHNESS_SOURCES: Dict[ImportPhase, tuple] = {
    ImportPhase.PLAYER_YEAR_STATS: (Player, PlayerYearStats, "player_external_id"),
    ImportPhase.PLAYER_TOURNAMENT_HISTORY: (Player, PlayerTournament, "player_external_id"),
    ImportPhase.GAMES: (Tournament, Game, "tournament_external_id"),
}


@dataclass
class Rejection:
    """A record or page quarantined to Skipped Entities."""
    entity_type: EntityKind
    error_code: str
    error_message: str
    entity_id: Optional[str] = None
    page_number: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class BatchCommit:
    phase: ImportPhase
    kind: Optional[EntityKind]
    state: Optional[CheckpointState]
    run_id: Optional[uuid.UUID]
    records: Sequence[RecordBase] = field(default_factory=list)
    rejections: Sequence[Rejection] = field(default_factory=list)
    records_processed: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    # STATISTICS batches recompute aggregates for these players
    statistics_for: Sequence[str] = field(default_factory=list)


class ImportStore:
    """Transactional batch writes and entity selection queries."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        checkpoints: CheckpointManager,
        run_logs: RunLogManager,
        skipped: SkippedEntitiesManager,
    ):
        self.session_factory = session_factory
        self.checkpoints = checkpoints
        self.run_logs = run_logs
        self.skipped = skipped

    async def commit_batch(self, batch: BatchCommit) -> LoadResult:
        async with self.session_factory() as session:
            try:
                result = await self._persist(session, batch)
                await self.checkpoints.save_checkpoint(batch.state, session=session, preserve_pause=True)
                await self.run_logs.touch(
                    batch.run_id,
                    session=session,
                    records_processed=batch.records_processed,
                    metadata=batch.metadata,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return result

    async def persist_records(
        self,
        phase: ImportPhase,
        kind: EntityKind,
        records: Sequence[RecordBase],
        rejections: Sequence[Rejection] = (),
        run_id: Optional[uuid.UUID] = None,
    ) -> LoadResult:
        """Upsert records outside of a run (skipped-entity retries). No checkpoint is written."""
        batch = BatchCommit(
            phase=phase, kind=kind, state=None, run_id=run_id,
            records=records, rejections=rejections,
        )
        async with self.session_factory() as session:
            try:
                result = await self._persist(session, batch)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return result

    async def _persist(self, session: AsyncSession, batch: BatchCommit) -> LoadResult:
        result = LoadResult()
        if batch.kind is not None and batch.records:
            result = await PostgresLoader(session).load(batch.kind, batch.records)
        if batch.statistics_for:
            result.inserted += await compute_role_stats(session, batch.statistics_for)
        for rejection in batch.rejections:
            await self.skipped.record(
                phase=batch.phase,
                entity_type=rejection.entity_type,
                error_code=rejection.error_code,
                error_message=rejection.error_message,
                entity_id=rejection.entity_id,
                page_number=rejection.page_number,
                details=rejection.details,
                run_id=batch.run_id,
                session=session,
            )
        return result

    async def entity_ids(
        self,
        phase: ImportPhase,
        stale_before: Optional[datetime] = None,
        selected_at: Optional[datetime] = None,
    ) -> List[str]:
        """
        Sorted IDs driving an entity phase.

        With `stale_before` (INCREMENTAL runs) only entities whose dependent
        rows are missing, not SYNCED, or older than `stale_before` are
        returned. Rows refreshed after `selected_at` still count as stale so
        the list stays stable while the phase runs and across resumes.
        """
        async with self.session_factory() as session:
            if phase == ImportPhase.STATISTICS:
                query = select(GameParticipation.player_external_id).distinct()
                result = await session.execute(query.order_by(GameParticipation.player_external_id))
                return list(result.scalars().all())

            parent, child, column = FRESHNESS_SOURCES[phase]
            query = select(parent.external_id)
            if parent is Tournament:
                query = query.where(Tournament.status != EventStatus.SCHEDULED)

            if stale_before is not None:
                fresh_conditions = [
                    getattr(child, column).is_not(None),
                    child.sync_status == SyncState.SYNCED,
                    child.last_sync_at >= stale_before,
                ]
                if selected_at is not None:
                    fresh_conditions.append(child.last_sync_at < selected_at)
                fresh = select(getattr(child, column)).where(and_(*fresh_conditions))
                query = query.where(parent.external_id.not_in(fresh))

            result = await session.execute(query.order_by(parent.external_id))
            return list(result.scalars().all())
