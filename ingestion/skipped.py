"""
Skipped Entities manager.

Records that failed validation and pages that kept failing after retries are
quarantined here instead of aborting the run. An operator (or the retry
service) later moves them through PENDING -> RETRYING -> COMPLETED | FAILED.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from models.base import ImportPhase, EntityKind, SkippedStatus
from models.skipped_entity import SkippedEntity

logger = logging.getLogger(__name__)


class SkippedEntitiesManager:
    """CRUD and summaries for SkippedEntity rows."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(
        self,
        phase: ImportPhase,
        entity_type: EntityKind,
        error_code: str,
        error_message: str,
        entity_id: Optional[str] = None,
        page_number: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        run_id: Optional[uuid.UUID] = None,
        session: Optional[AsyncSession] = None,
    ) -> SkippedEntity:
        """
        Quarantine one record or page.

        When `session` is given the row joins the caller's transaction, so a
        rejected record is recorded atomically with the rest of its batch.
        """
        entity = SkippedEntity(
            phase=phase,
            entity_type=entity_type,
            entity_id=entity_id,
            page_number=page_number,
            error_code=error_code,
            error_message=error_message[:2000],
            details=details,
            retry_count=0,
            status=SkippedStatus.PENDING,
            run_id=run_id,
        )
        if session is not None:
            session.add(entity)
        else:
            async with self.session_factory() as own_session:
                own_session.add(entity)
                await own_session.commit()

        target = f"entity {entity_id}" if entity_id else f"page {page_number}"
        logger.warning(f"Skipped {entity_type.value} {target} in {phase.value}: [{error_code}] {error_message}")
        return entity

    async def get(self, skipped_id: int) -> Optional[SkippedEntity]:
        async with self.session_factory() as session:
            return await session.get(SkippedEntity, skipped_id)

    async def list_by_phase(
        self,
        phase: Optional[ImportPhase] = None,
        status: Optional[SkippedStatus] = None,
        limit: int = 500,
    ) -> List[SkippedEntity]:
        query = select(SkippedEntity)
        if phase is not None:
            query = query.where(SkippedEntity.phase == phase)
        if status is not None:
            query = query.where(SkippedEntity.status == status)
        query = query.order_by(SkippedEntity.created_at.desc()).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_by_entity(self, entity_id: str) -> List[SkippedEntity]:
        """Every skipped row naming `entity_id`, including composite IDs that start with it."""
        query = (
            select(SkippedEntity)
            .where(
                (SkippedEntity.entity_id == entity_id)
                | SkippedEntity.entity_id.like(f"{entity_id}:%")
            )
            .order_by(SkippedEntity.created_at.desc())
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_by_pages(self, phase: ImportPhase, page_numbers: Sequence[int]) -> List[SkippedEntity]:
        query = (
            select(SkippedEntity)
            .where(SkippedEntity.phase == phase, SkippedEntity.page_number.in_(list(page_numbers)))
            .order_by(SkippedEntity.page_number)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def mark_retrying(self, skipped_id: int) -> None:
        now = datetime.utcnow()
        await self._update(
            skipped_id,
            status=SkippedStatus.RETRYING,
            retry_count=SkippedEntity.retry_count + 1,
            last_retry_at=now,
            updated_at=now,
        )

    async def mark_pending(self, skipped_id: int) -> None:
        """Hand a row back to the queue after an interrupted retry."""
        await self._update(skipped_id, status=SkippedStatus.PENDING, updated_at=datetime.utcnow())

    async def mark_completed(self, skipped_id: int) -> None:
        await self._update(skipped_id, status=SkippedStatus.COMPLETED, updated_at=datetime.utcnow())

    async def mark_failed(self, skipped_id: int, error_message: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"status": SkippedStatus.FAILED, "updated_at": datetime.utcnow()}
        if error_message:
            values["error_message"] = error_message[:2000]
        await self._update(skipped_id, **values)

    async def summary(self) -> Dict[str, Dict[str, int]]:
        """Counts per phase: total plus one key per status (lower-case)."""
        async with self.session_factory() as session:
            result = await session.execute(select(SkippedEntity.phase, SkippedEntity.status))
            rows = result.all()

        summary: Dict[str, Dict[str, int]] = {}
        for phase, status in rows:
            bucket = summary.setdefault(
                phase.value,
                {"total": 0, **{s.value.lower(): 0 for s in SkippedStatus}},
            )
            bucket["total"] += 1
            bucket[status.value.lower()] += 1
        return summary

    async def cleanup_completed(self, older_than_days: Optional[int] = None) -> int:
        """Delete COMPLETED rows older than the retention window. Unresolved rows are kept."""
        days = settings.SKIPPED_RETENTION_DAYS if older_than_days is None else older_than_days
        cutoff = datetime.utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SkippedEntity).where(
                    SkippedEntity.status == SkippedStatus.COMPLETED,
                    SkippedEntity.updated_at < cutoff,
                )
            )
            await session.commit()
        removed = result.rowcount or 0
        logger.info(f"Removed {removed} completed skipped entities older than {days} days")
        return removed

    async def _update(self, skipped_id: int, **values: Any) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(SkippedEntity).where(SkippedEntity.id == skipped_id).values(**values)
            )
            await session.commit()
