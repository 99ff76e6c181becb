"""
Live sync status snapshot shared by every server process
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.sync_log import SyncStatus, SYNC_STATUS_KEY

logger = logging.getLogger(__name__)

STATUS_FIELDS = {
    "is_running",
    "progress",
    "current_operation",
    "phase",
    "run_id",
    "last_sync_time",
    "last_error",
    "validation",
}


class SyncStatusTracker:
    """Reads and upserts the singleton SyncStatus row."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def update(self, session: Optional[AsyncSession] = None, **fields: Any) -> None:
        """
        Upsert the given status fields.

        When `session` is given the write joins the caller's transaction.
        """
        unknown = set(fields) - STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync status fields: {sorted(unknown)}")

        values = dict(fields, updated_at=datetime.utcnow())
        stmt = insert(SyncStatus).values(id=SYNC_STATUS_KEY, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)

        if session is not None:
            await session.execute(stmt)
            return

        async with self.session_factory() as own_session:
            await own_session.execute(stmt)
            await own_session.commit()

    async def get(self) -> Optional[SyncStatus]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncStatus).where(SyncStatus.id == SYNC_STATUS_KEY)
            )
            return result.scalar_one_or_none()

    async def snapshot(self) -> Dict[str, Any]:
        row = await self.get()
        if row is None:
            return {
                "is_running": False,
                "progress": 0,
                "current_operation": None,
                "phase": None,
                "run_id": None,
                "last_sync_time": None,
                "last_error": None,
                "validation": None,
            }
        return {
            "is_running": row.is_running,
            "progress": row.progress,
            "current_operation": row.current_operation,
            "phase": row.phase,
            "run_id": str(row.run_id) if row.run_id else None,
            "last_sync_time": row.last_sync_time,
            "last_error": row.last_error,
            "validation": row.validation,
        }
