"""
Run Log manager: append-only history of import runs (sync_logs)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, literal
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import ETLException
from models.base import ImportType, RunStatus
from models.sync_log import SyncLog

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}


def error_entry(error: BaseException, **details: Any) -> Dict[str, Any]:
    """Structured error record stored in SyncLog.errors."""
    if isinstance(error, ETLException):
        message, code = error.message, error.code
        details = dict(error.context, **details)
    else:
        message, code = str(error) or type(error).__name__, "INTERNAL_ERROR"
    return {
        "message": message,
        "code": code,
        "timestamp": datetime.utcnow().isoformat(),
        "details": {k: v for k, v in details.items() if _json_safe(v)},
    }


def _json_safe(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool, list, dict))


def _appended_errors(entries: List[Dict[str, Any]]):
    return func.coalesce(SyncLog.errors, literal([], JSONB)).op("||")(literal(entries, JSONB))


@dataclass
class RunLogFilters:
    status: Optional[RunStatus] = None
    type: Optional[ImportType] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class RunLogManager:
    """
    Create, update and query SyncLog rows.

    Writes that belong to a batch take the caller's session; everything else
    opens its own.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(
        self,
        import_type: ImportType,
        run_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncLog:
        log = SyncLog(
            run_id=run_id or uuid.uuid4(),
            type=import_type,
            status=RunStatus.RUNNING,
            start_time=datetime.utcnow(),
            records_processed=0,
            errors=[],
            run_metadata=metadata or {},
        )
        async with self.session_factory() as session:
            session.add(log)
            await session.commit()
        logger.info(f"Created run log {log.run_id} ({import_type.value})")
        return log

    async def get(self, run_id: uuid.UUID) -> Optional[SyncLog]:
        async with self.session_factory() as session:
            result = await session.execute(select(SyncLog).where(SyncLog.run_id == run_id))
            return result.scalar_one_or_none()

    async def find_running(self) -> Optional[SyncLog]:
        """Most recent RUNNING row, if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncLog)
                .where(SyncLog.status == RunStatus.RUNNING)
                .order_by(SyncLog.start_time.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def touch(
        self,
        run_id: uuid.UUID,
        session: Optional[AsyncSession] = None,
        records_processed: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Refresh liveness and, optionally, the running totals."""
        values: Dict[str, Any] = {"updated_at": datetime.utcnow()}
        if records_processed is not None:
            values["records_processed"] = records_processed
        if metadata is not None:
            values["run_metadata"] = metadata
        stmt = update(SyncLog).where(SyncLog.run_id == run_id).values(**values)
        await self._execute(stmt, session)

    async def append_error(self, run_id: uuid.UUID, entry: Dict[str, Any]) -> None:
        stmt = (
            update(SyncLog)
            .where(SyncLog.run_id == run_id)
            .values(errors=_appended_errors([entry]), updated_at=datetime.utcnow())
        )
        await self._execute(stmt, None)

    async def finish(
        self,
        run_id: uuid.UUID,
        status: RunStatus,
        records_processed: Optional[int] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a RUNNING row to a terminal status.

        Returns False when the row was already terminal (e.g. cancelled from
        another process), in which case it is left untouched.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")

        now = datetime.utcnow()
        values: Dict[str, Any] = {
            "status": status,
            # end_time never precedes start_time
            "end_time": func.greatest(SyncLog.start_time, now),
            "updated_at": now,
        }
        if records_processed is not None:
            values["records_processed"] = records_processed
        if errors:
            values["errors"] = _appended_errors(errors)
        if metadata is not None:
            values["run_metadata"] = metadata

        stmt = (
            update(SyncLog)
            .where(SyncLog.run_id == run_id, SyncLog.status == RunStatus.RUNNING)
            .values(**values)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        finished = result.rowcount > 0
        if finished:
            logger.info(f"Run {run_id} finished with status {status.value}")
        return finished

    async def status_of(self, run_id: uuid.UUID) -> Optional[RunStatus]:
        async with self.session_factory() as session:
            result = await session.execute(select(SyncLog.status).where(SyncLog.run_id == run_id))
            return result.scalar_one_or_none()

    async def list_logs(
        self,
        page: int = 1,
        page_size: int = 20,
        filters: Optional[RunLogFilters] = None,
    ) -> Tuple[List[SyncLog], int]:
        """Newest-first page of run logs plus the total matching count."""
        filters = filters or RunLogFilters()
        conditions = []
        if filters.status is not None:
            conditions.append(SyncLog.status == filters.status)
        if filters.type is not None:
            conditions.append(SyncLog.type == filters.type)
        if filters.date_from is not None:
            conditions.append(SyncLog.start_time >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(SyncLog.start_time <= filters.date_to)

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(SyncLog.id)).where(*conditions))
            result = await session.execute(
                select(SyncLog)
                .where(*conditions)
                .order_by(SyncLog.start_time.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total or 0

    async def _execute(self, stmt, session: Optional[AsyncSession]) -> None:
        if session is not None:
            await session.execute(stmt)
            return
        async with self.session_factory() as own_session:
            await own_session.execute(stmt)
            await own_session.commit()
