"""
PostgreSQL advisory lock guaranteeing one import at a time across processes
"""

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from core.config import settings
from core.exceptions import ImportAlreadyRunningError, DatabaseConnectionError

logger = logging.getLogger(__name__)


class AdvisoryLockManager:
    """
    Session-level advisory lock held on a dedicated connection.

    pg_try_advisory_lock never blocks, so a second importer learns immediately
    that an import is running instead of queueing. The lock lives as long as
    the connection: if the holding process dies, PostgreSQL releases it.
    """

    def __init__(self, engine: AsyncEngine, lock_key: Optional[int] = None):
        self.engine = engine
        self.lock_key = settings.ADVISORY_LOCK_KEY if lock_key is None else lock_key
        self._connection: Optional[AsyncConnection] = None

    @property
    def is_held(self) -> bool:
        return self._connection is not None

    async def acquire_lock(self) -> bool:
        """
        Try to take the lock without waiting.

        Returns:
            True if this manager now holds the lock, False if another session does
        """
        if self._connection is not None:
            return True

        try:
            connection = await self.engine.connect()
        except Exception as e:
            raise DatabaseConnectionError(
                "Could not open connection for advisory lock",
                context={"lock_key": self.lock_key},
                original_exception=e
            )

        try:
            result = await connection.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": self.lock_key}
            )
            acquired = bool(result.scalar())
            # Leave no transaction open on a connection we may keep for hours
            await connection.commit()
        except Exception:
            await connection.close()
            raise

        if not acquired:
            await connection.close()
            logger.info(f"Advisory lock {self.lock_key} is held by another session")
            return False

        self._connection = connection
        logger.info(f"Acquired advisory lock {self.lock_key}")
        return True

    async def release_lock(self) -> None:
        """Release the lock. Safe to call when the lock was never acquired."""
        connection = self._connection
        if connection is None:
            return

        self._connection = None
        try:
            await connection.execute(
                text("SELECT pg_advisory_unlock(:key)"), {"key": self.lock_key}
            )
            await connection.commit()
            logger.info(f"Released advisory lock {self.lock_key}")
        except Exception as e:
            # Closing the session below releases session-level locks anyway
            logger.warning(f"Explicit unlock of {self.lock_key} failed: {e}")
        finally:
            await connection.close()

    async def is_locked_elsewhere(self) -> bool:
        """Probe whether any other session holds the lock."""
        if self._connection is not None:
            return False
        acquired = await self.acquire_lock()
        if acquired:
            await self.release_lock()
        return not acquired

    async def __aenter__(self) -> "AdvisoryLockManager":
        if not await self.acquire_lock():
            raise ImportAlreadyRunningError(
                "Import operation already in progress",
                context={"lock_key": self.lock_key}
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release_lock()
