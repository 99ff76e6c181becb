"""
Async engine and session factory for the import database.

Pooling is disabled: the advisory lock pins one connection for the whole run
and every batch opens a short-lived session of its own.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    return create_async_engine(url or settings.DATABASE_URL, echo=echo, poolclass=NullPool)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Sessions keep loaded attributes after commit so run logs can be returned to callers."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine: AsyncEngine = build_engine()
async_session_maker = build_session_factory(engine)
