"""
FastAPI dependencies: database session, run registry and API key guard
"""

import logging
import secrets
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import async_session_maker
from ingestion.registry import ImportRegistry

logger = logging.getLogger(__name__)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


def get_registry(request: Request) -> ImportRegistry:
    """The registry created in the application lifespan."""
    return request.app.state.registry


async def require_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> None:
    """Reject mutating requests without the configured API key. No key configured means open access."""
    if not settings.API_KEY:
        return
    if x_api_key is None or not secrets.compare_digest(x_api_key, settings.API_KEY):
        logger.warning("Rejected control request with missing or invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


AdminGuard = Depends(require_api_key)
