"""
Health check endpoint with database and import status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db, get_registry
from ingestion.registry import ImportRegistry
from schemas.api import HealthCheckResponse
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    registry: ImportRegistry = Depends(get_registry),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Checkpoint status (a CORRUPT checkpoint degrades health)
    - Whether an import is running and when the last one completed
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    checkpoint_status = None
    snapshot = {}
    if db_connected:
        try:
            checkpoint_status = (await registry.checkpoints.read_checkpoint()).status.value
            snapshot = await registry.status.snapshot()
        except Exception as e:
            logger.error(f"Failed to read import status: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        checkpoint_status=checkpoint_status,
        import_running=bool(snapshot.get("is_running")) or registry.active() is not None,
        last_sync_time=snapshot.get("last_sync_time"),
        last_error=snapshot.get("last_error"),
    )
