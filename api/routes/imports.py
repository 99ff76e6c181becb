"""
Import control endpoints: trigger, status, pause/resume/cancel, skipped
entity retries, run log history and data audits
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_registry, AdminGuard
from ingestion.checkpoint import calculate_phase_progress
from ingestion.deduplicator import DEFAULT_SIMILARITY_THRESHOLD, build_duplicate_report
from ingestion.integrity import IntegrityChecker
from ingestion.registry import ImportRegistry
from ingestion.retry_service import RetryRequest
from ingestion.run_log import RunLogFilters
from models.base import EntityKind, ImportPhase, ImportType, RunStatus, SkippedStatus
from schemas.api import (
    ActionResponse,
    CancelRequest,
    CheckpointActionResponse,
    CheckpointView,
    DuplicateCandidateView,
    DuplicatesResponse,
    ErrorResponse,
    IntegrityResponse,
    PaginationMetadata,
    RetryAcceptedResponse,
    RetryRequestBody,
    SkippedEntitiesResponse,
    SkippedEntityView,
    StatusResponse,
    SyncLogsResponse,
    SyncLogView,
    TriggerRequest,
    TriggerResponse,
)
from schemas.checkpoint import CheckpointState

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/import", tags=["Import"])

CONFLICT = {status.HTTP_409_CONFLICT: {"model": ErrorResponse}}
NOT_FOUND = {status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


def checkpoint_view(state: Optional[CheckpointState]) -> Optional[CheckpointView]:
    if state is None:
        return None
    return CheckpointView(
        phase=state.phase,
        import_type=state.import_type,
        last_batch_index=state.last_batch_index,
        total_batches=state.total_batches,
        progress=calculate_phase_progress(state.last_batch_index, state.total_batches),
        is_paused=state.is_paused,
        completed_phases=state.completed_phases,
        run_id=state.run_id,
        timestamp=state.timestamp,
    )


# ============================================================================
# Run control
# ============================================================================

@router.post(
    "/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=CONFLICT,
    dependencies=[AdminGuard],
)
async def trigger_import(
    request: Request,
    body: Optional[TriggerRequest] = None,
    registry: ImportRegistry = Depends(get_registry),
):
    """
    Start a FULL or INCREMENTAL import in the background.

    Returns 409 when another import holds the lock or is still reporting
    progress.
    """
    import_type = body.type if body else ImportType.FULL
    logger.info(f"[{_request_id(request)}] POST /import/trigger type={import_type.value}")

    handle = await registry.start(import_type)
    return TriggerResponse(
        message=f"{import_type.value} import started",
        sync_log_id=handle.run_id,
    )


@router.get("/status", response_model=StatusResponse)
async def import_status(registry: ImportRegistry = Depends(get_registry)):
    """Live status, readable from any server process."""
    snapshot = await registry.status.snapshot()
    read = await registry.checkpoints.read_checkpoint()
    state = read.state
    local = registry.active()

    return StatusResponse(
        is_running=bool(snapshot["is_running"]) or local is not None,
        is_paused=bool(state and state.is_paused),
        progress=snapshot["progress"] or 0,
        current_operation=snapshot["current_operation"],
        phase=snapshot["phase"],
        checkpoint=checkpoint_view(state),
        sync_log_id=snapshot["run_id"] or (local.run_id if local else None),
        last_sync_time=snapshot["last_sync_time"],
        last_error=snapshot["last_error"],
        checkpoint_status=read.status.value,
        validation=snapshot["validation"],
    )


@router.post("/pause", response_model=CheckpointActionResponse, responses=NOT_FOUND, dependencies=[AdminGuard])
async def pause_import(registry: ImportRegistry = Depends(get_registry)):
    """Pause at the next batch boundary. The checkpoint keeps the position."""
    state = await registry.pause()
    return CheckpointActionResponse(
        message=f"Import paused at {state.phase.value} (batch {state.last_batch_index})",
        checkpoint=checkpoint_view(state),
    )


@router.post("/resume", response_model=CheckpointActionResponse, responses=NOT_FOUND, dependencies=[AdminGuard])
async def resume_import(registry: ImportRegistry = Depends(get_registry)):
    state = await registry.resume()
    return CheckpointActionResponse(
        message=f"Import resumed at {state.phase.value} (batch {state.last_batch_index})",
        checkpoint=checkpoint_view(state),
    )


@router.post("/cancel", response_model=ActionResponse, responses=NOT_FOUND, dependencies=[AdminGuard])
async def cancel_import(
    body: Optional[CancelRequest] = None,
    registry: ImportRegistry = Depends(get_registry),
):
    """
    Cancel the running import. The run stops at the next batch boundary and
    ends CANCELLED; its checkpoint is kept for a later run of the same type.
    """
    run_id = await registry.cancel(body.import_id if body else None)
    return ActionResponse(message=f"Cancellation requested for import {run_id}")


@router.post("/reset", response_model=ActionResponse, responses=CONFLICT, dependencies=[AdminGuard])
async def reset_checkpoint(registry: ImportRegistry = Depends(get_registry)):
    """Discard the saved checkpoint so the next run starts from the first phase."""
    await registry.reset_checkpoint()
    return ActionResponse(message="Checkpoint cleared")


# ============================================================================
# Skipped entities
# ============================================================================

@router.get("/retry", response_model=SkippedEntitiesResponse)
async def list_skipped(
    phase: Optional[ImportPhase] = Query(None, description="Filter by phase"),
    status_filter: Optional[SkippedStatus] = Query(None, alias="status", description="Filter by retry status"),
    limit: int = Query(500, ge=1, le=5000),
    registry: ImportRegistry = Depends(get_registry),
):
    items = await registry.skipped.list_by_phase(phase, status=status_filter, limit=limit)
    summary = await registry.skipped.summary()
    return SkippedEntitiesResponse(
        items=[SkippedEntityView.model_validate(item) for item in items],
        summary=summary,
    )


@router.post(
    "/retry",
    response_model=RetryAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=CONFLICT,
    dependencies=[AdminGuard],
)
async def retry_skipped(body: RetryRequestBody, registry: ImportRegistry = Depends(get_registry)):
    """Re-fetch skipped entities (or pages) of one phase in the background."""
    retry_id, selected = await registry.start_retry(RetryRequest(
        phase=body.phase,
        entity_ids=body.entity_ids or [],
        page_numbers=body.page_numbers or [],
    ))
    return RetryAcceptedResponse(
        message=f"Retrying {selected} skipped entities of {body.phase.value}",
        retry_id=retry_id,
        selected=selected,
    )


# ============================================================================
# Run logs
# ============================================================================

@router.get("/logs", response_model=SyncLogsResponse)
async def list_logs(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=200, description="Items per page"),
    status_filter: Optional[RunStatus] = Query(None, alias="status"),
    type_filter: Optional[ImportType] = Query(None, alias="type"),
    date_from: Optional[datetime] = Query(None, description="Runs started at or after"),
    date_to: Optional[datetime] = Query(None, description="Runs started at or before"),
    registry: ImportRegistry = Depends(get_registry),
):
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="date_from must not be after date_to")

    items, total = await registry.run_logs.list_logs(
        page=page,
        page_size=page_size,
        filters=RunLogFilters(status=status_filter, type=type_filter, date_from=date_from, date_to=date_to),
    )
    total_pages = math.ceil(total / page_size) if total > 0 else 0
    return SyncLogsResponse(
        items=[SyncLogView.model_validate(item) for item in items],
        pagination=PaginationMetadata(
            page=page,
            page_size=page_size,
            total_items=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        ),
    )


# ============================================================================
# Audits
# ============================================================================

@router.get("/integrity", response_model=IntegrityResponse)
async def integrity_report(registry: ImportRegistry = Depends(get_registry)):
    """Run the referential integrity audit now."""
    report = await IntegrityChecker(registry.session_factory).check_all()
    return IntegrityResponse(**report.to_dict())


@router.get("/duplicates", response_model=DuplicatesResponse)
async def duplicate_report(
    kind: EntityKind = Query(EntityKind.PLAYER, description="PLAYER or CLUB"),
    threshold: float = Query(DEFAULT_SIMILARITY_THRESHOLD, gt=0, le=1),
    db: AsyncSession = Depends(get_db),
):
    """Near-duplicate names (normalized Levenshtein similarity)."""
    try:
        candidates = await build_duplicate_report(db, kind, threshold)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return DuplicatesResponse(
        kind=kind,
        threshold=threshold,
        candidates=[DuplicateCandidateView.model_validate(c) for c in candidates],
    )
