"""
Pydantic schemas for API request/response models

Control API payloads use camelCase keys; fields are declared in snake_case and
aliased.
"""

from pydantic import BaseModel, Field, validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID
from models.base import ImportPhase, ImportType, RunStatus, EntityKind, SkippedStatus


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ============================================================================
# Errors
# ============================================================================

class ErrorResponse(CamelModel):
    """Body returned for every ETLException surfaced by the API"""
    error: str
    code: str
    category: str
    details: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Import operation already in progress",
                "code": "IMPORT_RUNNING",
                "category": "concurrency",
                "details": {"syncLogId": "550e8400-e29b-41d4-a716-446655440000"}
            }
        }


# ============================================================================
# Trigger / control
# ============================================================================

class TriggerRequest(CamelModel):
    type: ImportType = Field(default=ImportType.FULL, description="FULL or INCREMENTAL")


class TriggerResponse(CamelModel):
    success: bool = True
    message: str
    sync_log_id: UUID


class CancelRequest(CamelModel):
    import_id: Optional[UUID] = Field(None, description="Run to cancel; defaults to the active run")


class ActionResponse(CamelModel):
    success: bool = True
    message: str


class CheckpointView(CamelModel):
    phase: ImportPhase
    import_type: ImportType
    last_batch_index: int
    total_batches: int
    progress: int = Field(..., ge=0, le=100, description="Per-phase progress percentage")
    is_paused: bool
    completed_phases: List[ImportPhase] = Field(default_factory=list)
    run_id: Optional[str] = None
    timestamp: datetime


class CheckpointActionResponse(ActionResponse):
    checkpoint: Optional[CheckpointView] = None


class StatusResponse(CamelModel):
    is_running: bool
    is_paused: bool = False
    progress: int = Field(0, ge=0, le=100)
    current_operation: Optional[str] = None
    phase: Optional[ImportPhase] = None
    checkpoint: Optional[CheckpointView] = None
    sync_log_id: Optional[UUID] = None
    last_sync_time: Optional[datetime] = None
    last_error: Optional[str] = None
    checkpoint_status: str = Field(..., description="FOUND, NONE or CORRUPT")
    validation: Optional[Dict[str, Any]] = None


# ============================================================================
# Skipped entities / retry
# ============================================================================

class RetryRequestBody(CamelModel):
    phase: ImportPhase
    entity_ids: Optional[List[str]] = None
    page_numbers: Optional[List[int]] = None

    @validator("page_numbers")
    def pages_are_positive(cls, v):
        if v and any(page < 1 for page in v):
            raise ValueError("page numbers start at 1")
        return v


class SkippedEntityView(CamelModel):
    id: int
    phase: ImportPhase
    entity_type: EntityKind
    entity_id: Optional[str] = None
    page_number: Optional[int] = None
    error_code: str
    error_message: str
    details: Optional[Dict[str, Any]] = None
    retry_count: int
    status: SkippedStatus
    last_retry_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class SkippedEntitiesResponse(CamelModel):
    items: List[SkippedEntityView]
    summary: Dict[str, Dict[str, int]]


class RetryAcceptedResponse(ActionResponse):
    retry_id: UUID
    selected: int


# ============================================================================
# Run logs
# ============================================================================

class PaginationMetadata(CamelModel):
    """Pagination metadata"""
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool


class SyncLogView(CamelModel):
    run_id: UUID
    type: ImportType
    status: RunStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    records_processed: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="run_metadata")

    @validator("errors", pre=True)
    def errors_default(cls, v):
        return v or []


class SyncLogsResponse(CamelModel):
    items: List[SyncLogView]
    pagination: PaginationMetadata


# ============================================================================
# Audits
# ============================================================================

class IntegrityResponse(CamelModel):
    status: str
    total_checks: int
    passed_checks: int
    failed_checks: int
    message: str
    issues: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class DuplicateCandidateView(CamelModel):
    first_id: str
    first_name: str
    second_id: str
    second_name: str
    similarity: float


class DuplicatesResponse(CamelModel):
    kind: EntityKind
    threshold: float
    candidates: List[DuplicateCandidateView]


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    database_connected: bool
    checkpoint_status: Optional[str] = None
    import_running: bool = False
    last_sync_time: Optional[datetime] = None
    last_error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    # Declared last so the validator sees every other field
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if values.get("checkpoint_status") == "CORRUPT":
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "checkpoint_status": "NONE",
                "import_running": False,
                "last_sync_time": "2024-01-15T10:00:00Z",
                "last_error": None
            }
        }
