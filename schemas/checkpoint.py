"""
Typed, versioned checkpoint document stored in ImportCheckpoint.state
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
import enum
from models.base import ImportPhase, ImportType


class CheckpointState(BaseModel):
    """Pipeline position. Serialized into the checkpoint row's JSONB state."""
    phase: ImportPhase
    total_batches: int = Field(default=0, ge=0)
    last_batch_index: int = Field(default=0, ge=0, description="Batches fully committed in the current phase")
    processed_ids: List[str] = Field(default_factory=list)
    phase_metadata: Dict[str, Any] = Field(default_factory=dict)
    is_paused: bool = False
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    run_id: Optional[str] = None
    import_type: ImportType = ImportType.FULL
    completed_phases: List[ImportPhase] = Field(default_factory=list)

    @validator("last_batch_index")
    def batch_index_within_total(cls, v, values):
        total = values.get("total_batches")
        # Open-ended phases (unknown page count) record total_batches=0
        if total and v > total:
            raise ValueError(f"last_batch_index {v} exceeds total_batches {total}")
        return v

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class CheckpointReadStatus(str, enum.Enum):
    FOUND = "FOUND"
    NONE = "NONE"
    CORRUPT = "CORRUPT"


class CheckpointReadResult(BaseModel):
    """Outcome of reading the stored checkpoint; CORRUPT is never collapsed into NONE here."""
    status: CheckpointReadStatus
    state: Optional[CheckpointState] = None
    error: Optional[str] = None
