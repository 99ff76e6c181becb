from sqlalchemy import (
    Column, BigInteger, Integer, Enum, DateTime, Text, Index, CheckConstraint, Boolean, String
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from models.base import Base, ImportType, RunStatus, ImportPhase

SYNC_STATUS_KEY = 1


class SyncLog(Base):
    """
    One row per import attempt (append-only run log).

    Purpose:
    - Audit trail of every FULL / INCREMENTAL import
    - Structured error history for operators
    - Liveness: updated_at is touched after every batch so a RUNNING row
      left behind by a dead process can be recognised as stale
    """
    __tablename__ = "sync_logs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    type = Column(Enum(ImportType), nullable=False, index=True)
    status = Column(Enum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    start_time = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    end_time = Column(DateTime, nullable=True)

    # Statistics
    records_processed = Column(Integer, nullable=False, default=0)

    # Error tracking: list of {message, code, timestamp, details}
    errors = Column(JSONB, nullable=False, default=list)

    # Validation metrics, error summary, skipped pages, integrity report
    run_metadata = Column("metadata", JSONB, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("end_time IS NULL OR end_time >= start_time", name="ck_sync_logs_end_after_start"),
        Index("idx_sync_log_status_started", "status", "start_time"),
    )


class SyncStatus(Base):
    """
    Singleton snapshot of the import as seen by any process.

    The worker writes it; status queries read it, so a control request served
    by a different server process still sees live progress.
    """
    __tablename__ = "sync_status"

    id = Column(Integer, primary_key=True, default=SYNC_STATUS_KEY)

    is_running = Column(Boolean, nullable=False, default=False)
    progress = Column(Integer, nullable=False, default=0)
    current_operation = Column(String(255), nullable=True)
    phase = Column(Enum(ImportPhase), nullable=True)
    run_id = Column(UUID(as_uuid=True), nullable=True)

    last_sync_time = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    validation = Column(JSONB, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
