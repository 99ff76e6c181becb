from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import JSONB, UUID
from datetime import datetime
from models.base import Base, ImportPhase, EntityKind, SkippedStatus


class SkippedEntity(Base):
    """
    Record (or whole page) quarantined during an import.

    Rows are created when a record fails validation or a page keeps failing
    after retries. The retry workflow moves them through
    PENDING -> RETRYING -> COMPLETED | FAILED; rows are never deleted while
    unresolved.
    """
    __tablename__ = "skipped_entities"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    phase = Column(Enum(ImportPhase), nullable=False, index=True)
    entity_type = Column(Enum(EntityKind), nullable=False)
    entity_id = Column(String(255), nullable=True, index=True)
    page_number = Column(Integer, nullable=True)

    error_code = Column(String(64), nullable=False)
    error_message = Column(Text, nullable=False)
    details = Column(JSONB, nullable=True)  # Structured validation issues

    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(Enum(SkippedStatus), nullable=False, default=SkippedStatus.PENDING, index=True)
    last_retry_at = Column(DateTime, nullable=True)

    run_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_skipped_phase_status", "phase", "status"),
    )
