from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base

CHECKPOINT_KEY = "current"
CHECKPOINT_VERSION = 1


class ImportCheckpoint(Base):
    """
    Durable position of the running (or interrupted) import.

    Purpose:
    - Resume an import from the last committed batch after a crash
    - Carry the cooperative pause flag across processes

    Design:
    - Singleton row keyed by CHECKPOINT_KEY
    - state holds a versioned CheckpointState document (see schemas.checkpoint)
    - progress is the derived per-phase percentage, denormalized for status queries
    """
    __tablename__ = "import_checkpoints"

    id = Column(String(32), primary_key=True, default=CHECKPOINT_KEY)

    version = Column(Integer, nullable=False, default=CHECKPOINT_VERSION)
    state = Column(JSONB, nullable=False)
    progress = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
