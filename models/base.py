from datetime import datetime
from sqlalchemy import Column, String, DateTime, Enum
from sqlalchemy.orm import declarative_base, declared_attr
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class ImportPhase(str, enum.Enum):
    """Pipeline phases, declared in execution order"""
    CLUBS = "CLUBS"
    PLAYERS = "PLAYERS"
    PLAYER_YEAR_STATS = "PLAYER_YEAR_STATS"
    TOURNAMENTS = "TOURNAMENTS"
    PLAYER_TOURNAMENT_HISTORY = "PLAYER_TOURNAMENT_HISTORY"
    GAMES = "GAMES"
    STATISTICS = "STATISTICS"

    @classmethod
    def ordered(cls):
        return list(cls)

    @property
    def position(self) -> int:
        return list(ImportPhase).index(self)


class EntityKind(str, enum.Enum):
    """Closed set of scraped entity kinds"""
    CLUB = "CLUB"
    PLAYER = "PLAYER"
    PLAYER_YEAR_STATS = "PLAYER_YEAR_STATS"
    TOURNAMENT = "TOURNAMENT"
    PLAYER_TOURNAMENT = "PLAYER_TOURNAMENT"
    GAME = "GAME"


class ImportType(str, enum.Enum):
    """Import run type"""
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class RunStatus(str, enum.Enum):
    """Run log status"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SkippedStatus(str, enum.Enum):
    """Skipped entity retry status"""
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncState(str, enum.Enum):
    """Per-entity sync state"""
    SYNCED = "SYNCED"
    PENDING = "PENDING"
    ERROR = "ERROR"


class PlayerRole(str, enum.Enum):
    DON = "DON"
    MAFIA = "MAFIA"
    SHERIFF = "SHERIFF"
    CITIZEN = "CITIZEN"


class Team(str, enum.Enum):
    BLACK = "BLACK"
    RED = "RED"


class WinnerTeam(str, enum.Enum):
    BLACK = "BLACK"
    RED = "RED"
    DRAW = "DRAW"


class EventStatus(str, enum.Enum):
    """Shared status domain for games and tournaments"""
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# ============================================================================
# MIXINS
# ============================================================================

class SyncTrackedMixin:
    """
    Columns shared by every scraped entity.

    external_id is the source's natural key and the upsert conflict target.
    last_sync_at / sync_status drive staleness detection for incremental runs.
    """

    # Fields that are bookkeeping, not business data
    TRACKING_FIELDS = ("id", "external_id", "last_sync_at", "sync_status", "created_at", "updated_at")

    @declared_attr
    def external_id(cls):
        return Column(String(255), nullable=False, unique=True, index=True)

    @declared_attr
    def last_sync_at(cls):
        return Column(DateTime, nullable=True, index=True)

    @declared_attr
    def sync_status(cls):
        return Column(Enum(SyncState), default=SyncState.PENDING, nullable=False, index=True)

    @declared_attr
    def created_at(cls):
        return Column(DateTime, nullable=False, default=datetime.utcnow)

    @declared_attr
    def updated_at(cls):
        return Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
