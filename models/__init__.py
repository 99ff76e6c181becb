"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, shared enums and the SyncTrackedMixin
    checkpoint: Singleton resumable import checkpoint
    sync_log: Run log (one row per import) and the live sync status snapshot
    skipped_entity: Quarantined records and pages awaiting retry
    club, player, tournament, game, statistics: Scraped domain entities

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB for flexible metadata storage.
    Scraped entities carry an immutable external_id (the source's natural
    key) which is the conflict target for idempotent upserts.

Usage:
    from models.player import Player
    from models.base import ImportPhase, RunStatus

Example:
    # Record a quarantined player row
    skipped = SkippedEntity(
        phase=ImportPhase.PLAYERS,
        entity_type=EntityKind.PLAYER,
        entity_id="1234",
        error_code="VALIDATION_FAILED",
        error_message="elo_rating: must be >= 0"
    )
    session.add(skipped)
    await session.commit()
"""

from models.base import (
    Base,
    ImportPhase,
    EntityKind,
    ImportType,
    RunStatus,
    SkippedStatus,
    SyncState,
    PlayerRole,
    Team,
    WinnerTeam,
    EventStatus,
)
from models.checkpoint import ImportCheckpoint
from models.sync_log import SyncLog, SyncStatus
from models.skipped_entity import SkippedEntity
from models.club import Club
from models.player import Player, PlayerYearStats
from models.tournament import Tournament, PlayerTournament
from models.game import Game, GameParticipation
from models.statistics import PlayerRoleStats

__all__ = [
    "Base",
    "ImportPhase",
    "EntityKind",
    "ImportType",
    "RunStatus",
    "SkippedStatus",
    "SyncState",
    "PlayerRole",
    "Team",
    "WinnerTeam",
    "EventStatus",
    "ImportCheckpoint",
    "SyncLog",
    "SyncStatus",
    "SkippedEntity",
    "Club",
    "Player",
    "PlayerYearStats",
    "Tournament",
    "PlayerTournament",
    "Game",
    "GameParticipation",
    "PlayerRoleStats",
]
