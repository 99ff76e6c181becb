"""
Record schemas for scraped entities.

Extractors emit loose dictionaries; these models decide whether a candidate
record is acceptable. Enumerated fields are restricted to the closed enums in
models.base, counts and amounts must be non-negative, and cross-entity
references stay optional where the source allows standalone records.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import EventStatus, WinnerTeam, PlayerRole, Team

BLACK_ROLES = {PlayerRole.DON, PlayerRole.MAFIA}


class RecordBase(BaseModel):
    """Fields every scraped record carries"""
    external_id: str = Field(..., min_length=1, max_length=255)
    scraped_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        extra = "ignore"
        str_strip_whitespace = True

    def business_fields(self) -> Dict[str, Any]:
        """Columns written to the entity table (everything except bookkeeping)."""
        return self.model_dump(exclude={"external_id", "scraped_at"})


# ============================================================================
# Clubs and Players
# ============================================================================

class ClubRecord(RecordBase):
    name: str = Field(..., min_length=1, max_length=255)
    region: Optional[str] = None
    president: Optional[str] = None
    members_count: Optional[int] = Field(None, ge=0)


class PlayerRecord(RecordBase):
    name: str = Field(..., min_length=1, max_length=255)
    region: Optional[str] = None
    club_external_id: Optional[str] = None
    club_name: Optional[str] = None
    tournaments_played: Optional[int] = Field(None, ge=0)
    gg_points: Optional[int] = Field(None, ge=0)
    elo_rating: float = Field(default=1200, ge=0)

    @validator("elo_rating", pre=True)
    def default_missing_elo(cls, v):
        # Unrated players are shown without a rating; they start at 1200
        return 1200 if v is None else v


class PlayerYearStatsRecord(RecordBase):
    player_external_id: str = Field(..., min_length=1)
    year: int = Field(..., ge=2000, le=2100)
    total_games: int = Field(default=0, ge=0)
    don_games: Optional[int] = Field(None, ge=0)
    mafia_games: Optional[int] = Field(None, ge=0)
    sheriff_games: Optional[int] = Field(None, ge=0)
    civilian_games: Optional[int] = Field(None, ge=0)
    elo_rating: Optional[float] = Field(None, ge=0)
    extra_points: Optional[float] = None


# ============================================================================
# Tournaments
# ============================================================================

class TournamentRecord(RecordBase):
    name: str = Field(..., min_length=1, max_length=500)
    stars: Optional[int] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: EventStatus = EventStatus.SCHEDULED
    participants_count: Optional[int] = Field(None, ge=0)
    prize_pool: Optional[float] = Field(None, ge=0)

    @validator("end_date")
    def end_not_before_start(cls, v, values):
        start = values.get("start_date")
        if v is not None and start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v


class PlayerTournamentRecord(RecordBase):
    player_external_id: str = Field(..., min_length=1)
    tournament_external_id: str = Field(..., min_length=1)
    tournament_name: Optional[str] = None
    placement: Optional[int] = Field(None, ge=1)
    gg_points: Optional[int] = Field(None, ge=0)
    elo_change: Optional[float] = None
    prize_money: Optional[float] = Field(None, ge=0)


# ============================================================================
# Games
# ============================================================================

class ParticipationRecord(BaseModel):
    player_external_id: str = Field(..., min_length=1)
    role: PlayerRole
    team: Team
    is_winner: bool = False
    performance_score: Optional[int] = None

    @validator("team")
    def team_matches_role(cls, v, values):
        role = values.get("role")
        if role is None:
            return v
        expected = Team.BLACK if role in BLACK_ROLES else Team.RED
        if v != expected:
            raise ValueError(f"role {role.value} plays for {expected.value}")
        return v


class GameRecord(RecordBase):
    tournament_external_id: Optional[str] = None
    date: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, ge=0)
    winner_team: Optional[WinnerTeam] = None
    status: EventStatus = EventStatus.COMPLETED
    participants: List[ParticipationRecord] = Field(default_factory=list)

    def business_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"external_id", "scraped_at", "participants"})
