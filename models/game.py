from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Enum, Boolean, Index
from models.base import Base, SyncTrackedMixin, EventStatus, WinnerTeam, PlayerRole, Team


class Game(SyncTrackedMixin, Base):
    """
    Single game. tournament_external_id is null for standalone games.
    """
    __tablename__ = "games"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    tournament_external_id = Column(String(255), nullable=True, index=True)
    date = Column(DateTime, nullable=True, index=True)
    duration_minutes = Column(Integer, nullable=True)
    winner_team = Column(Enum(WinnerTeam), nullable=True)
    status = Column(Enum(EventStatus), nullable=False, default=EventStatus.COMPLETED)


class GameParticipation(SyncTrackedMixin, Base):
    """Player seat in a game (external_id is "{game}:{player}")."""
    __tablename__ = "game_participations"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    game_external_id = Column(String(255), nullable=False, index=True)
    player_external_id = Column(String(255), nullable=False, index=True)
    role = Column(Enum(PlayerRole), nullable=False)
    team = Column(Enum(Team), nullable=False)
    is_winner = Column(Boolean, nullable=False, default=False)
    performance_score = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_participation_game_player", "game_external_id", "player_external_id", unique=True),
    )
