from sqlalchemy import Column, BigInteger, Integer, Float, String, DateTime, Enum, Index
from models.base import Base, SyncTrackedMixin, EventStatus


class Tournament(SyncTrackedMixin, Base):
    """Tournament from the source's tournament list."""
    __tablename__ = "tournaments"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    name = Column(String(500), nullable=False, index=True)
    stars = Column(Integer, nullable=True)
    start_date = Column(DateTime, nullable=True, index=True)
    end_date = Column(DateTime, nullable=True)
    status = Column(Enum(EventStatus), nullable=False, default=EventStatus.SCHEDULED, index=True)
    participants_count = Column(Integer, nullable=True)
    prize_pool = Column(Float, nullable=True)


class PlayerTournament(SyncTrackedMixin, Base):
    """
    One line of a player's tournament history.

    external_id is "{player}:{tournament}"; both references are audited by
    the integrity checker.
    """
    __tablename__ = "player_tournaments"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    player_external_id = Column(String(255), nullable=False, index=True)
    tournament_external_id = Column(String(255), nullable=False, index=True)
    tournament_name = Column(String(500), nullable=True)

    placement = Column(Integer, nullable=True)
    gg_points = Column(Integer, nullable=True)
    elo_change = Column(Float, nullable=True)
    prize_money = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_player_tournament_pair", "player_external_id", "tournament_external_id", unique=True),
    )
