from sqlalchemy import Column, BigInteger, Integer, Float, String, Index
from models.base import Base, SyncTrackedMixin


class Player(SyncTrackedMixin, Base):
    """
    Player from the source's player rating.

    club_external_id references Club.external_id without a database foreign
    key: a player may point at a club that has not been imported yet. The
    integrity checker audits these references after an import.
    """
    __tablename__ = "players"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False, index=True)
    region = Column(String(255), nullable=True)
    club_external_id = Column(String(255), nullable=True, index=True)
    club_name = Column(String(255), nullable=True)

    tournaments_played = Column(Integer, nullable=True)
    gg_points = Column(Integer, nullable=True)
    elo_rating = Column(Float, nullable=False, default=1200)


class PlayerYearStats(SyncTrackedMixin, Base):
    """Per-year role breakdown for a player (external_id is "{player}:{year}")."""
    __tablename__ = "player_year_stats"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    player_external_id = Column(String(255), nullable=False, index=True)
    year = Column(Integer, nullable=False)

    total_games = Column(Integer, nullable=False, default=0)
    don_games = Column(Integer, nullable=True)
    mafia_games = Column(Integer, nullable=True)
    sheriff_games = Column(Integer, nullable=True)
    civilian_games = Column(Integer, nullable=True)
    elo_rating = Column(Float, nullable=True)
    extra_points = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_player_year_stats_player_year", "player_external_id", "year", unique=True),
    )
