from sqlalchemy import Column, BigInteger, Integer, Float, String, DateTime, Enum, Index
from models.base import Base, SyncTrackedMixin, PlayerRole


class PlayerRoleStats(SyncTrackedMixin, Base):
    """
    Aggregates computed by the STATISTICS phase from imported participations.

    external_id is "{player}:{role}".
    """
    __tablename__ = "player_role_stats"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    player_external_id = Column(String(255), nullable=False, index=True)
    role = Column(Enum(PlayerRole), nullable=False)

    games_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    win_rate = Column(Float, nullable=False, default=0)
    average_performance = Column(Float, nullable=False, default=0)
    last_played = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_role_stats_player_role", "player_external_id", "role", unique=True),
    )
