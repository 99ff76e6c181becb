"""
Per-player, per-role aggregates computed from imported game participations
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import PlayerRole, SyncState, WinnerTeam
from models.game import Game, GameParticipation
from models.statistics import PlayerRoleStats
from ingestion.loaders.postgres_loader import PostgresLoader

logger = logging.getLogger(__name__)

# (player, role, games, wins, draws, avg performance, last played)
AggregateRow = Tuple[str, PlayerRole, int, int, int, Optional[float], Optional[datetime]]


def build_role_stats(rows: Iterable[AggregateRow], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Turn aggregate rows into PlayerRoleStats values.

    Draws count as neither win nor loss; win_rate is a percentage rounded to
    two decimals.
    """
    now = now or datetime.utcnow()
    stats = []
    for player_id, role, games, wins, draws, avg_performance, last_played in rows:
        games = games or 0
        wins = wins or 0
        draws = draws or 0
        stats.append({
            "external_id": f"{player_id}:{role.value}",
            "player_external_id": player_id,
            "role": role,
            "games_played": games,
            "wins": wins,
            "losses": max(games - wins - draws, 0),
            "win_rate": round(wins / games * 100, 2) if games else 0.0,
            "average_performance": round(float(avg_performance), 2) if avg_performance is not None else 0.0,
            "last_played": last_played,
            "last_sync_at": now,
            "sync_status": SyncState.SYNCED,
            "created_at": now,
            "updated_at": now,
        })
    return stats


async def compute_role_stats(session: AsyncSession, player_ids: Sequence[str]) -> int:
    """Recompute and upsert role statistics for the given players. Returns rows written."""
    if not player_ids:
        return 0

    is_draw = Game.winner_team == WinnerTeam.DRAW
    query = (
        select(
            GameParticipation.player_external_id,
            GameParticipation.role,
            func.count(GameParticipation.id),
            func.sum(case((GameParticipation.is_winner.is_(True), 1), else_=0)),
            func.sum(case((is_draw, 1), else_=0)),
            func.avg(GameParticipation.performance_score),
            func.max(Game.date),
        )
        .outerjoin(Game, Game.external_id == GameParticipation.game_external_id)
        .where(GameParticipation.player_external_id.in_(list(player_ids)))
        .group_by(GameParticipation.player_external_id, GameParticipation.role)
    )
    result = await session.execute(query)
    rows = build_role_stats(result.all())
    if rows:
        await PostgresLoader(session).upsert_rows(PlayerRoleStats, rows)
    logger.info(f"Computed {len(rows)} role statistics rows for {len(player_ids)} players")
    return len(rows)
