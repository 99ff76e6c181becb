"""
Referential integrity audit over the imported tables.

References between entities are stored as external IDs without database
foreign keys (the source may mention an entity before it is imported), so
this checker is the place where dangling references and orphans surface.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from models.base import Base
from models.game import Game, GameParticipation
from models.player import Player, PlayerYearStats
from models.tournament import Tournament, PlayerTournament

logger = logging.getLogger(__name__)

PASS = "PASS"
FAIL = "FAIL"


@dataclass(frozen=True)
class ReferenceCheck:
    """child.<column> must name an existing parent.external_id (NULL is allowed)"""
    name: str
    child: Type[Base]
    column: str
    parent: Type[Base]

    @property
    def child_label(self) -> str:
        return self.child.__name__

    @property
    def parent_label(self) -> str:
        return self.parent.__name__


REFERENCE_CHECKS: Tuple[ReferenceCheck, ...] = (
    ReferenceCheck("participation_player", GameParticipation, "player_external_id", Player),
    ReferenceCheck("participation_game", GameParticipation, "game_external_id", Game),
    ReferenceCheck("player_tournament_player", PlayerTournament, "player_external_id", Player),
    ReferenceCheck("player_tournament_tournament", PlayerTournament, "tournament_external_id", Tournament),
    ReferenceCheck("year_stats_player", PlayerYearStats, "player_external_id", Player),
    ReferenceCheck("game_tournament", Game, "tournament_external_id", Tournament),
)

ORPHAN_GAMES_CHECK = "games_without_participations"


@dataclass
class IntegrityReport:
    status: str
    total_checks: int
    passed_checks: int
    failed_checks: int
    message: str
    issues: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "total_checks": self.total_checks,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "message": self.message,
            "issues": list(self.issues),
            "failed": list(self.failed),
        }


class IntegrityChecker:
    """
    Run every reference and orphan check.

    Args:
        session_factory: async_sessionmaker bound to the import database
        sample_limit: Maximum offending rows listed per check
    """

    def __init__(self, session_factory: async_sessionmaker, sample_limit: int = 50):
        self.session_factory = session_factory
        self.sample_limit = sample_limit

    async def check_all(self) -> IntegrityReport:
        issues: List[str] = []
        failed: List[str] = []
        total = len(REFERENCE_CHECKS) + 1

        for check in REFERENCE_CHECKS:
            dangling = await self._find_dangling(check)
            if dangling:
                failed.append(check.name)
                issues.extend(
                    f"{check.child_label} {child_id} references non-existent {check.parent_label} {ref}"
                    for child_id, ref in dangling
                )

        orphans = await self._find_orphan_games()
        if orphans:
            failed.append(ORPHAN_GAMES_CHECK)
            issues.extend(f"Game {game_id} has no participations" for game_id in orphans)

        report = build_report(total, failed, issues)
        log = logger.info if report.status == PASS else logger.warning
        log(f"Integrity check {report.status}: {report.message}")
        return report

    async def _find_dangling(self, check: ReferenceCheck) -> List[Tuple[str, str]]:
        child_column = getattr(check.child, check.column)
        parent = aliased(check.parent)
        query = (
            select(check.child.external_id, child_column)
            .outerjoin(parent, parent.external_id == child_column)
            .where(child_column.is_not(None), parent.id.is_(None))
            .order_by(check.child.external_id)
            .limit(self.sample_limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [(row[0], row[1]) for row in result.all()]

    async def _find_orphan_games(self) -> List[str]:
        query = (
            select(Game.external_id)
            .outerjoin(GameParticipation, GameParticipation.game_external_id == Game.external_id)
            .where(GameParticipation.id.is_(None))
            .order_by(Game.external_id)
            .limit(self.sample_limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())


def build_report(total_checks: int, failed: List[str], issues: Optional[List[str]] = None) -> IntegrityReport:
    failed_count = len(failed)
    if failed_count == 0:
        message = "All integrity checks passed successfully."
    else:
        message = f"{failed_count} of {total_checks} integrity checks failed."
    return IntegrityReport(
        status=PASS if failed_count == 0 else FAIL,
        total_checks=total_checks,
        passed_checks=total_checks - failed_count,
        failed_checks=failed_count,
        message=message,
        issues=list(issues or []),
        failed=list(failed),
    )
