"""
Phase tables and the fetch + extract step shared by the orchestrator and the
skipped-entity retry service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from core.config import settings
from ingestion.cancellation import CancellationToken
from ingestion.extractors import get_extractor
from ingestion.extractors.base import ExtractionResult, RowError
from ingestion.pagination import (
    listing_route,
    player_stats_route,
    player_history_route,
    tournament_games_route,
)
from ingestion.source_client import SourceClient
from models.base import ImportPhase, EntityKind

PHASE_KINDS: Dict[ImportPhase, Optional[EntityKind]] = {
    ImportPhase.CLUBS: EntityKind.CLUB,
    ImportPhase.PLAYERS: EntityKind.PLAYER,
    ImportPhase.PLAYER_YEAR_STATS: EntityKind.PLAYER_YEAR_STATS,
    ImportPhase.TOURNAMENTS: EntityKind.TOURNAMENT,
    ImportPhase.PLAYER_TOURNAMENT_HISTORY: EntityKind.PLAYER_TOURNAMENT,
    ImportPhase.GAMES: EntityKind.GAME,
    ImportPhase.STATISTICS: None,
}

# Phases whose batches are source listing pages
LISTING_PHASES = {ImportPhase.CLUBS, ImportPhase.PLAYERS, ImportPhase.TOURNAMENTS}

# Phases whose batches are chunks of entity IDs taken from the database
ENTITY_PHASES = {
    ImportPhase.PLAYER_YEAR_STATS,
    ImportPhase.PLAYER_TOURNAMENT_HISTORY,
    ImportPhase.GAMES,
    ImportPhase.STATISTICS,
}

# Consecutive years without games after which older years are not requested
MAX_EMPTY_YEARS = 2


@dataclass
class EntityFetch:
    """Candidate records gathered for one entity (player or tournament)."""
    entity_id: str
    records: List[dict] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)


async def fetch_listing_page(
    source: SourceClient,
    kind: EntityKind,
    page: int,
    token: Optional[CancellationToken] = None,
) -> ExtractionResult:
    """Fetch and extract one listing page."""
    path, params = listing_route(kind, page)
    html = await source.fetch(path, params, cancel_token=token)
    return get_extractor(kind).extract(html, {"page": page, "url": source.url_for(path)})


def stats_years(current_year: Optional[int] = None) -> List[int]:
    current_year = current_year or datetime.utcnow().year
    return list(range(current_year, settings.STATS_MIN_YEAR - 1, -1))


async def fetch_entity(
    source: SourceClient,
    phase: ImportPhase,
    entity_id: str,
    token: Optional[CancellationToken] = None,
    current_year: Optional[int] = None,
) -> EntityFetch:
    """
    Fetch every page belonging to one entity for an entity-driven phase.

    Raises whatever the source client raises; callers decide whether the
    failure quarantines the entity or fails the run.
    """
    kind = PHASE_KINDS[phase]
    fetched = EntityFetch(entity_id=entity_id)

    if phase == ImportPhase.PLAYER_YEAR_STATS:
        empty_years = 0
        for year in stats_years(current_year):
            path, params = player_stats_route(entity_id, year)
            html = await source.fetch(path, params, cancel_token=token)
            result = get_extractor(kind).extract(
                html, {"player_id": entity_id, "year": year, "url": source.url_for(path)}
            )
            fetched.errors.extend(result.errors)
            if result.records:
                fetched.records.extend(result.records)
                empty_years = 0
            else:
                empty_years += 1
                if empty_years >= MAX_EMPTY_YEARS:
                    break
        return fetched

    if phase == ImportPhase.PLAYER_TOURNAMENT_HISTORY:
        path, params = player_history_route(entity_id)
        context = {"player_id": entity_id}
    elif phase == ImportPhase.GAMES:
        path, params = tournament_games_route(entity_id)
        context = {"tournament_id": entity_id}
    else:
        raise ValueError(f"{phase.value} does not fetch per entity")

    html = await source.fetch(path, params, cancel_token=token)
    context["url"] = source.url_for(path)
    result = get_extractor(kind).extract(html, context)
    fetched.records.extend(result.records)
    fetched.errors.extend(result.errors)
    return fetched
