"""
Page extractors, one per entity kind.

EXTRACTORS is the lookup table the pipeline uses to pick the extractor for an
EntityKind; there is exactly one implementation per kind.
"""

from typing import Dict

from ingestion.extractors.base import PageExtractor, ExtractionResult, RowError, parse_currency
from ingestion.extractors.clubs import ClubsExtractor
from ingestion.extractors.players import PlayersExtractor
from ingestion.extractors.player_stats import PlayerStatsExtractor
from ingestion.extractors.tournaments import TournamentsExtractor
from ingestion.extractors.player_tournaments import PlayerTournamentsExtractor
from ingestion.extractors.games import GamesExtractor
from models.base import EntityKind

EXTRACTORS: Dict[EntityKind, PageExtractor] = {
    EntityKind.CLUB: ClubsExtractor(),
    EntityKind.PLAYER: PlayersExtractor(),
    EntityKind.PLAYER_YEAR_STATS: PlayerStatsExtractor(),
    EntityKind.TOURNAMENT: TournamentsExtractor(),
    EntityKind.PLAYER_TOURNAMENT: PlayerTournamentsExtractor(),
    EntityKind.GAME: GamesExtractor(),
}


def get_extractor(kind: EntityKind) -> PageExtractor:
    return EXTRACTORS[kind]


__all__ = [
    "EXTRACTORS",
    "get_extractor",
    "PageExtractor",
    "ExtractionResult",
    "RowError",
    "parse_currency",
]
