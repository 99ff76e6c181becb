"""
Player yearly statistics extractor (/stats/{id}?year=YYYY)
"""

from typing import Any, Dict, List, Optional
from bs4 import BeautifulSoup, Tag

from ingestion.extractors.base import PageExtractor, parse_int, parse_number
from models.base import EntityKind

ROLE_FIELDS = {
    "don_games": ".don-games",
    "mafia_games": ".mafia-games",
    "sheriff_games": ".sheriff-games",
    "civilian_games": ".civilian-games",
}


class PlayerStatsExtractor(PageExtractor):
    """
    One statistics block per page. A year without games yields no record so
    the phase can count consecutive empty years.
    """

    kind = EntityKind.PLAYER_YEAR_STATS
    container_selector = ".player-stats, .stats"

    def rows(self, soup: BeautifulSoup) -> List[Tag]:
        block = soup.select_one(self.container_selector)
        return [block] if block is not None else []

    def row_identity(self, row: Tag, context: Dict[str, Any]) -> Optional[str]:
        player_id = context.get("player_id")
        year = context.get("year")
        return f"{player_id}:{year}" if player_id and year else None

    def extract_row(self, row: Tag, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        player_id = context.get("player_id")
        year = context.get("year")

        total_games = parse_int(row.select_one(".total-games"))
        if not total_games:
            return None

        record = {
            "external_id": f"{player_id}:{year}",
            "player_external_id": player_id,
            "year": year,
            "total_games": total_games,
            "elo_rating": parse_number(row.select_one(".elo")),
            "extra_points": parse_number(row.select_one(".extra-points")),
        }
        for field_name, selector in ROLE_FIELDS.items():
            record[field_name] = parse_int(row.select_one(selector))
        return record
