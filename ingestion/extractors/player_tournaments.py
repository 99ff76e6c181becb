"""
Player tournament history extractor (/stats/{id}?tab=history)
"""

from typing import Any, Dict, Optional
from bs4 import Tag

from ingestion.extractors.base import (
    PageExtractor,
    clean_text,
    parse_int,
    parse_currency,
    parse_placement,
    parse_signed_change,
    link_id,
)
from models.base import EntityKind


class PlayerTournamentsExtractor(PageExtractor):
    """One row per tournament the player took part in."""

    kind = EntityKind.PLAYER_TOURNAMENT

    def row_identity(self, row: Tag, context: Dict[str, Any]) -> Optional[str]:
        tournament_id = link_id(row, "tournament")
        if tournament_id is None:
            return None
        return f"{context.get('player_id')}:{tournament_id}"

    def extract_row(self, row: Tag, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        link = row.select_one('a[href*="/tournament/"]')
        if link is None:
            return None

        player_id = context.get("player_id")
        tournament_id = link_id(link, "tournament")
        return {
            "external_id": f"{player_id}:{tournament_id}",
            "player_external_id": player_id,
            "tournament_external_id": tournament_id,
            "tournament_name": clean_text(link),
            "placement": parse_placement(row.select_one(".placement")),
            "gg_points": parse_int(row.select_one(".gg-points")),
            "elo_change": parse_signed_change(row.select_one(".elo-change")),
            "prize_money": parse_currency(row.select_one(".prize-money")),
        }
