"""
Player rating page extractor
"""

from typing import Any, Dict, Optional
from bs4 import Tag

from ingestion.extractors.base import PageExtractor, clean_text, parse_int, parse_number, link_id
from models.base import EntityKind


class PlayersExtractor(PageExtractor):
    """
    Rows of /rating?tab=players.

    The club cell may link to the club page; its ID becomes the player's
    club reference. A missing ELO stays None here and is defaulted by the
    validator.
    """

    kind = EntityKind.PLAYER

    def _player_link(self, row: Tag) -> Optional[Tag]:
        return row.select_one('a[href*="/stats/"], a[href*="/player/"]')

    def row_identity(self, row: Tag, context: Dict[str, Any]) -> Optional[str]:
        link = self._player_link(row)
        return link_id(link, "stats") or link_id(link, "player")

    def extract_row(self, row: Tag, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        link = self._player_link(row)
        if link is None:
            return None

        club_cell = row.select_one(".club")
        return {
            "external_id": link_id(link, "stats") or link_id(link, "player"),
            "name": clean_text(link),
            "region": clean_text(row.select_one(".region")),
            "club_external_id": link_id(club_cell, "club"),
            "club_name": clean_text(club_cell),
            "tournaments_played": parse_int(row.select_one(".tournaments")),
            "gg_points": parse_int(row.select_one(".gg-points")),
            "elo_rating": parse_number(row.select_one(".elo")),
        }
