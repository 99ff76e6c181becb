"""
Club rating page extractor
"""

from typing import Any, Dict, Optional
from bs4 import Tag

from ingestion.extractors.base import PageExtractor, clean_text, parse_int, link_id
from models.base import EntityKind


class ClubsExtractor(PageExtractor):
    """Rows of /rating?tab=clubs: club link, region, president, member count."""

    kind = EntityKind.CLUB

    def row_identity(self, row: Tag, context: Dict[str, Any]) -> Optional[str]:
        return link_id(row, "club")

    def extract_row(self, row: Tag, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        link = row.select_one('a[href*="/club/"]')
        if link is None:
            return None

        return {
            "external_id": link_id(link, "club"),
            "name": clean_text(link),
            "region": clean_text(row.select_one(".region")),
            "president": clean_text(row.select_one(".president")),
            "members_count": parse_int(row.select_one(".members")),
        }
