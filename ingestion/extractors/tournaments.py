"""
Tournament list page extractor
"""

from typing import Any, Dict, Optional
from bs4 import Tag

from ingestion.extractors.base import (
    PageExtractor,
    clean_text,
    parse_int,
    parse_date,
    parse_currency,
    parse_event_status,
    link_id,
)
from models.base import EntityKind


class TournamentsExtractor(PageExtractor):
    """
    Rows of /tournaments.

    Cell layout: [index, name + stars, dates, participants, status, prize].
    The dates cell holds one nested div per date (start, then optional end).
    """

    kind = EntityKind.TOURNAMENT

    def row_identity(self, row: Tag, context: Dict[str, Any]) -> Optional[str]:
        return link_id(row, "tournament")

    def extract_row(self, row: Tag, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cells = row.find_all("td")
        link = row.select_one('a[href*="/tournament/"]')
        if link is None or len(cells) < 2:
            return None

        name_node = link.find("b") or link
        record = {
            "external_id": link_id(link, "tournament"),
            "name": clean_text(name_node),
            "stars": self._stars(cells[1]),
            "start_date": None,
            "end_date": None,
            "participants_count": None,
            "prize_pool": parse_currency(row.select_one(".prize")),
        }

        if len(cells) > 2:
            dates = [clean_text(node) for node in cells[2].select("div > div")]
            if not dates:
                dates = [clean_text(cells[2])]
            dates = [d for d in dates if d]
            if dates:
                record["start_date"] = parse_date(dates[0])
            if len(dates) > 1:
                record["end_date"] = parse_date(dates[1])

        if len(cells) > 3:
            record["participants_count"] = parse_int(cells[3])

        if len(cells) > 4:
            record["status"] = parse_event_status(cells[4])

        return record

    def _stars(self, cell: Tag) -> Optional[int]:
        icons = cell.select(".star, .stars .icon")
        if icons:
            return len(icons)
        return parse_int(cell.select_one(".stars"))
