"""
Source routes and page iteration state for paginated listings.

Listing phases (clubs, players, tournaments) walk `?page=N` until the source
reports no next page, MAX_PAGES is reached, or MAX_CONSECUTIVE_EMPTY_PAGES
empty pages arrive in a row. Pages that fail permanently are remembered so the
run log and Skipped Entities can point at them.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core.config import settings
from ingestion.extractors.base import ExtractionResult
from models.base import EntityKind

logger = logging.getLogger(__name__)

Route = Tuple[str, Dict[str, Any]]


# ============================================================================
# Source routes
# ============================================================================

LISTING_ROUTES: Dict[EntityKind, Route] = {
    EntityKind.CLUB: ("/rating", {"tab": "clubs"}),
    EntityKind.PLAYER: ("/rating", {"tab": "players"}),
    EntityKind.TOURNAMENT: ("/tournaments", {}),
}


def listing_route(kind: EntityKind, page: int) -> Route:
    path, params = LISTING_ROUTES[kind]
    return path, dict(params, page=page)


def player_stats_route(player_id: str, year: int) -> Route:
    return f"/stats/{player_id}", {"tab": "stats", "year": year}


def player_history_route(player_id: str) -> Route:
    return f"/stats/{player_id}", {"tab": "history"}


def tournament_games_route(tournament_id: str) -> Route:
    return f"/tournament/{tournament_id}", {"tab": "games"}


# ============================================================================
# Page iteration
# ============================================================================

@dataclass
class PageScan:
    """
    Iteration state for one paginated listing.

    Attributes:
        next_page: Page number to fetch next (1-based)
        total_pages: Highest page number the source advertised, if known
        consecutive_empty: Empty pages seen in a row
        skipped_pages: Pages the source answered with "not found"
    """
    next_page: int = 1
    max_pages: int = field(default_factory=lambda: settings.MAX_PAGES)
    max_consecutive_empty: int = field(default_factory=lambda: settings.MAX_CONSECUTIVE_EMPTY_PAGES)
    total_pages: Optional[int] = None
    consecutive_empty: int = 0
    has_next: bool = True
    skipped_pages: List[int] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        if not self.has_next:
            return True
        if self.next_page > self.max_pages:
            return True
        if self.total_pages is not None and self.next_page > self.total_pages:
            return True
        return self.consecutive_empty >= self.max_consecutive_empty

    @property
    def known_total(self) -> int:
        """Total batch count for progress; 0 while unknown."""
        if self.total_pages is None:
            return 0
        return min(self.total_pages, self.max_pages)

    def record_page(self, page: int, result: ExtractionResult) -> None:
        if result.total_pages:
            self.total_pages = max(self.total_pages or 0, result.total_pages)

        if result.is_empty:
            self.consecutive_empty += 1
            logger.info(f"Page {page} is empty ({self.consecutive_empty}/{self.max_consecutive_empty})")
        else:
            self.consecutive_empty = 0

        # Without pagination links the only stop signal is a run of empty pages
        if self.total_pages is not None and not result.has_next_page and not result.is_empty:
            self.has_next = page < self.total_pages
        self.next_page = page + 1

    def record_skipped(self, page: int) -> None:
        """A page that could not be read counts as empty for the stop condition."""
        self.skipped_pages.append(page)
        self.consecutive_empty += 1
        self.next_page = page + 1

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "consecutive_empty": self.consecutive_empty,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "skipped_pages": list(self.skipped_pages),
        }

    @classmethod
    def from_metadata(cls, next_page: int, metadata: Optional[Dict[str, Any]]) -> "PageScan":
        metadata = metadata or {}
        return cls(
            next_page=next_page,
            total_pages=metadata.get("total_pages"),
            consecutive_empty=metadata.get("consecutive_empty", 0),
            has_next=metadata.get("has_next", True),
            skipped_pages=list(metadata.get("skipped_pages", [])),
        )
