"""
Shared parsing helpers and the base class for page extractors.

Extractors turn one fetched HTML page into candidate records (plain dicts).
They never write to the database and never decide acceptability: optional
fields the page does not provide are left as None and the validators judge
the result.

Placeholder markers ("-", "–", "—", empty) always become None, never 0 or "",
so a missing value is never stored as false data.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse, parse_qs

from bs4 import BeautifulSoup, Tag

from core.exceptions import DataFormatError, StructuralError, ETLException
from models.base import EntityKind, EventStatus, WinnerTeam, PlayerRole

logger = logging.getLogger(__name__)

PLACEHOLDERS = {"", "-", "–", "—", "−", "n/a", "нет", "нет данных"}

# Spaces the source uses as thousands separators (regular, NBSP, narrow NBSP, thin)
SPACE_CHARS = re.compile(r"[\s\u00a0\u202f\u2009]+")
CURRENCY_MARKERS = re.compile(r"(₽|руб\.?|р\.|rub|usd|eur|\$|€)\s*$", re.IGNORECASE)
PLAIN_NUMBER = re.compile(r"^\d+(\.\d+)?$")
SIGNED_INT = re.compile(r"^[+\-−]?\d+$")
SIGNED_NUMBER = re.compile(r"^[+\-−]?\d+(\.\d+)?$")
FIRST_INT = re.compile(r"\d+")

EMPTY_STATE_SELECTORS = ".empty-state, .no-data, .no-results"
EMPTY_STATE_TEXTS = ("нет данных", "ничего не найдено", "no data")

DATE_FORMATS = (
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)

TextSource = Union[str, Tag, None]


# ============================================================================
# Text and number helpers
# ============================================================================

def clean_text(value: TextSource) -> Optional[str]:
    """Collapse whitespace; placeholders become None."""
    if value is None:
        return None
    if isinstance(value, Tag):
        value = value.get_text(" ", strip=True)
    text = SPACE_CHARS.sub(" ", str(value)).strip()
    if text.lower() in PLACEHOLDERS:
        return None
    return text


def _compact(value: TextSource) -> Optional[str]:
    text = clean_text(value)
    if text is None:
        return None
    return SPACE_CHARS.sub("", text)


def parse_int(value: TextSource) -> Optional[int]:
    """Parse an integer such as "1 234"; placeholders give None."""
    text = _compact(value)
    if text is None:
        return None
    if not SIGNED_INT.match(text):
        raise DataFormatError(f"Not an integer: {text!r}", context={"value": text})
    return int(text.replace("−", "-"))


def parse_number(value: TextSource) -> Optional[float]:
    """Parse a signed decimal with comma or period as the separator."""
    text = _compact(value)
    if text is None:
        return None
    text = text.replace(",", ".").replace("−", "-")
    if not SIGNED_NUMBER.match(text):
        raise DataFormatError(f"Not a number: {text!r}", context={"value": text})
    return float(text)


def parse_currency(value: TextSource) -> Optional[float]:
    """
    Parse locale money text.

    Accepts space-separated thousands, comma or period decimals and an
    optional trailing currency marker: "60 000 ₽" -> 60000,
    "1 500,50 ₽" -> 1500.5. Empty or placeholder text gives None.

    Raises:
        DataFormatError: negative amounts or non-numeric text
    """
    text = clean_text(value)
    if text is None:
        return None

    text = CURRENCY_MARKERS.sub("", text).strip()
    if text.lower() in PLACEHOLDERS:
        return None

    text = SPACE_CHARS.sub("", text)
    if text.startswith(("-", "−")):
        raise DataFormatError(f"Negative amount: {text!r}", context={"value": text})

    if "," in text and "." in text:
        # Whichever separator comes last is the decimal point
        decimal_sep = "," if text.rfind(",") > text.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        text = text.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif text.count(",") == 1:
        text = text.replace(",", ".")
    elif text.count(",") > 1 or text.count(".") > 1:
        text = text.replace(",", "").replace(".", "")

    if not PLAIN_NUMBER.match(text):
        raise DataFormatError(f"Invalid amount: {text!r}", context={"value": text})
    return float(text)


def parse_signed_change(value: TextSource) -> Optional[float]:
    """ELO change such as "+25" or "−12.5"."""
    return parse_number(value)


def parse_placement(value: TextSource) -> Optional[int]:
    """"1 место" -> 1, "Top 16" / "Топ 16" -> 16."""
    text = clean_text(value)
    if text is None:
        return None
    match = FIRST_INT.search(text)
    if match is None:
        raise DataFormatError(f"Invalid placement: {text!r}", context={"value": text})
    return int(match.group())


def parse_duration_minutes(value: TextSource) -> Optional[int]:
    """"45 мин" -> 45, "1:05" (h:mm) -> 65."""
    text = clean_text(value)
    if text is None:
        return None
    hm = re.match(r"^(\d+):(\d{2})", text)
    if hm:
        return int(hm.group(1)) * 60 + int(hm.group(2))
    match = FIRST_INT.search(text)
    if match is None:
        raise DataFormatError(f"Invalid duration: {text!r}", context={"value": text})
    return int(match.group())


def parse_date(value: TextSource) -> Optional[datetime]:
    text = clean_text(value)
    if text is None:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise DataFormatError(f"Unrecognised date: {text!r}", context={"value": text})


# ============================================================================
# Domain value helpers
# ============================================================================

def parse_event_status(value: TextSource) -> EventStatus:
    text = (clean_text(value) or "").lower()
    if "заверш" in text or "completed" in text or "finished" in text:
        return EventStatus.COMPLETED
    if "в процессе" in text or "идёт" in text or "идет" in text or "in progress" in text:
        return EventStatus.IN_PROGRESS
    if "отмен" in text or "cancel" in text:
        return EventStatus.CANCELLED
    return EventStatus.SCHEDULED


def parse_winner(value: TextSource) -> Optional[WinnerTeam]:
    text = (clean_text(value) or "").lower()
    if not text:
        return None
    if "ничья" in text or "draw" in text:
        return WinnerTeam.DRAW
    if "мафи" in text or "черн" in text or "чёрн" in text or "black" in text or "mafia" in text:
        return WinnerTeam.BLACK
    if "мирн" in text or "город" in text or "красн" in text or "red" in text or "citizen" in text:
        return WinnerTeam.RED
    return None


def parse_role(value: TextSource) -> Optional[PlayerRole]:
    text = (clean_text(value) or "").lower()
    if not text:
        return None
    if "дон" in text or "don" in text:
        return PlayerRole.DON
    if "шериф" in text or "sheriff" in text:
        return PlayerRole.SHERIFF
    if "мафи" in text or "mafia" in text:
        return PlayerRole.MAFIA
    if "мирн" in text or "горож" in text or "citizen" in text or "civil" in text:
        return PlayerRole.CITIZEN
    return None


def id_from_href(href: Optional[str], segment: str) -> Optional[str]:
    """Return the path component following `segment`, e.g. "/stats/123" -> "123"."""
    if not href:
        return None
    path = urlparse(href).path
    marker = f"/{segment.strip('/')}/"
    if marker not in path:
        return None
    tail = path.split(marker, 1)[1]
    ident = tail.split("/", 1)[0].strip()
    return ident or None


def link_id(node: Optional[Tag], segment: str) -> Optional[str]:
    if node is None:
        return None
    link = node if node.name == "a" else node.select_one(f'a[href*="/{segment}/"]')
    if link is None:
        return None
    return id_from_href(link.get("href"), segment)


def parse_total_pages(soup: BeautifulSoup) -> Optional[int]:
    """Highest page number linked from the pagination block, if any."""
    pages = []
    for link in soup.select('.pagination a, nav a[href*="page="], a[href*="page="]'):
        href = link.get("href") or ""
        query = parse_qs(urlparse(href).query)
        candidates = query.get("page", [])
        text = clean_text(link)
        if text and text.isdigit():
            candidates.append(text)
        for candidate in candidates:
            if str(candidate).isdigit():
                pages.append(int(candidate))
    return max(pages) if pages else None


def has_next_page(soup: BeautifulSoup, current_page: int) -> bool:
    if soup.select_one('.pagination .next:not(.disabled), a[rel="next"]'):
        return True
    total = parse_total_pages(soup)
    return total is not None and current_page < total


# ============================================================================
# Extractor base
# ============================================================================

@dataclass
class RowError:
    """A single row that could not be turned into a candidate record"""
    row_index: int
    code: str
    message: str
    entity_id: Optional[str] = None


@dataclass
class ExtractionResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    total_pages: Optional[int] = None
    has_next_page: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.records and not self.errors


class PageExtractor(ABC):
    """
    Base class for per-entity-kind extractors.

    Subclasses implement `extract_rows`; the base class parses HTML, checks
    that the page still has its expected structure and quarantines rows that
    raise parsing errors instead of failing the whole page.
    """

    kind: EntityKind
    # Selector that must exist on a well-formed page
    container_selector: str = "table"

    def parse(self, html: str) -> BeautifulSoup:
        return BeautifulSoup(html, "html.parser")

    def extract(self, html: str, context: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        """
        Extract candidate records from a page.

        Args:
            html: Raw page content
            context: Page parameters (page number, player id, year, url, ...)

        Raises:
            StructuralError: the page lacks the expected container and is not
                an explicit empty-state page
        """
        context = context or {}
        soup = self.parse(html)
        result = ExtractionResult()

        if soup.select_one(self.container_selector) is None:
            if self.is_empty_state(soup):
                return result
            raise StructuralError(
                f"Expected '{self.container_selector}' not found on {self.kind.value} page",
                context={
                    "entity_kind": self.kind.value,
                    "selector": self.container_selector,
                    "url": context.get("url"),
                }
            )

        page = context.get("page")
        if page is not None:
            result.total_pages = parse_total_pages(soup)
            result.has_next_page = has_next_page(soup, page)

        for index, row in enumerate(self.rows(soup)):
            try:
                record = self.extract_row(row, context)
            except ETLException as e:
                result.errors.append(RowError(
                    row_index=index,
                    code=e.code,
                    message=e.message,
                    entity_id=self.row_identity(row, context),
                ))
                logger.warning(f"{self.kind.value} row {index} rejected during extraction: {e.message}")
                continue
            if record is not None:
                result.records.append(record)

        return result

    def is_empty_state(self, soup: BeautifulSoup) -> bool:
        if soup.select_one(EMPTY_STATE_SELECTORS):
            return True
        body_text = (soup.get_text(" ", strip=True) or "").lower()
        return any(marker in body_text for marker in EMPTY_STATE_TEXTS)

    def rows(self, soup: BeautifulSoup) -> List[Tag]:
        return soup.select("table tbody tr")

    def row_identity(self, row: Tag, context: Dict[str, Any]) -> Optional[str]:
        """Best-effort external ID of a row, used when quarantining it."""
        return None

    @abstractmethod
    def extract_row(self, row: Tag, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Turn one row into a candidate record, or None to ignore the row."""
        pass
