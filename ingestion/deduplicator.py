"""
Duplicate resolution.

Two different jobs:
- Ingest time: exact duplicates by external_id inside a batch collapse to the
  most recently scraped record, which is the one upserted.
- Offline audit: near-duplicate names (normalized Levenshtein similarity at or
  above a threshold) are reported for manual review and never merged.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from rapidfuzz.distance import Levenshtein
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import EntityKind
from models.club import Club
from models.player import Player
from schemas.records import RecordBase

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8

NAMED_MODELS = {
    EntityKind.PLAYER: Player,
    EntityKind.CLUB: Club,
}


def deduplicate_batch(records: Sequence[RecordBase]) -> Tuple[List[RecordBase], int]:
    """
    Collapse records sharing an external_id; the latest scraped_at wins and
    ties go to the record seen last.

    Returns:
        (unique records in first-seen order, number of duplicates dropped)
    """
    winners: Dict[str, RecordBase] = {}
    order: List[str] = []
    for record in records:
        current = winners.get(record.external_id)
        if current is None:
            order.append(record.external_id)
            winners[record.external_id] = record
        elif record.scraped_at >= current.scraped_at:
            winners[record.external_id] = record

    duplicates = len(records) - len(order)
    if duplicates:
        logger.info(f"Dropped {duplicates} duplicate records within batch")
    return [winners[key] for key in order], duplicates


# ============================================================================
# Fuzzy audit
# ============================================================================

def normalize_name(name: str) -> str:
    return re.sub(r"\s+", " ", (name or "").strip().lower()).replace("ё", "е")


def similarity(a: str, b: str) -> float:
    """(len(longer) - distance) / len(longer) on normalized names."""
    return Levenshtein.normalized_similarity(normalize_name(a), normalize_name(b))


@dataclass
class DuplicateCandidate:
    first_id: str
    first_name: str
    second_id: str
    second_name: str
    similarity: float


def find_potential_duplicates(
    items: Iterable[Tuple[str, str]],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> List[DuplicateCandidate]:
    """
    Pairwise near-duplicate scan over (external_id, name) pairs.

    Pairs with identical external IDs are skipped; those are exact duplicates
    and are handled at ingest time.
    """
    entries = list(items)
    candidates = []
    for i in range(len(entries)):
        first_id, first_name = entries[i]
        for j in range(i + 1, len(entries)):
            second_id, second_name = entries[j]
            if first_id == second_id:
                continue
            score = similarity(first_name, second_name)
            if score >= threshold:
                candidates.append(DuplicateCandidate(
                    first_id=first_id,
                    first_name=first_name,
                    second_id=second_id,
                    second_name=second_name,
                    similarity=round(score, 3),
                ))
    candidates.sort(key=lambda c: c.similarity, reverse=True)
    return candidates


async def build_duplicate_report(
    session: AsyncSession,
    kind: EntityKind = EntityKind.PLAYER,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> List[DuplicateCandidate]:
    """Load names of `kind` from the database and report near-duplicates."""
    if kind not in NAMED_MODELS:
        raise ValueError(f"Duplicate report is not available for {kind.value}")
    model = NAMED_MODELS[kind]
    result = await session.execute(select(model.external_id, model.name).order_by(model.name))
    rows = [(row[0], row[1]) for row in result.all()]
    candidates = find_potential_duplicates(rows, threshold)
    logger.info(f"Duplicate audit for {kind.value}: {len(candidates)} candidates among {len(rows)} records")
    return candidates
