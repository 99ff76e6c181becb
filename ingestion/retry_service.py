"""
Retry service for quarantined (skipped) entities and pages.

A retry re-fetches the source page that produced each skipped row, runs it
through validation and deduplication again and upserts whatever is now
valid. Retries take the same advisory lock as imports so they never
interleave with a running import.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.exceptions import (
    ETLException,
    ImportAlreadyRunningError,
    ImportCancelledError,
)
from ingestion.cancellation import CancellationToken
from ingestion.deduplicator import deduplicate_batch
from ingestion.lock import AdvisoryLockManager
from ingestion.phases import PHASE_KINDS, LISTING_PHASES, fetch_listing_page, fetch_entity
from ingestion.skipped import SkippedEntitiesManager
from ingestion.source_client import SourceClient
from ingestion.store import ImportStore
from ingestion.validators import validate_record
from models.base import ImportPhase, SkippedStatus
from models.skipped_entity import SkippedEntity

logger = logging.getLogger(__name__)


@dataclass
class RetryRequest:
    phase: ImportPhase
    entity_ids: List[str] = field(default_factory=list)
    page_numbers: List[int] = field(default_factory=list)

    @property
    def is_targeted(self) -> bool:
        return bool(self.entity_ids or self.page_numbers)


@dataclass
class RetryOutcome:
    retry_id: uuid.UUID
    phase: ImportPhase
    attempted: int = 0
    completed: int = 0
    failed: int = 0
    records_loaded: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retry_id": str(self.retry_id),
            "phase": self.phase.value,
            "attempted": self.attempted,
            "completed": self.completed,
            "failed": self.failed,
            "records_loaded": self.records_loaded,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def fetch_target(row: SkippedEntity) -> Optional[str]:
    """Entity whose page has to be fetched again to reproduce `row`."""
    details = row.details or {}
    return details.get("source_entity_id") or row.entity_id


class RetryService:
    """
    Re-process Skipped Entities of one phase.

    Rows are grouped by the page (listing phases) or entity (entity phases)
    they came from, so each source page is fetched once per retry.
    """

    def __init__(
        self,
        skipped: SkippedEntitiesManager,
        store: ImportStore,
        lock: AdvisoryLockManager,
        source: SourceClient,
        token: Optional[CancellationToken] = None,
    ):
        self.skipped = skipped
        self.store = store
        self.lock = lock
        self.source = source
        self.token = token or CancellationToken()

    async def select(self, request: RetryRequest) -> List[SkippedEntity]:
        if not request.is_targeted:
            return await self.skipped.list_by_phase(request.phase, status=SkippedStatus.PENDING)

        rows: Dict[int, SkippedEntity] = {}
        for entity_id in request.entity_ids:
            for row in await self.skipped.list_by_entity(entity_id):
                if row.phase == request.phase:
                    rows[row.id] = row
        if request.page_numbers:
            for row in await self.skipped.list_by_pages(request.phase, request.page_numbers):
                rows[row.id] = row
        return [row for row in rows.values() if row.status != SkippedStatus.COMPLETED]

    async def run(self, request: RetryRequest, rows: Optional[Sequence[SkippedEntity]] = None) -> RetryOutcome:
        """
        Retry the selected rows under the advisory lock.

        Raises:
            ImportAlreadyRunningError: an import (or another retry) holds the lock
        """
        if not await self.lock.acquire_lock():
            raise ImportAlreadyRunningError(
                "Import operation already in progress",
                context={"phase": request.phase.value, "reason": "lock_held"}
            )

        outcome = RetryOutcome(retry_id=uuid.uuid4(), phase=request.phase)
        try:
            if rows is None:
                rows = await self.select(request)
            groups = self._group(request.phase, rows)
            logger.info(f"Retrying {len(rows)} skipped rows of {request.phase.value} from {len(groups)} sources")

            async with self.source:
                for target, group in groups.items():
                    self.token.raise_if_cancelled()
                    await self._retry_group(request.phase, target, group, outcome)
        except ImportCancelledError:
            logger.info(f"Retry {outcome.retry_id} cancelled")
        finally:
            await self.lock.release_lock()

        outcome.finished_at = datetime.utcnow()
        logger.info(
            f"Retry {outcome.retry_id} finished: {outcome.completed} completed, "
            f"{outcome.failed} failed, {outcome.records_loaded} records loaded"
        )
        return outcome

    def _group(self, phase: ImportPhase, rows: Sequence[SkippedEntity]) -> Dict[Any, List[SkippedEntity]]:
        groups: Dict[Any, List[SkippedEntity]] = {}
        for row in rows:
            if phase in LISTING_PHASES:
                target = row.page_number
            else:
                target = fetch_target(row)
            if target is None:
                logger.warning(f"Skipped row {row.id} has no page or entity to retry")
                continue
            groups.setdefault(target, []).append(row)
        return groups

    async def _retry_group(
        self,
        phase: ImportPhase,
        target: Any,
        group: List[SkippedEntity],
        outcome: RetryOutcome,
    ) -> None:
        kind = PHASE_KINDS[phase]
        for row in group:
            await self.skipped.mark_retrying(row.id)
        outcome.attempted += len(group)

        try:
            if phase in LISTING_PHASES:
                extraction = await fetch_listing_page(self.source, kind, target, self.token)
                candidates, errors = extraction.records, extraction.errors
            else:
                fetched = await fetch_entity(self.source, phase, target, self.token)
                candidates, errors = fetched.records, fetched.errors
        except ImportCancelledError:
            for row in group:
                await self.skipped.mark_pending(row.id)
            outcome.attempted -= len(group)
            raise
        except ETLException as e:
            for row in group:
                await self.skipped.mark_failed(row.id, f"[{e.code}] {e.message}")
            outcome.failed += len(group)
            return

        valid = []
        invalid: Dict[str, str] = {err.entity_id: err.message for err in errors if err.entity_id}
        for candidate in candidates:
            checked = validate_record(kind, candidate)
            if checked.is_valid:
                valid.append(checked.record)
            elif checked.external_id:
                invalid[checked.external_id] = checked.summary()

        records, _ = deduplicate_batch(valid)
        try:
            result = await self.store.persist_records(phase, kind, records)
        except ETLException as e:
            for row in group:
                await self.skipped.mark_failed(row.id, f"[{e.code}] {e.message}")
            outcome.failed += len(group)
            return
        outcome.records_loaded += result.total

        loaded = {record.external_id for record in records}
        for row in group:
            if self._resolved(phase, row, target, loaded, invalid):
                await self.skipped.mark_completed(row.id)
                outcome.completed += 1
            else:
                message = invalid.get(row.entity_id) or "Record still missing from source page"
                await self.skipped.mark_failed(row.id, message)
                outcome.failed += 1

    @staticmethod
    def _resolved(phase, row: SkippedEntity, target, loaded: set, invalid: Dict[str, str]) -> bool:
        if row.entity_id is None:
            # A whole page: any successful fetch resolves it
            return True
        if row.entity_id == target and phase not in LISTING_PHASES:
            # The entity itself failed to fetch
            return True
        return row.entity_id in loaded
