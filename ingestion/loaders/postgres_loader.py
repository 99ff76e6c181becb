"""
Load validated records into PostgreSQL with upsert logic (idempotency)
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Sequence, Type

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import UpsertError
from models.base import Base, EntityKind, SyncState
from models.club import Club
from models.player import Player, PlayerYearStats
from models.tournament import Tournament, PlayerTournament
from models.game import Game, GameParticipation
from schemas.records import RecordBase, GameRecord
import logging

logger = logging.getLogger(__name__)

ENTITY_MODELS: Dict[EntityKind, Type[Base]] = {
    EntityKind.CLUB: Club,
    EntityKind.PLAYER: Player,
    EntityKind.PLAYER_YEAR_STATS: PlayerYearStats,
    EntityKind.TOURNAMENT: Tournament,
    EntityKind.PLAYER_TOURNAMENT: PlayerTournament,
    EntityKind.GAME: Game,
}


@dataclass
class LoadResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    participations: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged

    def merge(self, other: "LoadResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.participations += other.participations

    def to_dict(self) -> Dict[str, int]:
        return dict(asdict(self), total=self.total)


class PostgresLoader:
    """
    Load data into PostgreSQL with idempotent upsert operations.

    Ensures:
    - No duplicate rows on repeated runs (conflict target is external_id)
    - Changed records are updated in place
    - Unchanged records only get last_sync_at refreshed

    The loader never commits: the orchestrator commits each batch together
    with its checkpoint.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def load(self, kind: EntityKind, records: Sequence[RecordBase]) -> LoadResult:
        """
        Upsert a deduplicated batch of one entity kind.

        Args:
            kind: Entity kind of every record in the batch
            records: Validated records, unique by external_id

        Returns:
            Per-batch inserted / updated / unchanged counts
        """
        result = LoadResult()
        if not records:
            return result

        model = ENTITY_MODELS[kind]
        now = datetime.utcnow()

        try:
            existing = await self._existing_rows(model, [r.external_id for r in records])

            changed_rows: List[Dict[str, Any]] = []
            unchanged_ids: List[str] = []
            for record in records:
                fields = record.business_fields()
                current = existing.get(record.external_id)
                if current is None:
                    result.inserted += 1
                elif self._differs(current, fields):
                    result.updated += 1
                else:
                    result.unchanged += 1
                    unchanged_ids.append(record.external_id)
                    continue
                changed_rows.append(dict(
                    fields,
                    external_id=record.external_id,
                    last_sync_at=now,
                    sync_status=SyncState.SYNCED,
                    created_at=now,
                    updated_at=now,
                ))

            if changed_rows:
                await self.upsert_rows(model, changed_rows)

            if unchanged_ids:
                await self.db.execute(
                    update(model)
                    .where(model.external_id.in_(unchanged_ids))
                    .values(last_sync_at=now, sync_status=SyncState.SYNCED)
                )

            if kind == EntityKind.GAME:
                result.participations = await self._load_participations(records, now)

        except UpsertError:
            raise
        except Exception as e:
            raise UpsertError(
                f"Failed to upsert {kind.value} batch",
                context={
                    "entity_kind": kind.value,
                    "records_to_load": len(records),
                    "operation": "UPSERT",
                    "table_name": model.__tablename__,
                },
                original_exception=e
            )

        logger.info(
            f"Loaded {kind.value} batch: {result.inserted} inserted, "
            f"{result.updated} updated, {result.unchanged} unchanged"
        )
        return result

    async def _existing_rows(self, model: Type[Base], external_ids: List[str]) -> Dict[str, Any]:
        rows = await self.db.execute(select(model).where(model.external_id.in_(external_ids)))
        return {row.external_id: row for row in rows.scalars().all()}

    @staticmethod
    def _differs(row: Any, fields: Dict[str, Any]) -> bool:
        return any(getattr(row, name) != value for name, value in fields.items())

    async def upsert_rows(self, model: Type[Base], rows: List[Dict[str, Any]]) -> None:
        stmt = insert(model).values(rows)
        # created_at stays as first written
        update_columns = {
            name: stmt.excluded[name]
            for name in rows[0]
            if name not in ("external_id", "created_at")
        }
        stmt = stmt.on_conflict_do_update(index_elements=["external_id"], set_=update_columns)
        await self.db.execute(stmt)

    async def _load_participations(self, games: Sequence[GameRecord], now: datetime) -> int:
        rows = []
        for game in games:
            for seat in game.participants:
                rows.append(dict(
                    seat.model_dump(),
                    external_id=f"{game.external_id}:{seat.player_external_id}",
                    game_external_id=game.external_id,
                    last_sync_at=now,
                    sync_status=SyncState.SYNCED,
                    created_at=now,
                    updated_at=now,
                ))
        if not rows:
            return 0

        # A player appears once per game
        unique_rows = list({row["external_id"]: row for row in rows}.values())
        await self.upsert_rows(GameParticipation, unique_rows)
        return len(unique_rows)
