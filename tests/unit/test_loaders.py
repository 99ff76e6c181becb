"""
Unit tests for the PostgreSQL loader
"""

import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from core.exceptions import UpsertError
from ingestion.loaders.postgres_loader import PostgresLoader
from models.base import EntityKind, PlayerRole, Team
from schemas.records import ClubRecord, GameRecord, ParticipationRecord


def mock_session_with_rows(rows):
    """AsyncSession whose first SELECT returns `rows`"""
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    session = AsyncMock()
    session.execute = AsyncMock(return_value=result)
    return session


class TestPostgresLoader:
    """Test PostgreSQL loader functionality"""

    @pytest.mark.asyncio
    async def test_load_new_records(self):
        """New records are inserted with one upsert statement"""
        mock_session = mock_session_with_rows([])
        loader = PostgresLoader(mock_session)

        records = [
            ClubRecord(external_id="1", name="Красная Площадь", members_count=24),
            ClubRecord(external_id="2", name="Невский Дон"),
        ]
        result = await loader.load(EntityKind.CLUB, records)

        assert result.inserted == 2
        assert result.total == 2
        # SELECT existing + INSERT .. ON CONFLICT
        assert mock_session.execute.call_count == 2
        mock_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_unchanged_record_only_refreshes_sync_time(self):
        existing = SimpleNamespace(
            external_id="1", name="Красная Площадь", region=None, president=None, members_count=24,
        )
        mock_session = mock_session_with_rows([existing])
        loader = PostgresLoader(mock_session)

        result = await loader.load(
            EntityKind.CLUB, [ClubRecord(external_id="1", name="Красная Площадь", members_count=24)]
        )

        assert result.unchanged == 1
        assert result.inserted == 0 and result.updated == 0
        assert mock_session.execute.call_count == 2

    @pytest.mark.asyncio
    async def test_changed_record_is_updated(self):
        existing = SimpleNamespace(
            external_id="1", name="Красная Площадь", region=None, president=None, members_count=20,
        )
        loader = PostgresLoader(mock_session_with_rows([existing]))

        result = await loader.load(
            EntityKind.CLUB, [ClubRecord(external_id="1", name="Красная Площадь", members_count=24)]
        )

        assert result.updated == 1

    @pytest.mark.asyncio
    async def test_game_batch_writes_participations(self):
        mock_session = mock_session_with_rows([])
        loader = PostgresLoader(mock_session)
        game = GameRecord(
            external_id="9001",
            tournament_external_id="501",
            participants=[
                ParticipationRecord(player_external_id="101", role=PlayerRole.SHERIFF, team=Team.RED, is_winner=True),
                ParticipationRecord(player_external_id="102", role=PlayerRole.DON, team=Team.BLACK),
            ],
        )

        result = await loader.load(EntityKind.GAME, [game])

        assert result.inserted == 1
        assert result.participations == 2
        # SELECT, game upsert, participation upsert
        assert mock_session.execute.call_count == 3

    @pytest.mark.asyncio
    async def test_load_empty_batch(self):
        mock_session = AsyncMock()
        loader = PostgresLoader(mock_session)

        result = await loader.load(EntityKind.CLUB, [])

        assert result.total == 0
        mock_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_database_failure_raises_upsert_error(self):
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=Exception("Database connection lost"))
        loader = PostgresLoader(mock_session)

        with pytest.raises(UpsertError) as exc_info:
            await loader.load(EntityKind.CLUB, [ClubRecord(external_id="1", name="Волга")])

        assert exc_info.value.context["table_name"] == "clubs"
        assert exc_info.value.context["records_to_load"] == 1
