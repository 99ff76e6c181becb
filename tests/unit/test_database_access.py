"""
Unit tests for the advisory lock, integrity checker and run log writes,
run against in-memory connections and compiled statements
"""

import json
import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import JSONB

from core.exceptions import DatabaseConnectionError, ImportAlreadyRunningError, UpsertError
from ingestion.integrity import IntegrityChecker, PASS, FAIL, ORPHAN_GAMES_CHECK, REFERENCE_CHECKS
from ingestion.lock import AdvisoryLockManager
from ingestion.run_log import RunLogManager, error_entry, _appended_errors
from models.base import RunStatus


ASYNCPG = postgresql.asyncpg.dialect()


def json_binds(stmt):
    """JSONB bind values of `stmt` as asyncpg would receive them, decoded once"""
    compiled = stmt.compile(dialect=ASYNCPG)
    values = []
    for name, value in compiled.params.items():
        bind_type = compiled.binds[name].type
        if isinstance(bind_type, JSONB):
            process = bind_type.dialect_impl(ASYNCPG).bind_processor(ASYNCPG)
            values.append(json.loads(process(value)))
    return values


class RecordingSession:
    """AsyncSession stand-in that keeps every executed statement"""

    def __init__(self, rowcount=1):
        self.rowcount = rowcount
        self.statements = []
        self.commits = 0

    async def execute(self, stmt):
        self.statements.append(stmt)
        return SimpleNamespace(rowcount=self.rowcount)

    async def commit(self):
        self.commits += 1

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


# ============================================================================
# Advisory lock
# ============================================================================

class FakeLockServer:
    """Session-level advisory locks tracked per connection, as PostgreSQL does"""

    def __init__(self):
        self.holders = {}
        self.open_connections = 0


class FakeConnection:
    def __init__(self, server):
        self.server = server

    async def execute(self, statement, params):
        sql, key = str(statement), params["key"]
        holder = self.server.holders.get(key)
        if "pg_try_advisory_lock" in sql:
            if holder is None:
                self.server.holders[key] = self
            acquired = self.server.holders[key] is self
            return SimpleNamespace(scalar=lambda: acquired)
        if "pg_advisory_unlock" in sql:
            released = holder is self
            if released:
                del self.server.holders[key]
            return SimpleNamespace(scalar=lambda: released)
        raise AssertionError(f"Unexpected statement: {sql}")

    async def commit(self):
        pass

    async def close(self):
        self.server.open_connections -= 1
        for key, holder in list(self.server.holders.items()):
            if holder is self:
                del self.server.holders[key]


class FakeEngine:
    def __init__(self, server):
        self.server = server

    async def connect(self):
        self.server.open_connections += 1
        return FakeConnection(self.server)


class BrokenEngine:
    async def connect(self):
        raise OSError("Connection refused")


class TestAdvisoryLock:
    """Test one-import-at-a-time locking across processes"""

    @pytest.mark.asyncio
    async def test_lock_is_exclusive_across_processes(self):
        server = FakeLockServer()
        first = AdvisoryLockManager(FakeEngine(server), lock_key=42)
        second = AdvisoryLockManager(FakeEngine(server), lock_key=42)

        assert await first.acquire_lock() is True
        assert await second.acquire_lock() is False
        assert await second.is_locked_elsewhere() is True
        assert not second.is_held
        # A refused attempt does not keep its connection
        assert server.open_connections == 1

        await first.release_lock()

        assert await second.acquire_lock() is True
        await second.release_lock()
        assert server.holders == {}
        assert server.open_connections == 0

    @pytest.mark.asyncio
    async def test_acquire_is_idempotent_for_holder(self):
        server = FakeLockServer()
        manager = AdvisoryLockManager(FakeEngine(server), lock_key=42)

        assert await manager.acquire_lock() is True
        assert await manager.acquire_lock() is True
        assert await manager.is_locked_elsewhere() is False
        assert server.open_connections == 1

        await manager.release_lock()
        await manager.release_lock()
        assert server.open_connections == 0

    @pytest.mark.asyncio
    async def test_context_manager_refuses_second_import(self):
        server = FakeLockServer()
        holder = AdvisoryLockManager(FakeEngine(server), lock_key=42)

        async with holder:
            with pytest.raises(ImportAlreadyRunningError) as exc_info:
                async with AdvisoryLockManager(FakeEngine(server), lock_key=42):
                    pass
            assert exc_info.value.context["lock_key"] == 42

        assert not holder.is_held
        assert server.holders == {}

    @pytest.mark.asyncio
    async def test_unreachable_database(self):
        manager = AdvisoryLockManager(BrokenEngine(), lock_key=42)

        with pytest.raises(DatabaseConnectionError):
            await manager.acquire_lock()
        assert not manager.is_held


# ============================================================================
# Integrity checker
# ============================================================================

class CannedSession(RecordingSession):
    """Answers integrity queries by the columns they select"""

    def __init__(self, answers):
        super().__init__()
        self.answers = answers

    async def execute(self, query):
        self.statements.append(query)
        key = tuple(f"{column.table.name}.{column.name}" for column in query.selected_columns)
        rows = self.answers.get(key, [])
        result = MagicMock()
        result.all.return_value = rows
        result.scalars.return_value.all.return_value = [row[0] for row in rows]
        return result


PARTICIPATION_PLAYER = ("game_participations.external_id", "game_participations.player_external_id")
GAME_TOURNAMENT = ("games.external_id", "games.tournament_external_id")
ORPHAN_GAMES = ("games.external_id",)


class TestIntegrityChecker:
    """Test reference and orphan checks over the imported tables"""

    @pytest.mark.asyncio
    async def test_clean_database_passes(self):
        session = CannedSession({})

        report = await IntegrityChecker(lambda: session).check_all()

        assert report.status == PASS
        assert report.total_checks == len(REFERENCE_CHECKS) + 1 == 7
        assert report.passed_checks == 7
        assert report.issues == []
        assert len(session.statements) == 7

    @pytest.mark.asyncio
    async def test_dangling_references_and_orphans_fail(self):
        session = CannedSession({
            PARTICIPATION_PLAYER: [("9001:104", "104")],
            GAME_TOURNAMENT: [("9003", "777")],
            ORPHAN_GAMES: [("9003",)],
        })

        report = await IntegrityChecker(lambda: session).check_all()

        assert report.status == FAIL
        assert report.failed == ["participation_player", "game_tournament", ORPHAN_GAMES_CHECK]
        assert report.failed_checks == 3
        assert report.passed_checks == 4
        assert "GameParticipation 9001:104 references non-existent Player 104" in report.issues
        assert "Game 9003 references non-existent Tournament 777" in report.issues
        assert "Game 9003 has no participations" in report.issues
        assert report.message == "3 of 7 integrity checks failed."

    @pytest.mark.asyncio
    async def test_reference_query_finds_missing_parents(self):
        session = CannedSession({})
        await IntegrityChecker(lambda: session, sample_limit=10).check_all()

        query = next(
            q for q in session.statements
            if tuple(f"{c.table.name}.{c.name}" for c in q.selected_columns) == PARTICIPATION_PLAYER
        )
        sql = str(query.compile(dialect=postgresql.dialect()))

        assert "LEFT OUTER JOIN players AS players_1" in sql
        assert "game_participations.player_external_id IS NOT NULL" in sql
        assert "players_1.id IS NULL" in sql
        assert "LIMIT" in sql


# ============================================================================
# Run log writes
# ============================================================================

class TestRunLogWrites:
    """Test the statements the run log sends to PostgreSQL"""

    def test_appended_errors_are_encoded_once(self):
        entries = [{"message": "row rejected", "code": "VALIDATION_FAILED"}]

        values = json_binds(_appended_errors(entries))

        assert values == [[], entries]

    @pytest.mark.asyncio
    async def test_append_error_adds_structured_entry(self):
        session = RecordingSession()
        entry = {"message": "row rejected", "code": "VALIDATION_FAILED", "timestamp": "t", "details": {}}

        await RunLogManager(lambda: session).append_error(uuid.uuid4(), entry)

        assert session.commits == 1
        assert json_binds(session.statements[0]) == [[], [entry]]

    @pytest.mark.asyncio
    async def test_finish_only_moves_running_rows(self):
        session = RecordingSession()
        entry = {"message": "Import cancelled", "code": "IMPORT_CANCELLED"}

        finished = await RunLogManager(lambda: session).finish(
            uuid.uuid4(), RunStatus.CANCELLED, records_processed=7, errors=[entry]
        )

        assert finished is True
        stmt = session.statements[0]
        compiled = stmt.compile(dialect=ASYNCPG)
        assert "WHERE sync_logs.run_id = " in str(compiled)
        assert "AND sync_logs.status = " in str(compiled)
        assert compiled.params["status"] == RunStatus.CANCELLED
        assert compiled.params["status_1"] == RunStatus.RUNNING
        assert compiled.params["records_processed"] == 7
        assert json_binds(stmt) == [[], [entry]]

    @pytest.mark.asyncio
    async def test_finish_reports_terminal_row(self):
        session = RecordingSession(rowcount=0)

        assert await RunLogManager(lambda: session).finish(uuid.uuid4(), RunStatus.COMPLETED) is False

    @pytest.mark.asyncio
    async def test_finish_rejects_non_terminal_status(self):
        session = RecordingSession()

        with pytest.raises(ValueError):
            await RunLogManager(lambda: session).finish(uuid.uuid4(), RunStatus.RUNNING)
        assert session.statements == []

    def test_error_entry_structure(self):
        entry = error_entry(UpsertError("Failed to upsert batch", context={"phase": "CLUBS"}), batch=3, raw=object())

        assert set(entry) == {"message", "code", "timestamp", "details"}
        assert entry["message"] == "Failed to upsert batch"
        assert entry["code"] == "UPSERT_FAILED"
        assert entry["details"]["phase"] == "CLUBS"
        assert entry["details"]["batch"] == 3
        assert "raw" not in entry["details"]

        generic = error_entry(RuntimeError())
        assert generic["message"] == "RuntimeError"
        assert generic["code"] == "INTERNAL_ERROR"
