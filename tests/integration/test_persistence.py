"""
PostgreSQL-backed tests for locks, checkpoints, run logs, skipped entities,
upserts and integrity checks
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, func

from ingestion.checkpoint import CheckpointManager
from ingestion.integrity import IntegrityChecker
from ingestion.loaders.postgres_loader import PostgresLoader
from ingestion.lock import AdvisoryLockManager
from ingestion.run_log import RunLogManager, RunLogFilters
from ingestion.skipped import SkippedEntitiesManager
from ingestion.statistics import compute_role_stats
from ingestion.store import ImportStore, BatchCommit, Rejection
from models.base import (
    EntityKind, ImportPhase, ImportType, RunStatus, SkippedStatus, PlayerRole, Team, WinnerTeam,
)
from models.checkpoint import ImportCheckpoint, CHECKPOINT_KEY
from models.club import Club
from models.skipped_entity import SkippedEntity
from models.statistics import PlayerRoleStats
from schemas.checkpoint import CheckpointState, CheckpointReadStatus
from schemas.records import ClubRecord, PlayerRecord, PlayerYearStatsRecord, GameRecord, ParticipationRecord


# ============================================================================
# Advisory lock
# ============================================================================

@pytest.mark.asyncio
async def test_advisory_lock_is_exclusive(test_engine):
    key = 990_001
    first = AdvisoryLockManager(test_engine, lock_key=key)
    second = AdvisoryLockManager(test_engine, lock_key=key)

    assert await first.acquire_lock() is True
    try:
        assert await second.acquire_lock() is False
        assert await second.is_locked_elsewhere() is True
    finally:
        await first.release_lock()

    assert await second.acquire_lock() is True
    await second.release_lock()
    assert not second.is_held


# ============================================================================
# Checkpoints
# ============================================================================

@pytest.mark.asyncio
async def test_checkpoint_roundtrip(session_factory):
    manager = CheckpointManager(session_factory)
    state = CheckpointState(
        phase=ImportPhase.PLAYERS,
        total_batches=4,
        last_batch_index=2,
        processed_ids=["101", "102"],
        completed_phases=[ImportPhase.CLUBS],
    )

    progress = await manager.save_checkpoint(state)
    read = await manager.read_checkpoint()

    assert progress == 50
    assert read.status == CheckpointReadStatus.FOUND
    assert read.state.processed_ids == ["101", "102"]
    assert read.state.completed_phases == [ImportPhase.CLUBS]


@pytest.mark.asyncio
async def test_missing_and_corrupt_checkpoints_are_distinguished(session_factory, db_session):
    manager = CheckpointManager(session_factory)

    assert (await manager.read_checkpoint()).status == CheckpointReadStatus.NONE

    db_session.add(ImportCheckpoint(id=CHECKPOINT_KEY, version=1, state={"phase": "NOT_A_PHASE"}))
    await db_session.commit()

    read = await manager.read_checkpoint()
    assert read.status == CheckpointReadStatus.CORRUPT
    assert await manager.load_checkpoint() is None
    assert manager.last_read_status == CheckpointReadStatus.CORRUPT


@pytest.mark.asyncio
async def test_unknown_checkpoint_version_is_corrupt(session_factory, db_session):
    db_session.add(ImportCheckpoint(
        id=CHECKPOINT_KEY, version=99, state=CheckpointState(phase=ImportPhase.CLUBS).to_document(),
    ))
    await db_session.commit()

    read = await CheckpointManager(session_factory).read_checkpoint()

    assert read.status == CheckpointReadStatus.CORRUPT
    assert "version 99" in read.error


@pytest.mark.asyncio
async def test_pause_flag_survives_batch_writes(session_factory):
    manager = CheckpointManager(session_factory)
    assert await manager.set_paused(True) is None

    state = CheckpointState(phase=ImportPhase.GAMES, total_batches=3, last_batch_index=1)
    await manager.save_checkpoint(state)
    paused = await manager.set_paused(True)
    assert paused.is_paused is True

    state.last_batch_index = 2
    await manager.save_checkpoint(state, preserve_pause=True)

    assert await manager.is_paused() is True
    assert (await manager.load_checkpoint()).last_batch_index == 2

    await manager.set_paused(False)
    assert await manager.is_paused() is False


@pytest.mark.asyncio
async def test_clear_checkpoint(session_factory):
    manager = CheckpointManager(session_factory)
    await manager.save_checkpoint(CheckpointState(phase=ImportPhase.CLUBS))

    await manager.clear_checkpoint()
    await manager.clear_checkpoint()

    assert (await manager.read_checkpoint()).status == CheckpointReadStatus.NONE


# ============================================================================
# Run logs
# ============================================================================

@pytest.mark.asyncio
async def test_run_log_lifecycle(session_factory):
    run_logs = RunLogManager(session_factory)
    log = await run_logs.create(ImportType.FULL)

    assert (await run_logs.find_running()).run_id == log.run_id

    await run_logs.touch(log.run_id, records_processed=12)
    await run_logs.append_error(log.run_id, {"message": "row rejected", "code": "VALIDATION_FAILED"})
    finished = await run_logs.finish(
        log.run_id,
        RunStatus.COMPLETED,
        records_processed=15,
        errors=[{"message": "second", "code": "RESOURCE_NOT_FOUND"}],
        metadata={"validation": {"validation_rate": 100.0}},
    )

    assert finished is True
    stored = await run_logs.get(log.run_id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.records_processed == 15
    assert [e["code"] for e in stored.errors] == ["VALIDATION_FAILED", "RESOURCE_NOT_FOUND"]
    assert stored.end_time >= stored.start_time
    assert stored.run_metadata["validation"]["validation_rate"] == 100.0
    assert await run_logs.find_running() is None


@pytest.mark.asyncio
async def test_finish_never_overwrites_terminal_status(session_factory):
    run_logs = RunLogManager(session_factory)
    log = await run_logs.create(ImportType.INCREMENTAL)
    await run_logs.finish(log.run_id, RunStatus.CANCELLED)

    assert await run_logs.finish(log.run_id, RunStatus.COMPLETED) is False
    assert await run_logs.status_of(log.run_id) == RunStatus.CANCELLED

    with pytest.raises(ValueError):
        await run_logs.finish(log.run_id, RunStatus.RUNNING)


@pytest.mark.asyncio
async def test_list_logs_filters_and_pages(session_factory):
    run_logs = RunLogManager(session_factory)
    for _ in range(3):
        log = await run_logs.create(ImportType.FULL)
        await run_logs.finish(log.run_id, RunStatus.COMPLETED)
    failed = await run_logs.create(ImportType.INCREMENTAL)
    await run_logs.finish(failed.run_id, RunStatus.FAILED)

    logs, total = await run_logs.list_logs(page=1, page_size=2)
    assert total == 4
    assert len(logs) == 2
    assert logs[0].start_time >= logs[1].start_time

    logs, total = await run_logs.list_logs(filters=RunLogFilters(status=RunStatus.FAILED))
    assert total == 1
    assert logs[0].run_id == failed.run_id

    _, total = await run_logs.list_logs(filters=RunLogFilters(date_from=datetime.utcnow() + timedelta(days=1)))
    assert total == 0


# ============================================================================
# Skipped entities
# ============================================================================

@pytest.mark.asyncio
async def test_skipped_entity_workflow(session_factory):
    skipped = SkippedEntitiesManager(session_factory)
    row = await skipped.record(
        phase=ImportPhase.PLAYER_YEAR_STATS,
        entity_type=EntityKind.PLAYER_YEAR_STATS,
        error_code="VALIDATION_FAILED",
        error_message="total_games: Input should be greater than or equal to 0",
        entity_id="101:2024",
        details={"issues": [{"field": "total_games", "constraint": "greater_than_equal"}]},
    )
    await skipped.record(
        phase=ImportPhase.CLUBS,
        entity_type=EntityKind.CLUB,
        error_code="RESOURCE_NOT_FOUND",
        error_message="Resource not found",
        page_number=4,
    )

    assert [r.entity_id for r in await skipped.list_by_entity("101")] == ["101:2024"]
    assert [r.page_number for r in await skipped.list_by_pages(ImportPhase.CLUBS, [4, 5])] == [4]

    await skipped.mark_retrying(row.id)
    retried = await skipped.get(row.id)
    assert retried.status == SkippedStatus.RETRYING
    assert retried.retry_count == 1

    await skipped.mark_completed(row.id)
    summary = await skipped.summary()
    assert summary["PLAYER_YEAR_STATS"]["completed"] == 1
    assert summary["CLUBS"]["pending"] == 1

    removed = await skipped.cleanup_completed(older_than_days=0)
    assert removed == 1
    remaining = await skipped.list_by_phase()
    assert [r.phase for r in remaining] == [ImportPhase.CLUBS]


# ============================================================================
# Store and loader
# ============================================================================

@pytest.mark.asyncio
async def test_batch_commit_is_idempotent(session_factory, db_session):
    checkpoints = CheckpointManager(session_factory)
    run_logs = RunLogManager(session_factory)
    store = ImportStore(session_factory, checkpoints, run_logs, SkippedEntitiesManager(session_factory))
    log = await run_logs.create(ImportType.FULL)
    clubs = [
        ClubRecord(external_id="1", name="Красная Площадь", members_count=24),
        ClubRecord(external_id="2", name="Невский Дон"),
    ]

    def batch(index):
        return BatchCommit(
            phase=ImportPhase.CLUBS,
            kind=EntityKind.CLUB,
            state=CheckpointState(phase=ImportPhase.CLUBS, last_batch_index=index, run_id=str(log.run_id)),
            run_id=log.run_id,
            records=clubs,
            rejections=[Rejection(EntityKind.CLUB, "VALIDATION_FAILED", "name: missing", entity_id="3", page_number=1)],
            records_processed=2,
        )

    first = await store.commit_batch(batch(1))
    second = await store.commit_batch(batch(1))

    assert first.inserted == 2
    assert second.unchanged == 2
    assert await db_session.scalar(select(func.count(Club.id))) == 2
    assert await db_session.scalar(select(func.count(SkippedEntity.id))) == 2
    assert (await checkpoints.load_checkpoint()).last_batch_index == 1
    assert (await run_logs.get(log.run_id)).records_processed == 2


@pytest.mark.asyncio
async def test_incremental_selection_returns_stale_entities(session_factory, db_session):
    store = ImportStore(
        session_factory,
        CheckpointManager(session_factory),
        RunLogManager(session_factory),
        SkippedEntitiesManager(session_factory),
    )
    selected_at = datetime.utcnow() - timedelta(minutes=1)
    loader = PostgresLoader(db_session)
    await loader.load(EntityKind.PLAYER, [
        PlayerRecord(external_id="101", name="Алексей"),
        PlayerRecord(external_id="102", name="Мария"),
    ])
    await loader.load(EntityKind.PLAYER_YEAR_STATS, [
        PlayerYearStatsRecord(external_id="101:2024", player_external_id="101", year=2024, total_games=10),
    ])
    await db_session.commit()
    stale_before = datetime.utcnow() - timedelta(hours=24)

    assert await store.entity_ids(ImportPhase.PLAYER_YEAR_STATS) == ["101", "102"]
    assert await store.entity_ids(ImportPhase.PLAYER_YEAR_STATS, stale_before=stale_before) == ["102"]
    # Rows refreshed after selection still count as stale for that selection
    assert await store.entity_ids(
        ImportPhase.PLAYER_YEAR_STATS, stale_before=stale_before, selected_at=selected_at
    ) == ["101", "102"]


async def load_games(session, games):
    await PostgresLoader(session).load(EntityKind.GAME, games)
    await session.commit()


@pytest.mark.asyncio
async def test_role_statistics(db_session):
    await load_games(db_session, [
        GameRecord(external_id="g1", winner_team=WinnerTeam.RED, participants=[
            ParticipationRecord(player_external_id="101", role=PlayerRole.SHERIFF, team=Team.RED,
                                is_winner=True, performance_score=3),
        ]),
        GameRecord(external_id="g2", winner_team=WinnerTeam.DRAW, participants=[
            ParticipationRecord(player_external_id="101", role=PlayerRole.SHERIFF, team=Team.RED, performance_score=1),
        ]),
        GameRecord(external_id="g3", winner_team=WinnerTeam.BLACK, participants=[
            ParticipationRecord(player_external_id="101", role=PlayerRole.SHERIFF, team=Team.RED),
        ]),
    ])

    written = await compute_role_stats(db_session, ["101"])
    await db_session.commit()

    assert written == 1
    stats = (await db_session.execute(select(PlayerRoleStats))).scalar_one()
    assert stats.external_id == "101:SHERIFF"
    assert stats.games_played == 3
    assert stats.wins == 1
    assert stats.losses == 1
    assert stats.win_rate == 33.33
    assert stats.average_performance == 2.0


# ============================================================================
# Integrity
# ============================================================================

@pytest.mark.asyncio
async def test_integrity_passes_on_empty_database(session_factory):
    report = await IntegrityChecker(session_factory).check_all()

    assert report.status == "PASS"
    assert report.total_checks == 7
    assert report.failed_checks == 0


@pytest.mark.asyncio
async def test_integrity_reports_dangling_references(session_factory, db_session):
    await PostgresLoader(db_session).load(EntityKind.PLAYER, [PlayerRecord(external_id="101", name="Алексей")])
    await load_games(db_session, [
        GameRecord(external_id="g1", tournament_external_id="999", participants=[
            ParticipationRecord(player_external_id="101", role=PlayerRole.DON, team=Team.BLACK),
            ParticipationRecord(player_external_id="404", role=PlayerRole.MAFIA, team=Team.BLACK),
        ]),
        GameRecord(external_id="g2"),
    ])

    report = await IntegrityChecker(session_factory).check_all()

    assert report.status == "FAIL"
    assert set(report.failed) == {"participation_player", "game_tournament", "games_without_participations"}
    assert "GameParticipation g1:404 references non-existent Player 404" in report.issues
    assert "Game g2 has no participations" in report.issues
    assert report.passed_checks == 4
