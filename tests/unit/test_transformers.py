"""
Unit tests for record validation, deduplication, progress math, pagination
state, role statistics and integrity reports
"""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from ingestion.checkpoint import calculate_phase_progress, calculate_overall_progress
from ingestion.deduplicator import (
    deduplicate_batch,
    find_potential_duplicates,
    similarity,
)
from ingestion.extractors.base import ExtractionResult
from ingestion.integrity import build_report, PASS, FAIL
from ingestion.pagination import PageScan, listing_route
from ingestion.statistics import build_role_stats
from ingestion.validators import validate_record
from models.base import EntityKind, ImportPhase, PlayerRole, Team, EventStatus
from schemas.checkpoint import CheckpointState
from schemas.records import PlayerRecord


class TestValidators:
    """Test record acceptance"""

    def test_valid_club(self):
        outcome = validate_record(EntityKind.CLUB, {"external_id": "1", "name": "Волга", "members_count": 9})

        assert outcome.is_valid
        assert outcome.record.name == "Волга"

    def test_missing_name_is_rejected_with_field_issue(self):
        outcome = validate_record(EntityKind.CLUB, {"external_id": "1", "name": None})

        assert not outcome.is_valid
        assert outcome.external_id == "1"
        assert outcome.issues[0].field == "name"
        assert "name" in outcome.summary()

    def test_negative_count_is_rejected(self):
        outcome = validate_record(EntityKind.CLUB, {"external_id": "1", "name": "Волга", "members_count": -3})

        assert not outcome.is_valid
        assert outcome.issues_as_dicts()[0]["field"] == "members_count"

    def test_unrated_player_defaults_elo(self):
        outcome = validate_record(EntityKind.PLAYER, {"external_id": "103", "name": "Дмитрий", "elo_rating": None})

        assert outcome.record.elo_rating == 1200

    def test_tournament_end_before_start(self):
        outcome = validate_record(EntityKind.TOURNAMENT, {
            "external_id": "7",
            "name": "Кубок",
            "start_date": datetime(2024, 2, 3),
            "end_date": datetime(2024, 2, 1),
            "status": EventStatus.COMPLETED,
        })

        assert not outcome.is_valid
        assert outcome.issues[0].field == "end_date"

    def test_role_must_match_team(self):
        outcome = validate_record(EntityKind.GAME, {
            "external_id": "9001",
            "participants": [{"player_external_id": "1", "role": PlayerRole.DON, "team": Team.RED}],
        })

        assert not outcome.is_valid
        assert "participants" in outcome.issues[0].field


class TestDeduplicator:
    """Test in-batch and fuzzy duplicate handling"""

    def test_latest_scrape_wins(self):
        older = PlayerRecord(external_id="1", name="Old", scraped_at=datetime(2024, 1, 1))
        newer = PlayerRecord(external_id="1", name="New", scraped_at=datetime(2024, 1, 2))
        other = PlayerRecord(external_id="2", name="Other")

        records, dropped = deduplicate_batch([newer, other, older])

        assert dropped == 1
        assert [r.external_id for r in records] == ["1", "2"]
        assert records[0].name == "New"

    def test_similarity(self):
        assert similarity("kitten", "sitting") == pytest.approx(4 / 7)
        assert similarity("", "abc") == 0.0
        assert similarity("", "  ") == 1.0
        assert similarity("Алексей", "алексей ") == 1.0

    def test_near_duplicates_reported(self):
        candidates = find_potential_duplicates([
            ("1", "Алексей Петров"),
            ("2", "Алексей Петроф"),
            ("3", "Мария"),
        ])

        assert len(candidates) == 1
        assert {candidates[0].first_id, candidates[0].second_id} == {"1", "2"}
        assert candidates[0].similarity >= 0.8

    def test_same_external_id_is_not_a_candidate(self):
        assert find_potential_duplicates([("1", "Алексей"), ("1", "Алексей")]) == []

    def test_threshold_is_respected(self):
        assert find_potential_duplicates([("1", "abcd"), ("2", "abxy")], threshold=0.8) == []
        assert len(find_potential_duplicates([("1", "abcd"), ("2", "abxy")], threshold=0.5)) == 1


class TestProgress:
    """Test checkpoint progress math"""

    def test_phase_progress(self):
        assert calculate_phase_progress(25, 50) == 50
        assert calculate_phase_progress(0, 0) == 0
        assert calculate_phase_progress(1, 3) == 33

    def test_overall_progress_mid_second_phase(self):
        assert calculate_overall_progress(1, 25, 50) == 21

    def test_overall_progress_bounds(self):
        assert calculate_overall_progress(0, 0, 0) == 0
        assert calculate_overall_progress(7, 0, 0) == 100
        assert calculate_overall_progress(6, 99, 10) == 100

    def test_checkpoint_rejects_index_past_total(self):
        with pytest.raises(PydanticValidationError):
            CheckpointState(phase=ImportPhase.PLAYERS, total_batches=5, last_batch_index=6)

    def test_open_ended_phase_allows_any_index(self):
        state = CheckpointState(phase=ImportPhase.CLUBS, total_batches=0, last_batch_index=12)

        assert state.last_batch_index == 12

    def test_checkpoint_document_roundtrip(self):
        state = CheckpointState(
            phase=ImportPhase.GAMES,
            total_batches=4,
            last_batch_index=2,
            processed_ids=["501", "502"],
            completed_phases=[ImportPhase.CLUBS],
        )

        restored = CheckpointState.model_validate(state.to_document())

        assert restored.phase == ImportPhase.GAMES
        assert restored.completed_phases == [ImportPhase.CLUBS]
        assert restored.processed_ids == ["501", "502"]


class TestPageScan:
    """Test listing page iteration state"""

    def test_stops_after_last_advertised_page(self):
        scan = PageScan()
        scan.record_page(1, ExtractionResult(records=[{"external_id": "1"}], total_pages=2, has_next_page=True))
        assert not scan.finished

        scan.record_page(2, ExtractionResult(records=[{"external_id": "2"}], total_pages=2, has_next_page=False))

        assert scan.finished
        assert scan.known_total == 2

    def test_stops_after_consecutive_empty_pages(self):
        scan = PageScan(max_consecutive_empty=3)
        for page in (1, 2, 3):
            scan.record_page(page, ExtractionResult())

        assert scan.finished
        assert scan.known_total == 0

    def test_skipped_page_counts_as_empty(self):
        scan = PageScan(max_consecutive_empty=2)
        scan.record_skipped(1)
        scan.record_page(2, ExtractionResult(records=[{"external_id": "1"}]))
        scan.record_skipped(3)

        assert scan.skipped_pages == [1, 3]
        assert scan.consecutive_empty == 1
        assert scan.next_page == 4

    def test_max_pages(self):
        scan = PageScan(next_page=5, max_pages=4)

        assert scan.finished

    def test_metadata_roundtrip_keeps_end_of_listing(self):
        scan = PageScan()
        scan.record_page(1, ExtractionResult(records=[{"external_id": "1"}], total_pages=1))

        restored = PageScan.from_metadata(scan.next_page, scan.to_metadata())

        assert restored.finished
        assert restored.has_next is False

    def test_listing_route(self):
        assert listing_route(EntityKind.CLUB, 3) == ("/rating", {"tab": "clubs", "page": 3})
        assert listing_route(EntityKind.TOURNAMENT, 1) == ("/tournaments", {"page": 1})


class TestRoleStatistics:
    """Test per-role aggregates"""

    def test_build_role_stats(self):
        now = datetime(2024, 3, 1)
        rows = [
            ("101", PlayerRole.SHERIFF, 10, 6, 1, 2.346, now - timedelta(days=1)),
            ("102", PlayerRole.DON, 4, 0, 0, None, None),
        ]

        stats = build_role_stats(rows, now=now)

        sheriff, don = stats
        assert sheriff["external_id"] == "101:SHERIFF"
        assert sheriff["losses"] == 3
        assert sheriff["win_rate"] == 60.0
        assert sheriff["average_performance"] == 2.35
        assert don["win_rate"] == 0.0
        assert don["losses"] == 4
        assert don["average_performance"] == 0.0

    def test_zero_games(self):
        stats = build_role_stats([("1", PlayerRole.MAFIA, 0, 0, 0, None, None)])

        assert stats[0]["win_rate"] == 0.0
        assert stats[0]["losses"] == 0


class TestIntegrityReport:
    """Test integrity report summarisation"""

    def test_all_checks_pass(self):
        report = build_report(7, [])

        assert report.status == PASS
        assert report.passed_checks == 7
        assert report.message == "All integrity checks passed successfully."

    def test_failed_checks(self):
        report = build_report(7, ["participation_player"], ["GameParticipation 9001:104 references non-existent Player 104"])

        assert report.status == FAIL
        assert report.failed_checks == 1
        assert report.passed_checks == 6
        assert report.to_dict()["failed"] == ["participation_player"]
        assert report.message == "1 of 7 integrity checks failed."
