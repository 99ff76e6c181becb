"""
Import pipeline components for the gomafia.pro statistics import.

Modules:
    rate_limiter: Minimum interval between source requests
    retry: Transient/permanent classification and exponential backoff
    source_client: httpx client mapping HTTP failures to pipeline exceptions
    lock: PostgreSQL advisory lock (one running import across processes)
    checkpoint: Versioned, resumable pipeline position and progress math
    cancellation: Cooperative cancellation token
    pagination, phases: Source routes, page iteration and per-phase fetching
    validators, deduplicator: Record acceptance and in-batch deduplication
    store: Per-batch transactions (upserts + quarantine + checkpoint)
    orchestrator: The seven-phase import run
    run_log, status, skipped: Run history, live status, quarantined records
    integrity, statistics: Post-import audit and role aggregates
    retry_service: Re-processing of skipped entities
    registry, scheduler: Run handles for the API and the interval trigger

Subpackages:
    extractors: One HTML page extractor per EntityKind
    loaders: Idempotent PostgreSQL upserts keyed by external_id

Phases (executed in order, each resumable at batch granularity):

    CLUBS -> PLAYERS -> PLAYER_YEAR_STATS -> TOURNAMENTS ->
    PLAYER_TOURNAMENT_HISTORY -> GAMES -> STATISTICS

Usage:
    from ingestion.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(session_factory, engine, ImportType.FULL)
    summary = await orchestrator.run()

    print(f"{summary.status.value}: {summary.records_processed} records")

Error Handling:
    All components raise exceptions from core.exceptions. Record-level
    failures are quarantined to Skipped Entities; run-level failures end
    the run FAILED with a structured error in the run log.
"""

__all__ = [
    "ImportOrchestrator",
    "ImportRegistry",
    "ImportScheduler",
    "CheckpointManager",
    "PostgresLoader",
]

from ingestion.checkpoint import CheckpointManager
from ingestion.loaders import PostgresLoader
from ingestion.orchestrator import ImportOrchestrator
from ingestion.registry import ImportRegistry
from ingestion.scheduler import ImportScheduler
