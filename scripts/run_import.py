"""
Script to run one import from the command line

Usage:
    python scripts/run_import.py FULL
    python scripts/run_import.py INCREMENTAL
    python scripts/run_import.py --cleanup-skipped
"""

import argparse
import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import build_engine, build_session_factory
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.cancellation import CancellationToken
from ingestion.orchestrator import build_orchestrator
from ingestion.skipped import SkippedEntitiesManager
from models.base import ImportType, RunStatus

setup_logging()
logger = logging.getLogger(__name__)


async def run_import(import_type: ImportType) -> int:
    """Run one import to a terminal state; Ctrl+C cancels at the next batch boundary"""

    engine = build_engine()
    session_factory = build_session_factory(engine)

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, token.cancel, "Import cancelled from the command line")
    loop.add_signal_handler(signal.SIGTERM, token.cancel, "Import cancelled by SIGTERM")

    try:
        orchestrator = build_orchestrator(session_factory, engine, import_type, token=token)
        summary = await orchestrator.run()
        logger.info(
            f"Import {summary.run_id} finished {summary.status.value}: "
            f"records={summary.records_processed}, progress={summary.progress}%, "
            f"validation_rate={summary.validation.get('validation_rate')}%"
        )
        if summary.error:
            logger.error(f"Last error: [{summary.error['code']}] {summary.error['message']}")
        return 0 if summary.status == RunStatus.COMPLETED else 1

    except ETLException as e:
        logger.error(f"Import not started: {e.message}", extra={"error_context": e.to_dict()})
        return 2
    finally:
        await engine.dispose()


async def cleanup_skipped() -> int:
    engine = build_engine()
    try:
        manager = SkippedEntitiesManager(build_session_factory(engine))
        await manager.cleanup_completed()
        return 0
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a gomafia.pro import")
    parser.add_argument(
        "type",
        nargs="?",
        default=ImportType.FULL.value,
        choices=[t.value for t in ImportType],
        help="Import type (default: FULL)",
    )
    parser.add_argument(
        "--cleanup-skipped",
        action="store_true",
        help="Delete completed skipped entities older than SKIPPED_RETENTION_DAYS and exit",
    )
    args = parser.parse_args()

    if args.cleanup_skipped:
        return asyncio.run(cleanup_skipped())
    return asyncio.run(run_import(ImportType(args.type)))


if __name__ == "__main__":
    sys.exit(main())
