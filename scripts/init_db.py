"""
Create (or recreate) the import tables without running migrations

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --drop
"""

import argparse
import asyncio
import logging
import os
import sys

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import build_engine
from core.logging import setup_logging
# Importing the package registers every table on Base.metadata
from models import Base

setup_logging()
logger = logging.getLogger(__name__)


async def init_database(drop: bool = False) -> None:
    engine = build_engine()
    try:
        async with engine.begin() as conn:
            if drop:
                logger.warning("Dropping existing import tables")
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the import database tables")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first (destroys imported data)")
    asyncio.run(init_database(drop=parser.parse_args().drop))
