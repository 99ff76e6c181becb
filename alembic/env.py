"""
Alembic environment: migrations target the import tables on Base.metadata
and run through the same asyncpg engine settings as the service.
"""

import asyncio
from logging.config import fileConfig

from alembic import context

from core.config import settings
from core.database import build_engine
# Importing the package registers every table on Base.metadata
from models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

CONFIGURE_OPTIONS = {
    "target_metadata": target_metadata,
    "compare_type": True,
    "compare_server_default": True,
}


def run_migrations_offline() -> None:
    """Emit SQL for the configured DATABASE_URL without connecting"""
    context.configure(url=settings.DATABASE_URL, literal_binds=True, **CONFIGURE_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


def apply_migrations(connection) -> None:
    context.configure(connection=connection, **CONFIGURE_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = build_engine(config.get_main_option("sqlalchemy.url") or settings.DATABASE_URL)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(apply_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
