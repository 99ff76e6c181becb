"""
Database loaders with idempotent upsert operations
"""

from ingestion.loaders.postgres_loader import PostgresLoader, LoadResult, ENTITY_MODELS

__all__ = ["PostgresLoader", "LoadResult", "ENTITY_MODELS"]
