"""Storage layer: asyncpg pool wrapper and the alerting schema."""

from src.storage.database import Database, close_database, get_database
from src.storage.schema import SCHEMA_SQL

__all__ = ["Database", "SCHEMA_SQL", "close_database", "get_database"]
