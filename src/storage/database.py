"""
PostgreSQL connection management for the alerting store.

Uses asyncpg with a shared pool. Repositories receive a ``Database`` and
use its fetch helpers; multi-statement work that must hold row locks
(alert transitions) goes through ``transaction()``, and the helpers
accept an explicit connection so they can run inside one.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import TracebackType
from typing import Any

import asyncpg

from src.config.settings import get_settings

logger = logging.getLogger(__name__)


class Database:
    """
    Async PostgreSQL connection manager.

    Usage:
        db = Database()
        await db.connect()

        async with db.transaction() as conn:
            row = await db.fetchrow("SELECT ... FOR UPDATE", key, conn=conn)
            await db.execute("UPDATE ...", key, conn=conn)

        await db.close()
    """

    def __init__(
        self,
        database_url: str | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
    ):
        settings = get_settings()

        self._database_url = database_url or str(settings.database_url)
        self._min_size = min_size or settings.db_pool_min_size
        self._max_size = max_size or settings.db_pool_max_size

        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create the connection pool with the configured size limits."""
        try:
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=60,
            )
            logger.info(
                "Database connected (pool: %d-%d)", self._min_size, self._max_size,
            )
        except Exception as e:
            logger.error("Failed to connect to database: %s", e)
            raise

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database connection closed")

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def pool(self) -> asyncpg.Pool:
        """Get connection pool, raising if not connected."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and open a transaction on it."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def _connection(
        self, conn: asyncpg.Connection | None,
    ) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
        else:
            async with self.acquire() as acquired:
                yield acquired

    async def execute(
        self, query: str, *args: Any, conn: asyncpg.Connection | None = None,
    ) -> str:
        """Execute a statement, returning the PostgreSQL status string."""
        async with self._connection(conn) as c:
            return await c.execute(query, *args)

    async def fetch(
        self, query: str, *args: Any, conn: asyncpg.Connection | None = None,
    ) -> list[asyncpg.Record]:
        async with self._connection(conn) as c:
            return await c.fetch(query, *args)

    async def fetchrow(
        self, query: str, *args: Any, conn: asyncpg.Connection | None = None,
    ) -> asyncpg.Record | None:
        async with self._connection(conn) as c:
            return await c.fetchrow(query, *args)

    async def fetchval(
        self, query: str, *args: Any, conn: asyncpg.Connection | None = None,
    ) -> Any:
        async with self._connection(conn) as c:
            return await c.fetchval(query, *args)

    async def ensure_schema(self) -> None:
        """Create the alerting tables and indexes if missing."""
        from src.storage.schema import SCHEMA_SQL

        async with self.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Database schema ensured")

    async def health_check(self) -> bool:
        """True if ``SELECT 1`` succeeds."""
        try:
            result = await self.fetchval("SELECT 1")
            return result == 1
        except Exception:
            return False


# Global database instance
_database: Database | None = None


async def get_database() -> Database:
    """
    Get global database instance.

    Creates and connects if not already connected.
    """
    global _database

    if _database is None:
        _database = Database()
        await _database.connect()

    return _database


async def close_database() -> None:
    """Close global database connection."""
    global _database

    if _database is not None:
        await _database.close()
        _database = None
