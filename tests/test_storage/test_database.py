"""Tests for the asyncpg Database wrapper."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.storage.database import Database
from src.storage.schema import SCHEMA_SQL


def _mock_pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.close = AsyncMock()
    return pool


def _mock_conn():
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=1)
    conn.transaction.return_value.__aenter__.return_value = None
    return conn


@pytest.fixture
def conn():
    return _mock_conn()


async def _connected(conn) -> Database:
    database = Database(database_url="postgresql://localhost/test", min_size=1, max_size=2)
    with patch(
        "src.storage.database.asyncpg.create_pool",
        AsyncMock(return_value=_mock_pool(conn)),
    ):
        await database.connect()
    return database


class TestDatabase:
    def test_pool_requires_connect(self):
        with pytest.raises(RuntimeError, match="not connected"):
            _ = Database(database_url="postgresql://localhost/test").pool

    @pytest.mark.asyncio
    async def test_connect_uses_pool_limits(self):
        create_pool = AsyncMock(return_value=_mock_pool(_mock_conn()))
        database = Database(database_url="postgresql://localhost/test", min_size=2, max_size=7)

        with patch("src.storage.database.asyncpg.create_pool", create_pool):
            await database.connect()

        kwargs = create_pool.call_args.kwargs
        assert kwargs["min_size"] == 2
        assert kwargs["max_size"] == 7
        await database.close()

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self):
        database = Database(database_url="postgresql://localhost/test")
        with patch(
            "src.storage.database.asyncpg.create_pool",
            AsyncMock(side_effect=OSError("refused")),
        ):
            with pytest.raises(OSError):
                await database.connect()

    @pytest.mark.asyncio
    async def test_helpers_use_pool(self, conn):
        db = await _connected(conn)
        assert await db.execute("UPDATE alerts SET state = $1", "RESUELTA") == "UPDATE 1"
        conn.execute.assert_awaited_once_with("UPDATE alerts SET state = $1", "RESUELTA")

    @pytest.mark.asyncio
    async def test_explicit_connection_bypasses_pool(self, conn):
        db = await _connected(conn)
        other = _mock_conn()
        other.fetchrow = AsyncMock(return_value={"alert_id": "a1"})

        row = await db.fetchrow("SELECT * FROM alerts WHERE alert_id = $1", "a1", conn=other)

        assert row == {"alert_id": "a1"}
        conn.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_transaction_yields_connection(self, conn):
        db = await _connected(conn)
        async with db.transaction() as tx:
            assert tx is conn
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_ensure_schema(self, conn):
        db = await _connected(conn)
        await db.ensure_schema()
        conn.execute.assert_awaited_once_with(SCHEMA_SQL)

    @pytest.mark.asyncio
    async def test_health_check(self, conn):
        db = await _connected(conn)
        assert await db.health_check() is True
        conn.fetchval.side_effect = ConnectionError("gone")
        assert await db.health_check() is False


class TestSchema:
    def test_declares_alerting_tables(self):
        for table in (
            "sensors",
            "sensor_thresholds",
            "sensor_alerts",
            "notification_attempts",
            "sensor_alert_configs",
            "company_schedules",
            "deferred_notifications",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in SCHEMA_SQL

    def test_one_open_alert_per_pair(self):
        assert "uq_sensor_alerts_open_pair" in SCHEMA_SQL
        assert "WHERE state <> 'RESUELTA'" in SCHEMA_SQL

    def test_one_attempt_per_chain_slot(self):
        assert "CONSTRAINT uq_notification_attempts_slot" in SCHEMA_SQL
        assert "UNIQUE (alert_id, channel, recipient, attempt_number)" in SCHEMA_SQL
