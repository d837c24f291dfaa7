"""
Durable queue of notifications held back by quiet hours.

Rows live in ``deferred_notifications`` until their window opens. The
escalation scheduler leases due rows each tick and deletes each one only
after its replay finished; ``FOR UPDATE SKIP LOCKED`` lets several
workers drain the table without handing the same row to two of them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from src.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class DeferredNotification:
    """A dispatch to replay once ``due_at`` has passed."""

    alert_id: str
    escalation_level: int
    channels: list[str]
    due_at: datetime
    deferred_id: int | None = None
    created_at: datetime | None = field(default=None)


class DeferredNotificationQueue:
    """Postgres-backed deferral queue keyed by due time."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def defer(self, item: DeferredNotification) -> DeferredNotification:
        sql = """
            INSERT INTO deferred_notifications (alert_id, escalation_level, channels, due_at)
            VALUES ($1, $2, $3, $4)
            RETURNING *
        """
        row = await self._db.fetchrow(
            sql, item.alert_id, item.escalation_level, list(item.channels), item.due_at,
        )
        logger.info(
            "Deferred notification for alert %s level %d until %s",
            item.alert_id, item.escalation_level, item.due_at.isoformat(),
        )
        return _row_to_deferred(row)

    async def claim_due(
        self,
        now: datetime,
        limit: int = 100,
        lease_seconds: float = 300.0,
    ) -> list[DeferredNotification]:
        """Lease up to ``limit`` items due at ``now``.

        A leased row stays in the table with ``due_at`` pushed to the end
        of the lease, so it is handed out again if the worker dies before
        calling ``ack`` or ``retry``.
        """
        sql = """
            UPDATE deferred_notifications
            SET due_at = $3
            WHERE deferred_id IN (
                SELECT deferred_id FROM deferred_notifications
                WHERE due_at <= $1
                ORDER BY due_at
                LIMIT $2
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
        """
        lease_until = now + timedelta(seconds=lease_seconds)
        rows = await self._db.fetch(sql, now, limit, lease_until)
        return [_row_to_deferred(row) for row in rows]

    async def ack(self, item: DeferredNotification) -> None:
        """Remove a replayed item."""
        await self._db.execute(
            "DELETE FROM deferred_notifications WHERE deferred_id = $1", item.deferred_id,
        )

    async def retry(self, item: DeferredNotification, due_at: datetime) -> None:
        """Put a leased item back with a new due time."""
        await self._db.execute(
            "UPDATE deferred_notifications SET due_at = $2 WHERE deferred_id = $1",
            item.deferred_id,
            due_at,
        )
        logger.info(
            "Deferred notification %s for alert %s rescheduled to %s",
            item.deferred_id, item.alert_id, due_at.isoformat(),
        )

    async def pending_count(self) -> int:
        count = await self._db.fetchval("SELECT COUNT(*) FROM deferred_notifications")
        return count or 0


def _row_to_deferred(row: Any) -> DeferredNotification:
    return DeferredNotification(
        deferred_id=row["deferred_id"],
        alert_id=row["alert_id"],
        escalation_level=row["escalation_level"],
        channels=list(row["channels"]),
        due_at=row["due_at"],
        created_at=row.get("created_at"),
    )
