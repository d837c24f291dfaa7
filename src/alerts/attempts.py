"""Log of notification attempts, one row per try.

Each (alert, channel, recipient) chain numbers its attempts 1..N, and
``UNIQUE (alert_id, channel, recipient, attempt_number)`` lets only one
writer take a given number. The dispatcher claims the next number
*before* sending and fills in the outcome afterwards, so the ceiling
holds even when two processes run the same chain at once.
"""

from typing import Any

from src.alerts.schemas import NotificationAttempt
from src.storage.database import Database

PENDING_ERROR = "pending"


class NotificationAttemptRepository:
    """Claim, complete and query ``notification_attempts`` rows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def claim(self, attempt: NotificationAttempt) -> bool:
        """Insert ``attempt`` as pending; False if its number is already taken."""
        sql = """
            INSERT INTO notification_attempts (
                attempt_id, alert_id, channel, recipient, escalation_level,
                attempt_number, success, error, manual, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, FALSE, $7, $8, $9)
            ON CONFLICT (alert_id, channel, recipient, attempt_number) DO NOTHING
            RETURNING attempt_id
        """
        claimed = await self._db.fetchval(
            sql,
            attempt.attempt_id,
            attempt.alert_id,
            attempt.channel,
            attempt.recipient,
            attempt.escalation_level,
            attempt.attempt_number,
            PENDING_ERROR,
            attempt.manual,
            attempt.created_at,
        )
        return claimed is not None

    async def complete(self, attempt: NotificationAttempt) -> None:
        """Store the outcome of a claimed attempt."""
        await self._db.execute(
            "UPDATE notification_attempts SET success = $2, error = $3 WHERE attempt_id = $1",
            attempt.attempt_id,
            attempt.success,
            attempt.error,
        )

    async def count(self, alert_id: str, channel: str, recipient: str) -> int:
        sql = """
            SELECT COUNT(*) FROM notification_attempts
            WHERE alert_id = $1 AND channel = $2 AND recipient = $3
        """
        count = await self._db.fetchval(sql, alert_id, channel, recipient)
        return count or 0

    async def list_for_alert(self, alert_id: str) -> list[NotificationAttempt]:
        sql = """
            SELECT * FROM notification_attempts
            WHERE alert_id = $1
            ORDER BY created_at ASC, attempt_number ASC
        """
        rows = await self._db.fetch(sql, alert_id)
        return [_row_to_attempt(row) for row in rows]


def _row_to_attempt(row: Any) -> NotificationAttempt:
    return NotificationAttempt(
        attempt_id=row["attempt_id"],
        alert_id=row["alert_id"],
        channel=row["channel"],
        recipient=row["recipient"],
        escalation_level=row["escalation_level"],
        attempt_number=row["attempt_number"],
        success=row["success"],
        error=row.get("error"),
        manual=row.get("manual", False),
        created_at=row["created_at"],
    )
