"""Alert repository for lifecycle persistence and queries.

Follows the project's asyncpg repository pattern. Lifecycle transitions
run inside ``transaction()`` and re-read the row with ``FOR UPDATE`` so
that two processes never advance the same alert concurrently; the
partial unique index on (sensor_id, metric_kind) rejects a second open
alert for a pair.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import asyncpg

from src.alerts.schemas import Alert
from src.storage.database import Database

logger = logging.getLogger(__name__)

_ALERT_COLUMNS = """
    alert_id, sensor_id, company_id, metric_kind, triggering_value, unit,
    severity, state, escalation_level, message, breach_count,
    created_at, updated_at, last_breach_at, level_entered_at,
    resolved_at, resolution_comment, recipients_notified, attempt_counters
"""


class AlertRepository:
    """Repository for ``sensor_alerts`` rows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self._db.transaction() as conn:
            yield conn

    # ── Writes ──────────────────────────────────────────────

    async def create(self, alert: Alert, conn: Any = None) -> Alert:
        """Insert a new open alert.

        Raises:
            asyncpg.UniqueViolationError: If another open alert exists
                for the same (sensor_id, metric_kind).
        """
        sql = f"""
            INSERT INTO sensor_alerts ({_ALERT_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                    $11, $12, $13, $14, $15, $16, $17, $18, $19)
            RETURNING *
        """
        row = await self._db.fetchrow(sql, *_alert_params(alert), conn=conn)
        return _row_to_alert(row)

    async def update(self, alert: Alert, conn: Any = None) -> Alert | None:
        """Persist the mutable fields of an alert.

        The stored row must not already be RESUELTA; resolved alerts are
        frozen. Returns None if no row was updated.
        """
        sql = """
            UPDATE sensor_alerts SET
                triggering_value = $2,
                unit = $3,
                severity = $4,
                state = $5,
                escalation_level = $6,
                message = $7,
                breach_count = $8,
                updated_at = $9,
                last_breach_at = $10,
                level_entered_at = $11,
                resolved_at = $12,
                resolution_comment = $13
            WHERE alert_id = $1 AND state <> 'RESUELTA'
            RETURNING *
        """
        row = await self._db.fetchrow(
            sql,
            alert.alert_id,
            alert.triggering_value,
            alert.unit,
            alert.severity,
            alert.state,
            alert.escalation_level,
            alert.message,
            alert.breach_count,
            alert.updated_at,
            alert.last_breach_at,
            alert.level_entered_at,
            alert.resolved_at,
            alert.resolution_comment,
            conn=conn,
        )
        if row is None:
            return None
        return _row_to_alert(row)

    async def record_delivery(
        self,
        alert_id: str,
        channel: str,
        recipient: str,
        success: bool,
    ) -> None:
        """Bump the channel attempt counter and track reached recipients.

        Single statement so concurrent dispatch tasks never lose updates.
        Resolved alerts are left untouched.
        """
        sql = """
            UPDATE sensor_alerts SET
                attempt_counters = jsonb_set(
                    attempt_counters,
                    ARRAY[$2::text],
                    to_jsonb(COALESCE((attempt_counters ->> $2)::int, 0) + 1)
                ),
                recipients_notified = CASE
                    WHEN $4 AND NOT ($3 = ANY(recipients_notified))
                    THEN array_append(recipients_notified, $3)
                    ELSE recipients_notified
                END
            WHERE alert_id = $1 AND state <> 'RESUELTA'
        """
        await self._db.execute(sql, alert_id, channel, recipient, success)

    # ── Reads ───────────────────────────────────────────────

    async def get_by_id(
        self,
        alert_id: str,
        *,
        for_update: bool = False,
        conn: Any = None,
    ) -> Alert | None:
        sql = "SELECT * FROM sensor_alerts WHERE alert_id = $1"
        if for_update:
            sql += " FOR UPDATE"
        row = await self._db.fetchrow(sql, alert_id, conn=conn)
        if row is None:
            return None
        return _row_to_alert(row)

    async def get_open_for_pair(
        self,
        sensor_id: int,
        metric_kind: str,
        *,
        for_update: bool = False,
        conn: Any = None,
    ) -> Alert | None:
        """The single non-RESUELTA alert for (sensor, metric), if any."""
        sql = """
            SELECT * FROM sensor_alerts
            WHERE sensor_id = $1 AND metric_kind = $2 AND state <> 'RESUELTA'
        """
        if for_update:
            sql += " FOR UPDATE"
        row = await self._db.fetchrow(sql, sensor_id, metric_kind, conn=conn)
        if row is None:
            return None
        return _row_to_alert(row)

    async def get_open(
        self,
        *,
        sensor_id: int | None = None,
        company_id: int | None = None,
    ) -> list[Alert]:
        """Active alerts for a sensor or company scope, most urgent first."""
        conditions = ["state <> 'RESUELTA'"]
        params: list[Any] = []
        param_idx = 1

        if sensor_id is not None:
            conditions.append(f"sensor_id = ${param_idx}")
            params.append(sensor_id)
            param_idx += 1

        if company_id is not None:
            conditions.append(f"company_id = ${param_idx}")
            params.append(company_id)
            param_idx += 1

        sql = f"""
            SELECT * FROM sensor_alerts
            WHERE {" AND ".join(conditions)}
            ORDER BY
                CASE severity
                    WHEN 'CRITICA' THEN 3 WHEN 'ALTA' THEN 2
                    WHEN 'MEDIA' THEN 1 ELSE 0
                END DESC,
                created_at DESC
        """
        rows = await self._db.fetch(sql, *params)
        return [_row_to_alert(row) for row in rows]

    async def get_escalation_candidates(
        self,
        limit: int = 500,
        after: tuple[datetime, str] | None = None,
    ) -> list[Alert]:
        """Alerts the scheduler may still advance, oldest level first.

        Keyset-paged on ``(level_entered_at, alert_id)``: pass the last
        row of a page as ``after`` to read the next one.
        """
        if after is None:
            sql = """
                SELECT * FROM sensor_alerts
                WHERE state IN ('ACTIVA', 'EN_ESCALAMIENTO')
                ORDER BY level_entered_at ASC, alert_id ASC
                LIMIT $1
            """
            rows = await self._db.fetch(sql, limit)
        else:
            sql = """
                SELECT * FROM sensor_alerts
                WHERE state IN ('ACTIVA', 'EN_ESCALAMIENTO')
                  AND (level_entered_at, alert_id) > ($2, $3)
                ORDER BY level_entered_at ASC, alert_id ASC
                LIMIT $1
            """
            rows = await self._db.fetch(sql, limit, after[0], after[1])
        return [_row_to_alert(row) for row in rows]

    async def list_alerts(
        self,
        *,
        severity: str | None = None,
        state: str | None = None,
        sensor_id: int | None = None,
        company_id: int | None = None,
        sensor_type: str | None = None,
        location: str | None = None,
        q: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Alert]:
        """List alerts with optional filtering.

        ``sensor_type`` and ``location`` filter through the sensors table;
        ``q`` is a case-insensitive match on the message or sensor name.

        Returns:
            Alerts ordered by created_at descending.
        """
        conditions: list[str] = []
        params: list[Any] = []
        param_idx = 1

        if severity is not None:
            conditions.append(f"a.severity = ${param_idx}")
            params.append(severity)
            param_idx += 1

        if state is not None:
            conditions.append(f"a.state = ${param_idx}")
            params.append(state)
            param_idx += 1

        if sensor_id is not None:
            conditions.append(f"a.sensor_id = ${param_idx}")
            params.append(sensor_id)
            param_idx += 1

        if company_id is not None:
            conditions.append(f"a.company_id = ${param_idx}")
            params.append(company_id)
            param_idx += 1

        if sensor_type is not None:
            conditions.append(f"s.sensor_type = ${param_idx}")
            params.append(sensor_type)
            param_idx += 1

        if location is not None:
            conditions.append(f"s.location ILIKE ${param_idx} ESCAPE '\\'")
            params.append(f"%{_escape_like(location)}%")
            param_idx += 1

        if q:
            conditions.append(
                f"(a.message ILIKE ${param_idx} ESCAPE '\\' "
                f"OR s.name ILIKE ${param_idx} ESCAPE '\\')"
            )
            params.append(f"%{_escape_like(q)}%")
            param_idx += 1

        if since is not None:
            conditions.append(f"a.created_at >= ${param_idx}")
            params.append(since)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        sql = f"""
            SELECT a.* FROM sensor_alerts a
            JOIN sensors s ON s.sensor_id = a.sensor_id
            {where_clause}
            ORDER BY a.created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        rows = await self._db.fetch(sql, *params)
        return [_row_to_alert(row) for row in rows]

    async def list_open_for_company(self, company_id: int) -> list[Alert]:
        """Non-resolved alerts of a company, by sensor and metric."""
        sql = """
            SELECT * FROM sensor_alerts
            WHERE company_id = $1 AND state <> 'RESUELTA'
            ORDER BY sensor_id, metric_kind
        """
        rows = await self._db.fetch(sql, company_id)
        return [_row_to_alert(row) for row in rows]

    async def get_history(self, sensor_id: int, since: datetime) -> list[Alert]:
        """All alerts of a sensor created since ``since``, newest first."""
        sql = """
            SELECT * FROM sensor_alerts
            WHERE sensor_id = $1 AND created_at >= $2
            ORDER BY created_at DESC
        """
        rows = await self._db.fetch(sql, sensor_id, since)
        return [_row_to_alert(row) for row in rows]

    async def count_by(
        self,
        column: str,
        *,
        sensor_id: int | None = None,
        company_id: int | None = None,
        since: datetime | None = None,
    ) -> dict[str, int]:
        """Alert counts grouped by ``severity`` or ``state``."""
        if column not in ("severity", "state"):
            raise ValueError(f"Cannot group alerts by {column!r}")

        conditions: list[str] = []
        params: list[Any] = []
        param_idx = 1

        if sensor_id is not None:
            conditions.append(f"sensor_id = ${param_idx}")
            params.append(sensor_id)
            param_idx += 1

        if company_id is not None:
            conditions.append(f"company_id = ${param_idx}")
            params.append(company_id)
            param_idx += 1

        if since is not None:
            conditions.append(f"created_at >= ${param_idx}")
            params.append(since)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        sql = f"""
            SELECT {column} AS key, COUNT(*) AS count
            FROM sensor_alerts
            {where_clause}
            GROUP BY {column}
        """
        rows = await self._db.fetch(sql, *params)
        return {row["key"]: row["count"] for row in rows}


def _escape_like(value: str) -> str:
    """Make ``value`` match literally inside an ILIKE pattern."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _alert_params(alert: Alert) -> tuple:
    return (
        alert.alert_id,
        alert.sensor_id,
        alert.company_id,
        alert.metric_kind,
        alert.triggering_value,
        alert.unit,
        alert.severity,
        alert.state,
        alert.escalation_level,
        alert.message,
        alert.breach_count,
        alert.created_at,
        alert.updated_at,
        alert.last_breach_at,
        alert.level_entered_at,
        alert.resolved_at,
        alert.resolution_comment,
        list(alert.recipients_notified),
        json.dumps(alert.attempt_counters),
    )


def _row_to_alert(row: Any) -> Alert:
    """Convert an asyncpg Record to an Alert."""
    attempt_counters = row.get("attempt_counters", {})
    if isinstance(attempt_counters, str):
        attempt_counters = json.loads(attempt_counters)

    return Alert(
        alert_id=row["alert_id"],
        sensor_id=row["sensor_id"],
        company_id=row.get("company_id"),
        metric_kind=row["metric_kind"],
        triggering_value=row["triggering_value"],
        unit=row.get("unit") or "",
        severity=row["severity"],
        state=row["state"],
        escalation_level=row["escalation_level"],
        message=row.get("message") or "",
        breach_count=row.get("breach_count", 1),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
        last_breach_at=row.get("last_breach_at"),
        level_entered_at=row.get("level_entered_at"),
        resolved_at=row.get("resolved_at"),
        resolution_comment=row.get("resolution_comment"),
        recipients_notified=list(row.get("recipients_notified") or []),
        attempt_counters=dict(attempt_counters or {}),
    )
