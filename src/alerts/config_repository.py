"""Persistence for per-sensor alert configuration and company schedules.

Configurations are stored whole as JSONB; validation happens in
``AlertConfiguration.validate()`` before anything is written.
"""

import json
import logging
from typing import Any

from src.alerts.schemas import AlertConfiguration, ScheduleWindow
from src.storage.database import Database

logger = logging.getLogger(__name__)


class AlertConfigRepository:
    """CRUD for ``sensor_alert_configs`` and ``company_schedules``."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self, sensor_id: int) -> AlertConfiguration | None:
        row = await self._db.fetchrow(
            "SELECT * FROM sensor_alert_configs WHERE sensor_id = $1", sensor_id,
        )
        if row is None:
            return None
        return _row_to_config(row)

    async def upsert(self, config: AlertConfiguration) -> AlertConfiguration:
        payload = config.to_dict()
        payload.pop("updated_at", None)
        sql = """
            INSERT INTO sensor_alert_configs (sensor_id, config, updated_at)
            VALUES ($1, $2::jsonb, NOW())
            ON CONFLICT (sensor_id) DO UPDATE SET
                config = EXCLUDED.config,
                updated_at = NOW()
            RETURNING *
        """
        row = await self._db.fetchrow(sql, config.sensor_id, json.dumps(payload))
        return _row_to_config(row)

    async def get_company_schedule(self, company_id: int) -> ScheduleWindow | None:
        row = await self._db.fetchrow(
            "SELECT schedule FROM company_schedules WHERE company_id = $1",
            company_id,
        )
        if row is None:
            return None
        schedule = row["schedule"]
        if isinstance(schedule, str):
            schedule = json.loads(schedule)
        return ScheduleWindow.from_dict(schedule)

    async def upsert_company_schedule(
        self, company_id: int, window: ScheduleWindow,
    ) -> ScheduleWindow:
        sql = """
            INSERT INTO company_schedules (company_id, schedule, updated_at)
            VALUES ($1, $2::jsonb, NOW())
            ON CONFLICT (company_id) DO UPDATE SET
                schedule = EXCLUDED.schedule,
                updated_at = NOW()
        """
        await self._db.execute(sql, company_id, json.dumps(window.to_dict()))
        return window


def _row_to_config(row: Any) -> AlertConfiguration:
    """Convert an asyncpg Record to an AlertConfiguration."""
    data = row["config"]
    if isinstance(data, str):
        data = json.loads(data)
    data = dict(data)
    data["sensor_id"] = row["sensor_id"]
    data["updated_at"] = row.get("updated_at")
    return AlertConfiguration.from_dict(data)
