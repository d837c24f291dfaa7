"""Read-only access to the sensors table."""

from typing import Any

from src.sensors.schemas import Sensor
from src.storage.database import Database


class SensorRepository:
    """Looks up sensors by id or company."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get_by_id(self, sensor_id: int) -> Sensor | None:
        row = await self._db.fetchrow(
            "SELECT * FROM sensors WHERE sensor_id = $1", sensor_id,
        )
        if row is None:
            return None
        return _row_to_sensor(row)

    async def list_for_company(self, company_id: int) -> list[Sensor]:
        rows = await self._db.fetch(
            "SELECT * FROM sensors WHERE company_id = $1 ORDER BY sensor_id",
            company_id,
        )
        return [_row_to_sensor(row) for row in rows]

    async def upsert(self, sensor: Sensor) -> Sensor:
        """Insert or update a sensor row.

        Sensors are provisioned by the inventory side; this exists for
        local setups and the ``simulate-reading`` command.
        """
        sql = """
            INSERT INTO sensors (sensor_id, company_id, name, sensor_type, location, active)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (sensor_id) DO UPDATE SET
                company_id = EXCLUDED.company_id,
                name = EXCLUDED.name,
                sensor_type = EXCLUDED.sensor_type,
                location = EXCLUDED.location,
                active = EXCLUDED.active
            RETURNING *
        """
        row = await self._db.fetchrow(
            sql,
            sensor.sensor_id,
            sensor.company_id,
            sensor.name,
            sensor.sensor_type,
            sensor.location,
            sensor.active,
        )
        return _row_to_sensor(row)


def _row_to_sensor(row: Any) -> Sensor:
    """Convert an asyncpg Record to a Sensor."""
    return Sensor(
        sensor_id=row["sensor_id"],
        company_id=row["company_id"],
        name=row["name"],
        sensor_type=row["sensor_type"],
        location=row.get("location"),
        active=row.get("active", True),
    )
