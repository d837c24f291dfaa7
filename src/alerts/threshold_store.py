"""Threshold persistence and the cached store read by the evaluator.

``ThresholdRepository`` is plain SQL over ``sensor_thresholds``.
``ThresholdStore`` adds validation against the sensor's declared type
and an in-process TTL cache that is invalidated on every upsert, so a
reading evaluated after an upsert returns never sees the old bounds from
this process. ``ThresholdCacheSync`` relays the invalidation to other
processes over Redis pub/sub; the short TTL covers a missed message.
"""

import asyncio
import json
import logging
import time
from typing import Any

from src.alerts.errors import ConfigurationInvalid, NotFound
from src.alerts.thresholds import ThresholdConfig, build_threshold
from src.sensors.repository import SensorRepository
from src.sensors.schemas import Sensor
from src.storage.database import Database

logger = logging.getLogger(__name__)

INVALIDATION_CHANNEL = "thresholds:invalidate"

_MISSING = object()


class _TTLCache:
    """Minimal TTL cache keyed by (sensor_id, metric_kind).

    Stores ``None`` for thresholds known to be absent so unconfigured
    sensors do not hit the database on every reading.
    """

    def __init__(self, ttl: float) -> None:
        self._ttl = ttl
        self._store: dict[tuple[int, str], tuple[Any, float]] = {}

    def get(self, key: tuple[int, str]) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return _MISSING
        value, expiry = entry
        if time.monotonic() > expiry:
            del self._store[key]
            return _MISSING
        return value

    def put(self, key: tuple[int, str], value: Any) -> None:
        if self._ttl > 0:
            self._store[key] = (value, time.monotonic() + self._ttl)

    def invalidate(self, key: tuple[int, str]) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()


class ThresholdRepository:
    """CRUD for the ``sensor_thresholds`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self, sensor_id: int, metric_kind: str) -> ThresholdConfig | None:
        row = await self._db.fetchrow(
            "SELECT * FROM sensor_thresholds WHERE sensor_id = $1 AND metric_kind = $2",
            sensor_id,
            metric_kind,
        )
        if row is None:
            return None
        return _row_to_threshold(row)

    async def list_for_sensor(self, sensor_id: int) -> list[ThresholdConfig]:
        rows = await self._db.fetch(
            "SELECT * FROM sensor_thresholds WHERE sensor_id = $1 ORDER BY metric_kind",
            sensor_id,
        )
        return [_row_to_threshold(row) for row in rows]

    async def upsert(self, config: ThresholdConfig) -> ThresholdConfig:
        """Insert or replace the threshold for (sensor_id, metric_kind)."""
        sql = """
            INSERT INTO sensor_thresholds (
                sensor_id, metric_kind, min_value, max_value,
                severity_default, alert_message, critical_message,
                verification_interval_minutes, enabled,
                notify_email, notify_sms, notify_realtime, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, NOW())
            ON CONFLICT (sensor_id, metric_kind) DO UPDATE SET
                min_value = EXCLUDED.min_value,
                max_value = EXCLUDED.max_value,
                severity_default = EXCLUDED.severity_default,
                alert_message = EXCLUDED.alert_message,
                critical_message = EXCLUDED.critical_message,
                verification_interval_minutes = EXCLUDED.verification_interval_minutes,
                enabled = EXCLUDED.enabled,
                notify_email = EXCLUDED.notify_email,
                notify_sms = EXCLUDED.notify_sms,
                notify_realtime = EXCLUDED.notify_realtime,
                updated_at = NOW()
            RETURNING *
        """
        row = await self._db.fetchrow(
            sql,
            config.sensor_id,
            config.metric_kind,
            config.min_value,
            config.max_value,
            config.severity_default,
            config.alert_message,
            config.critical_message,
            config.verification_interval_minutes,
            config.enabled,
            config.notify_email,
            config.notify_sms,
            config.notify_realtime,
        )
        return _row_to_threshold(row)


class ThresholdCacheSync:
    """Carries threshold invalidations between processes over Redis pub/sub.

    Every API worker and the escalation worker hold their own
    ``ThresholdStore`` cache. An upsert publishes the changed
    (sensor, metric) on ``thresholds:invalidate`` and each listener drops
    that entry. Without Redis only the TTL bounds staleness.
    """

    def __init__(self, store: "ThresholdStore", redis_client: Any) -> None:
        self._store = store
        self._redis = redis_client
        self._pubsub: Any | None = None
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(INVALIDATION_CHANNEL)
        self._running = True
        self._task = asyncio.create_task(self._listen(), name="threshold-cache-sync")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(INVALIDATION_CHANNEL)
                await self._pubsub.close()
            except Exception as e:
                logger.warning("Error closing threshold pub/sub: %s", e)
            self._pubsub = None

    async def publish(self, sensor_id: int, metric_kind: str) -> None:
        message = json.dumps({"sensor_id": sensor_id, "metric_kind": metric_kind})
        try:
            await self._redis.publish(INVALIDATION_CHANNEL, message)
        except Exception as e:
            logger.warning(
                "Failed to publish threshold invalidation for sensor %d: %s", sensor_id, e,
            )

    async def _listen(self) -> None:
        try:
            while self._running:
                try:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0,
                    )
                    if message is not None and message["type"] == "message":
                        self.handle_message(message["data"])
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Error reading threshold invalidation: %s", e)
                    await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            pass

    def handle_message(self, raw_data: str | bytes) -> None:
        try:
            if isinstance(raw_data, bytes):
                raw_data = raw_data.decode("utf-8")
            payload = json.loads(raw_data)
            sensor_id = int(payload["sensor_id"])
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid threshold invalidation message: %s", e)
            return
        self._store.invalidate(sensor_id, payload.get("metric_kind"))


class ThresholdStore:
    """Validated, cached access to thresholds and their sensors."""

    def __init__(
        self,
        threshold_repo: ThresholdRepository,
        sensor_repo: SensorRepository,
        cache_ttl: float = 60.0,
    ) -> None:
        self._thresholds = threshold_repo
        self._sensors = sensor_repo
        self._cache = _TTLCache(ttl=cache_ttl)
        self._sensor_cache = _TTLCache(ttl=cache_ttl)
        self._sync: ThresholdCacheSync | None = None

    async def start_sync(self, redis_client: Any) -> None:
        """Share invalidations with other processes; TTL-only if Redis fails."""
        sync = ThresholdCacheSync(self, redis_client)
        try:
            await sync.start()
        except Exception as e:
            logger.error("Threshold cache sync unavailable, relying on TTL: %s", e)
            return
        self._sync = sync

    async def stop_sync(self) -> None:
        if self._sync is not None:
            await self._sync.stop()
            self._sync = None

    async def get_sensor(self, sensor_id: int) -> Sensor | None:
        key = (sensor_id, "")
        cached = self._sensor_cache.get(key)
        if cached is not _MISSING:
            return cached
        sensor = await self._sensors.get_by_id(sensor_id)
        self._sensor_cache.put(key, sensor)
        return sensor

    async def get(self, sensor_id: int, metric_kind: str) -> ThresholdConfig | None:
        """Threshold for (sensor, metric), or None if none is configured."""
        key = (sensor_id, metric_kind)
        cached = self._cache.get(key)
        if cached is not _MISSING:
            return cached
        config = await self._thresholds.get(sensor_id, metric_kind)
        self._cache.put(key, config)
        return config

    async def list_for_sensor(self, sensor_id: int) -> list[ThresholdConfig]:
        if await self.get_sensor(sensor_id) is None:
            raise NotFound(f"Sensor {sensor_id} not found")
        return await self._thresholds.list_for_sensor(sensor_id)

    async def upsert(self, config: ThresholdConfig) -> ThresholdConfig:
        """Validate and persist a threshold.

        Nothing is written when validation fails.

        Raises:
            NotFound: If the sensor does not exist.
            ConfigurationInvalid: If min >= max, the metric kind is not
                allowed for the sensor type, or a field is out of range.
        """
        sensor = await self.get_sensor(config.sensor_id)
        if sensor is None:
            raise NotFound(f"Sensor {config.sensor_id} not found")
        if not sensor.allows(config.metric_kind):
            raise ConfigurationInvalid(
                f"Metric {config.metric_kind} is not valid for sensor type "
                f"{sensor.sensor_type}"
            )
        config.validate()

        stored = await self._thresholds.upsert(config)
        self._cache.invalidate((config.sensor_id, config.metric_kind))
        if self._sync is not None:
            await self._sync.publish(config.sensor_id, config.metric_kind)
        logger.info(
            "Threshold upserted: sensor=%d metric=%s bounds=[%s, %s]",
            stored.sensor_id, stored.metric_kind, stored.min_value, stored.max_value,
        )
        return stored

    def invalidate(self, sensor_id: int, metric_kind: str | None = None) -> None:
        if metric_kind is None:
            self._cache.clear()
            self._sensor_cache.invalidate((sensor_id, ""))
        else:
            self._cache.invalidate((sensor_id, metric_kind))


def _row_to_threshold(row: Any) -> ThresholdConfig:
    """Convert an asyncpg Record to the matching ThresholdConfig variant."""
    return build_threshold(
        row["metric_kind"],
        sensor_id=row["sensor_id"],
        min_value=row["min_value"],
        max_value=row["max_value"],
        severity_default=row["severity_default"],
        alert_message=row.get("alert_message"),
        critical_message=row.get("critical_message"),
        verification_interval_minutes=row["verification_interval_minutes"],
        enabled=row["enabled"],
        notify_email=row["notify_email"],
        notify_sms=row["notify_sms"],
        notify_realtime=row["notify_realtime"],
        updated_at=row.get("updated_at"),
    )
