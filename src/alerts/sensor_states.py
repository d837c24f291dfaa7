"""Periodic sensor-state snapshots for WebSocket dashboards.

``SensorStateTracker`` watches the ``sensor-reading`` events the
broadcaster delivers and keeps the latest reading of every (sensor,
metric). With Redis every API worker receives every reading, so each
tracker sees the whole fleet.

``SensorStatePublisher`` sends a ``sensor-states`` event every few
seconds to each ``company:<id>`` topic that has clients in this process:
the company's sensors, their open alerts and their latest readings.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

from src.alerts.broadcaster import AlertBroadcaster, company_topic
from src.alerts.repository import AlertRepository
from src.sensors.repository import SensorRepository

logger = logging.getLogger(__name__)


class SensorStateTracker:
    """Latest reading per (sensor, metric), fed by broadcast payloads."""

    def __init__(self) -> None:
        self._latest: dict[int, dict[str, dict[str, Any]]] = {}

    def observe(self, payload: dict[str, Any]) -> None:
        if payload.get("type") != "sensor-reading":
            return
        data = payload.get("data") or {}
        sensor_id = data.get("sensor_id")
        metric_kind = data.get("metric_kind")
        if sensor_id is None or not metric_kind:
            return
        self._latest.setdefault(int(sensor_id), {})[metric_kind] = {
            "value": data.get("value"),
            "unit": data.get("unit"),
            "classification": data.get("classification"),
            "severity": data.get("severity"),
            "timestamp": data.get("timestamp"),
        }

    def latest(self, sensor_id: int) -> dict[str, dict[str, Any]]:
        return dict(self._latest.get(sensor_id, {}))


class SensorStatePublisher:
    """
    Pushes ``sensor-states`` snapshots to subscribed companies.

    Usage:
        publisher = SensorStatePublisher(broadcaster, sensor_repo, alert_repo)
        await publisher.start()
        ...
        await publisher.stop()
    """

    def __init__(
        self,
        broadcaster: AlertBroadcaster,
        sensor_repo: SensorRepository,
        alert_repo: AlertRepository,
        interval_seconds: float = 30.0,
        tracker: SensorStateTracker | None = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._sensors = sensor_repo
        self._alerts = alert_repo
        self._interval = interval_seconds
        self.tracker = tracker or SensorStateTracker()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._task is not None:
            return
        self._broadcaster.add_observer(self.tracker.observe)
        self._running = True
        self._task = asyncio.create_task(self._run(), name="sensor-state-publisher")
        logger.info("SensorStatePublisher started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self._interval)
                try:
                    await self.publish_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Sensor state snapshot failed: %s", e)
        except asyncio.CancelledError:
            pass

    async def publish_once(self) -> int:
        """Send one snapshot per subscribed company; returns how many were sent."""
        sent = 0
        for company_id in self._broadcaster.subscribed_companies():
            snapshot = await self.snapshot(company_id)
            await self._broadcaster.deliver_local(
                "sensor-states", snapshot, [company_topic(company_id)],
            )
            sent += 1
        return sent

    async def snapshot(self, company_id: int) -> dict[str, Any]:
        sensors = await self._sensors.list_for_company(company_id)
        open_alerts = await self._alerts.list_open_for_company(company_id)

        alerts_by_sensor: dict[int, list[dict[str, Any]]] = defaultdict(list)
        for alert in open_alerts:
            alerts_by_sensor[alert.sensor_id].append({
                "alert_id": alert.alert_id,
                "metric_kind": alert.metric_kind,
                "severity": alert.severity,
                "state": alert.state,
                "escalation_level": alert.escalation_level,
            })

        states = []
        for sensor in sensors:
            alerts = alerts_by_sensor.get(sensor.sensor_id, [])
            states.append({
                **sensor.to_dict(),
                "status": "ALERTA" if alerts else "NORMAL",
                "open_alerts": alerts,
                "last_readings": self.tracker.latest(sensor.sensor_id),
            })

        in_alert = sum(1 for s in states if s["status"] == "ALERTA")
        return {
            "company_id": company_id,
            "sensors": states,
            "total": len(states),
            "in_alert": in_alert,
            "normal": len(states) - in_alert,
        }
