"""Alert service: the query, resolution and configuration surface.

Everything the HTTP layer does goes through here. Reads hit the
repositories directly; every state change is delegated to the lifecycle
manager and every send to the dispatcher, so the API never mutates an
alert on its own.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from src.alerts.attempts import NotificationAttemptRepository
from src.alerts.config import AlertConfig
from src.alerts.config_repository import AlertConfigRepository
from src.alerts.dispatcher import ChannelResult, NotificationDispatcher
from src.alerts.errors import AlreadyResolved, ConfigurationInvalid, NotFound
from src.alerts.lifecycle import AlertLifecycleManager
from src.alerts.repository import AlertRepository
from src.alerts.schemas import (
    VALID_CHANNELS,
    Alert,
    AlertConfiguration,
    NotificationAttempt,
    ScheduleWindow,
)
from src.alerts.threshold_store import ThresholdStore
from src.alerts.thresholds import ThresholdConfig, build_threshold
from src.sensors.schemas import Sensor

logger = logging.getLogger(__name__)


class AlertService:
    """Orchestrator behind the alert and configuration endpoints."""

    def __init__(
        self,
        alert_repo: AlertRepository,
        attempt_repo: NotificationAttemptRepository,
        config_repo: AlertConfigRepository,
        threshold_store: ThresholdStore,
        lifecycle: AlertLifecycleManager,
        dispatcher: NotificationDispatcher,
        config: AlertConfig | None = None,
        clock: Any | None = None,
    ) -> None:
        self._alerts = alert_repo
        self._attempts = attempt_repo
        self._config_repo = config_repo
        self._thresholds = threshold_store
        self._lifecycle = lifecycle
        self._dispatcher = dispatcher
        self._config = config or AlertConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _require_sensor(self, sensor_id: int) -> Sensor:
        sensor = await self._thresholds.get_sensor(sensor_id)
        if sensor is None:
            raise NotFound(f"Sensor {sensor_id} not found")
        return sensor

    # ── Alert queries ───────────────────────────────────────

    async def list_alerts(self, **filters: Any) -> list[Alert]:
        return await self._alerts.list_alerts(**filters)

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await self._alerts.get_by_id(alert_id)
        if alert is None:
            raise NotFound(f"Alert {alert_id} not found")
        return alert

    async def get_active(
        self,
        sensor_id: int | None = None,
        company_id: int | None = None,
    ) -> list[Alert]:
        if sensor_id is not None:
            await self._require_sensor(sensor_id)
        return await self._alerts.get_open(sensor_id=sensor_id, company_id=company_id)

    async def list_for_sensor(
        self, sensor_id: int, limit: int = 50, offset: int = 0,
    ) -> list[Alert]:
        await self._require_sensor(sensor_id)
        return await self._alerts.list_alerts(
            sensor_id=sensor_id, limit=limit, offset=offset,
        )

    async def get_history(self, sensor_id: int, days: int | None = None) -> dict[str, Any]:
        """Alerts of a sensor over the last ``days`` days, grouped by date.

        Returns:
            Dict with ``by_date`` (newest day first, each with its alerts),
            totals, and counts by state and severity.
        """
        await self._require_sensor(sensor_id)
        days = days or self._config.history_default_days
        since = self._clock() - timedelta(days=days)
        alerts = await self._alerts.get_history(sensor_id, since)

        grouped: dict[str, list[Alert]] = {}
        for alert in alerts:
            grouped.setdefault(alert.created_at.date().isoformat(), []).append(alert)

        return {
            "sensor_id": sensor_id,
            "days": days,
            "since": since.isoformat(),
            "total": len(alerts),
            "by_state": dict(Counter(a.state for a in alerts)),
            "by_severity": dict(Counter(a.severity for a in alerts)),
            "by_date": [
                {
                    "date": day,
                    "count": len(day_alerts),
                    "alerts": [a.to_dict() for a in day_alerts],
                }
                for day, day_alerts in sorted(grouped.items(), reverse=True)
            ],
        }

    async def get_stats(
        self,
        sensor_id: int | None = None,
        company_id: int | None = None,
        days: int | None = None,
    ) -> dict[str, Any]:
        """Alert counts by severity and state for a scope."""
        since = self._clock() - timedelta(days=days) if days else None
        by_severity = await self._alerts.count_by(
            "severity", sensor_id=sensor_id, company_id=company_id, since=since,
        )
        by_state = await self._alerts.count_by(
            "state", sensor_id=sensor_id, company_id=company_id, since=since,
        )
        total = sum(by_state.values())
        return {
            "total": total,
            "active": total - by_state.get("RESUELTA", 0),
            "by_severity": by_severity,
            "by_state": by_state,
        }

    async def get_attempts(self, alert_id: str) -> list[NotificationAttempt]:
        await self.get_alert(alert_id)
        return await self._attempts.list_for_alert(alert_id)

    # ── Alert mutations ─────────────────────────────────────

    async def resolve(self, alert_id: str, comment: str | None = None) -> Alert:
        return await self._lifecycle.resolve(alert_id, comment)

    async def escalate(self, alert_id: str) -> Alert:
        return await self._lifecycle.escalate(alert_id)

    async def resend(
        self, alert_id: str, channel: str,
    ) -> tuple[Alert, list[ChannelResult]]:
        """Manually resend the current level's notification on one channel.

        Raises:
            NotFound: Unknown alert.
            AlreadyResolved: Resolved alerts are never notified.
            ConfigurationInvalid: Unknown channel.
        """
        if channel not in VALID_CHANNELS:
            raise ConfigurationInvalid(
                f"Invalid channel {channel!r}. Must be one of: {sorted(VALID_CHANNELS)}"
            )
        alert = await self.get_alert(alert_id)
        if alert.is_resolved:
            raise AlreadyResolved(f"Alert {alert_id} is already resolved")

        results = await self._dispatcher.notify(
            alert, alert.escalation_level, channels=[channel], manual=True,
        )
        logger.info(
            "Manual resend of alert %s on %s: %d chains",
            alert_id, channel, len(results),
        )
        return await self.get_alert(alert_id), results

    async def send_test(
        self, channel: str, recipient: str, severity: str = "MEDIA",
    ) -> ChannelResult:
        return await self._dispatcher.send_test(channel, recipient, severity)

    # ── Thresholds ──────────────────────────────────────────

    async def get_thresholds(self, sensor_id: int) -> list[ThresholdConfig]:
        return await self._thresholds.list_for_sensor(sensor_id)

    async def upsert_threshold(
        self, sensor_id: int, metric_kind: str, fields: dict[str, Any],
    ) -> ThresholdConfig:
        threshold = build_threshold(metric_kind, sensor_id=sensor_id, **fields)
        return await self._thresholds.upsert(threshold)

    # ── Alert configuration ─────────────────────────────────

    async def get_alert_config(self, sensor_id: int) -> AlertConfiguration:
        """Stored configuration, or the defaults when none was saved."""
        await self._require_sensor(sensor_id)
        return await self._dispatcher.load_configuration(sensor_id)

    async def upsert_alert_config(
        self, sensor_id: int, data: dict[str, Any],
    ) -> AlertConfiguration:
        """Validate and store a sensor's alert configuration.

        Raises:
            NotFound: Unknown sensor.
            ConfigurationInvalid: Malformed or inconsistent configuration;
                nothing is stored.
        """
        await self._require_sensor(sensor_id)
        try:
            config = AlertConfiguration.from_dict({**data, "sensor_id": sensor_id})
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationInvalid(f"Malformed alert configuration: {e}")
        config.validate()
        stored = await self._config_repo.upsert(config)
        logger.info(
            "Alert configuration upserted: sensor=%d recipients=%d levels=%d",
            sensor_id, len(stored.recipients), len(stored.escalation.levels),
        )
        return stored

    async def get_company_schedule(self, company_id: int) -> ScheduleWindow | None:
        return await self._config_repo.get_company_schedule(company_id)

    async def upsert_company_schedule(
        self, company_id: int, data: dict[str, Any],
    ) -> ScheduleWindow:
        try:
            window = ScheduleWindow.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ConfigurationInvalid(f"Malformed schedule window: {e}")
        window.validate()
        return await self._config_repo.upsert_company_schedule(company_id, window)
