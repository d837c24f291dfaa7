"""Quiet-hours evaluation.

The window functions are pure so they can be checked against any clock.
``ScheduleFilter`` resolves which window applies to an alert: the
sensor's own override when its configuration has one, otherwise the
company window. CRITICA alerts are never deferred.
"""

import logging
from datetime import date, datetime, timedelta, timezone

from src.alerts.config_repository import AlertConfigRepository
from src.alerts.schemas import AlertConfiguration, ScheduleWindow

logger = logging.getLogger(__name__)


def _weekday(d: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return (d.weekday() + 1) % 7


def is_within_window(window: ScheduleWindow | None, now: datetime) -> bool:
    """True if notifications may be sent at ``now`` under ``window``.

    A missing or inactive window never restricts delivery. Overnight
    windows (end before start) belong to the day on which they start.
    """
    if window is None or not window.active:
        return True

    local = now.astimezone(window.tzinfo)
    current = local.time()
    start, end = window.start_time, window.end_time
    today = _weekday(local.date())

    if start < end:
        return today in window.days and start <= current < end

    yesterday = _weekday(local.date() - timedelta(days=1))
    if today in window.days and current >= start:
        return True
    return yesterday in window.days and current < end


def next_window_open(window: ScheduleWindow | None, now: datetime) -> datetime:
    """Earliest instant at or after ``now`` that falls inside ``window``."""
    if is_within_window(window, now):
        return now

    tz = window.tzinfo
    local = now.astimezone(tz)
    for offset in range(8):
        day = local.date() + timedelta(days=offset)
        if _weekday(day) not in window.days:
            continue
        candidate = datetime.combine(day, window.start_time, tzinfo=tz)
        if candidate > local:
            return candidate.astimezone(timezone.utc)

    # Unreachable for a validated window (days is non-empty)
    return now


def deferral_until(
    severity: str,
    window: ScheduleWindow | None,
    now: datetime,
) -> datetime | None:
    """When a dispatch outside quiet hours may run, or None to send now."""
    if severity == "CRITICA":
        return None
    if is_within_window(window, now):
        return None
    return next_window_open(window, now)


class ScheduleFilter:
    """Resolves the applicable window for a company or sensor."""

    def __init__(self, config_repo: AlertConfigRepository) -> None:
        self._config_repo = config_repo

    async def window_for(
        self,
        company_id: int | None,
        sensor_id: int | None = None,
        sensor_config: AlertConfiguration | None = None,
    ) -> ScheduleWindow | None:
        """The sensor override if configured, else the company window."""
        if sensor_config is None and sensor_id is not None:
            sensor_config = await self._config_repo.get(sensor_id)
        if sensor_config is not None and sensor_config.schedule is not None:
            return sensor_config.schedule
        if company_id is None:
            return None
        return await self._config_repo.get_company_schedule(company_id)

    async def is_within_window(
        self,
        company_id: int | None,
        now: datetime,
        sensor_id: int | None = None,
    ) -> bool:
        window = await self.window_for(company_id, sensor_id)
        return is_within_window(window, now)
