"""Alert lifecycle manager: the single writer of alert state.

State machine::

    ACTIVA ──escalate──▶ EN_ESCALAMIENTO ──escalate (max level)──▶ ESCALADA
       │                        │                                     │
       └────────────resolve─────┴──────────────resolve────────────────┴──▶ RESUELTA

A single-level configuration goes ACTIVA ▶ ESCALADA directly. RESUELTA is
terminal and the stored row is never updated again.

Mutations are serialized in two layers. In-process, a per-(sensor, metric)
lock guards creation and a per-alert lock orders transitions (always
pair before alert); both are dropped once idle. Across processes, each
transition re-reads its row ``FOR UPDATE`` inside a transaction, updates
are conditional on the row not being RESUELTA, and the partial unique
index rejects a second open alert for a pair.

Broadcasts and notification dispatch run as tracked background tasks so
a slow channel never holds a lock.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg

from src.alerts.config import AlertConfig
from src.alerts.errors import AlreadyResolved, AlreadyTerminal, NotFound
from src.alerts.locks import KeyedLocks
from src.alerts.repository import AlertRepository
from src.alerts.schemas import Alert
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class AlertLifecycleManager:
    """Creates, updates, escalates and resolves alerts.

    Args:
        alert_repo: Alert persistence.
        dispatcher: NotificationDispatcher (also supplies per-sensor
            alert configuration).
        broadcaster: AlertBroadcaster, or None to skip realtime events.
        config: Alert configuration.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        alert_repo: AlertRepository,
        dispatcher: Any,
        broadcaster: Any | None = None,
        config: AlertConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = alert_repo
        self._dispatcher = dispatcher
        self._broadcaster = broadcaster
        self._config = config or AlertConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pair_locks = KeyedLocks()
        self._alert_locks = KeyedLocks()
        self._tasks: set[asyncio.Task] = set()

    # ── Locks ───────────────────────────────────────────────

    def is_locked(self, alert_id: str) -> bool:
        """True while a transition on ``alert_id`` is in progress here."""
        return self._alert_locks.is_locked(alert_id)

    # ── Background work ─────────────────────────────────────

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def run_in_background(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Start ``coro`` as a tracked task; failures are logged, never raised."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight broadcasts and dispatches (shutdown hook)."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("Cancelled %d background tasks on drain", len(not_done))

    def _dispatch(self, alert: Alert, level: int) -> None:
        self.run_in_background(
            self._dispatcher.notify(alert, level),
            name=f"dispatch:{alert.alert_id}:{level}",
        )

    def _broadcast(self, event_type: str, alert: Alert) -> None:
        if self._broadcaster is None:
            return
        self.run_in_background(
            self._broadcaster.publish_alert(event_type, alert),
            name=f"broadcast:{event_type}:{alert.alert_id}",
        )

    # ── Queries ─────────────────────────────────────────────

    async def get_open(self, sensor_id: int, metric_kind: str) -> Alert | None:
        return await self._repo.get_open_for_pair(sensor_id, metric_kind)

    # ── Transitions ─────────────────────────────────────────

    async def create_or_update(
        self,
        *,
        sensor_id: int,
        metric_kind: str,
        value: float,
        severity: str,
        message: str,
        company_id: int | None = None,
        unit: str = "",
        timestamp: datetime | None = None,
    ) -> Alert:
        """Open a new alert for the pair, or fold the breach into the open one.

        A new alert starts ACTIVA at level 0; ``alert-created`` is broadcast
        and level-0 dispatch is handed off. A re-breach updates value,
        severity, message, breach count and last breach time in place and
        leaves the escalation level alone.

        ``timestamp`` is the reading time reported by the device and only
        sets ``last_breach_at``. Creation and the escalation clock use the
        server clock, so a skewed or buffered device cannot delay or hasten
        escalation.
        """
        now = self._clock()
        breach_at = timestamp or now

        async with self._pair_locks.hold((sensor_id, metric_kind)):
            for _ in range(2):
                existing = await self._repo.get_open_for_pair(sensor_id, metric_kind)
                if existing is None:
                    alert = Alert(
                        sensor_id=sensor_id,
                        company_id=company_id,
                        metric_kind=metric_kind,
                        triggering_value=value,
                        unit=unit,
                        severity=severity,
                        message=message,
                        created_at=now,
                        last_breach_at=breach_at,
                        level_entered_at=now,
                    )
                    try:
                        created = await self._repo.create(alert)
                    except asyncpg.UniqueViolationError:
                        # Another process opened the pair first
                        logger.info(
                            "Open alert for sensor %d %s created concurrently",
                            sensor_id, metric_kind,
                        )
                        continue

                    logger.info(
                        "Alert %s created: sensor=%d metric=%s value=%s severity=%s",
                        created.alert_id, sensor_id, metric_kind, value, severity,
                    )
                    get_metrics().record_transition("created", created.severity)
                    self._broadcast("alert-created", created)
                    self._dispatch(created, 0)
                    return created

                updated = await self._apply_breach(
                    existing.alert_id, value, unit, severity, message, breach_at, now,
                )
                if updated is not None:
                    return updated
                # Resolved between the read and the lock; open a fresh alert

        raise RuntimeError(
            f"Could not create or update alert for sensor {sensor_id} {metric_kind}"
        )

    async def _apply_breach(
        self,
        alert_id: str,
        value: float,
        unit: str,
        severity: str,
        message: str,
        breach_at: datetime,
        now: datetime,
    ) -> Alert | None:
        async with self._alert_locks.hold(alert_id):
            async with self._repo.transaction() as conn:
                current = await self._repo.get_by_id(alert_id, for_update=True, conn=conn)
                if current is None or current.is_resolved:
                    return None

                current.triggering_value = value
                current.unit = unit or current.unit
                current.severity = severity
                current.message = message
                current.breach_count += 1
                current.last_breach_at = breach_at
                current.updated_at = now
                updated = await self._repo.update(current, conn=conn)

        if updated is not None:
            logger.debug(
                "Alert %s re-breached (count=%d value=%s)",
                alert_id, updated.breach_count, value,
            )
            get_metrics().record_transition("updated", updated.severity)
        return updated

    async def resolve(
        self,
        alert_id: str,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> Alert:
        """Close an alert. Terminal: no further escalation or dispatch.

        Raises:
            NotFound: Unknown alert id.
            AlreadyResolved: The alert is already RESUELTA.
        """
        now = now or self._clock()

        async with self._alert_locks.hold(alert_id):
            async with self._repo.transaction() as conn:
                current = await self._repo.get_by_id(alert_id, for_update=True, conn=conn)
                if current is None:
                    raise NotFound(f"Alert {alert_id} not found")
                if current.is_resolved:
                    raise AlreadyResolved(f"Alert {alert_id} is already resolved")

                current.state = "RESUELTA"
                current.resolved_at = now
                current.resolution_comment = comment
                current.updated_at = now
                resolved = await self._repo.update(current, conn=conn)
                if resolved is None:
                    raise AlreadyResolved(f"Alert {alert_id} is already resolved")

        logger.info("Alert %s resolved", alert_id)
        get_metrics().record_transition("resolved", resolved.severity)
        self._broadcast("alert-resolved", resolved)
        return resolved

    async def escalate(
        self,
        alert_id: str,
        now: datetime | None = None,
        *,
        only_if_due: bool = False,
    ) -> Alert | None:
        """Advance an alert exactly one escalation level.

        Args:
            alert_id: Alert to escalate.
            now: Transition time.
            only_if_due: Scheduler mode; re-check the level timeout under
                the lock and return None if it has not elapsed (another
                worker may have escalated meanwhile).

        Raises:
            NotFound: Unknown alert id.
            AlreadyTerminal: RESUELTA, ESCALADA, or no higher level configured.
        """
        now = now or self._clock()

        async with self._alert_locks.hold(alert_id):
            async with self._repo.transaction() as conn:
                current = await self._repo.get_by_id(alert_id, for_update=True, conn=conn)
                if current is None:
                    raise NotFound(f"Alert {alert_id} not found")
                if current.state in ("RESUELTA", "ESCALADA"):
                    raise AlreadyTerminal(
                        f"Alert {alert_id} is {current.state} and cannot escalate"
                    )

                config = await self._dispatcher.load_configuration(current.sensor_id)
                policy = config.escalation
                if current.escalation_level >= policy.max_level:
                    raise AlreadyTerminal(
                        f"Alert {alert_id} is at the highest escalation level "
                        f"({current.escalation_level})"
                    )

                if only_if_due:
                    timeout = policy.timeout_for(current.escalation_level)
                    if timeout is None or now - current.level_entered_at < timedelta(minutes=timeout):
                        return None

                previous = current.escalation_level
                current.escalation_level = previous + 1
                current.state = (
                    "ESCALADA"
                    if current.escalation_level >= policy.max_level
                    else "EN_ESCALAMIENTO"
                )
                current.level_entered_at = now
                current.updated_at = now
                escalated = await self._repo.update(current, conn=conn)
                if escalated is None:
                    raise AlreadyTerminal(f"Alert {alert_id} was resolved concurrently")

        logger.info(
            "Alert %s escalated %d -> %d (%s)",
            alert_id, previous, escalated.escalation_level, escalated.state,
        )
        get_metrics().record_transition("escalated", escalated.severity)
        self._broadcast("alert-escalated", escalated)
        self._dispatch(escalated, escalated.escalation_level)
        return escalated
