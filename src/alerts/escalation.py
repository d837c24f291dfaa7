"""
Escalation scheduler: one recurring tick for the whole alert fleet.

Each tick:
1. Scans every ACTIVA / EN_ESCALAMIENTO alert, page by page.
2. Skips alerts whose lifecycle lock is held in this process.
3. Escalates, exactly one level, every alert whose time at its current
   level has reached that level's timeout. The lifecycle manager
   re-checks the timeout under the row lock, so two workers ticking at
   once escalate an alert only once.
4. Leases deferred notifications whose quiet-hours window has opened and
   replays them in the background. An item is deleted once its replay
   returns and rescheduled if it raised.

Errors inside a tick are logged per alert. An error that aborts a whole
tick backs the loop off exponentially; the scheduler never stops on its
own.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.alerts.config import AlertConfig
from src.alerts.errors import AlreadyTerminal, NotFound
from src.alerts.lifecycle import AlertLifecycleManager
from src.alerts.repository import AlertRepository
from src.alerts.schemas import Alert
from src.observability.metrics import get_metrics
from src.observability.tracing import optional_span
from src.queues.backoff import ExponentialBackoff
from src.queues.deferred import DeferredNotification, DeferredNotificationQueue

logger = structlog.get_logger(__name__)


@dataclass
class TickResult:
    """Summary of one scheduler tick."""

    scanned: int = 0
    escalated: list[str] = field(default_factory=list)
    skipped_locked: list[str] = field(default_factory=list)
    deferred_replayed: int = 0
    errors: int = 0


class EscalationScheduler:
    """
    Time-driven escalation of unresolved alerts.

    Usage:
        scheduler = EscalationScheduler(alert_repo, lifecycle, dispatcher, queue)
        await scheduler.start()     # background task (API process)
        ...
        await scheduler.stop()

        await scheduler.run()       # blocking loop (escalation-worker)
    """

    def __init__(
        self,
        alert_repo: AlertRepository,
        lifecycle: AlertLifecycleManager,
        dispatcher: Any,
        deferred_queue: DeferredNotificationQueue,
        config: AlertConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._alerts = alert_repo
        self._lifecycle = lifecycle
        self._dispatcher = dispatcher
        self._deferred = deferred_queue
        self._config = config or AlertConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._backoff = ExponentialBackoff(base_delay=1.0, max_delay=60.0)
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if the scheduler loop is running."""
        return self._running

    async def start(self) -> None:
        """Run the loop as a background task of the current event loop."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self.run(), name="escalation-scheduler")

    async def stop(self) -> None:
        """Stop the loop and wait for in-flight dispatches."""
        logger.info("Stopping escalation scheduler")
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._lifecycle.drain(timeout=30.0)

    async def run(self) -> None:
        """Tick until ``stop()`` is called."""
        self._running = True
        interval = self._config.escalation_tick_seconds
        logger.info("Escalation scheduler started", tick_seconds=interval)

        try:
            while self._running:
                try:
                    with optional_span("sensor-alerts.escalation", "escalation.tick") as span:
                        result = await self.run_once()
                        if span is not None:
                            span.set_attribute("escalation.scanned", result.scanned)
                            span.set_attribute("escalation.escalated", len(result.escalated))
                    self._backoff.reset()
                    delay = interval
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    delay = max(interval, self._backoff.next_delay())
                    get_metrics().record_escalation_error(type(e).__name__)
                    logger.error(
                        "Escalation tick failed",
                        error=str(e),
                        retry_in=round(delay, 2),
                    )
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.info("Escalation scheduler cancelled")
        finally:
            self._running = False

    async def run_once(self, now: datetime | None = None) -> TickResult:
        """Run a single tick at ``now``."""
        now = now or self._clock()
        started = time.perf_counter()
        result = TickResult()

        async for alert in self._scan_candidates():
            result.scanned += 1
            if self._lifecycle.is_locked(alert.alert_id):
                result.skipped_locked.append(alert.alert_id)
                continue
            try:
                if not await self._is_due(alert, now):
                    continue
                escalated = await self._lifecycle.escalate(
                    alert.alert_id, now=now, only_if_due=True,
                )
                if escalated is not None:
                    result.escalated.append(alert.alert_id)
            except (AlreadyTerminal, NotFound):
                # Resolved or escalated elsewhere since the scan
                continue
            except Exception as e:
                result.errors += 1
                get_metrics().record_escalation_error(type(e).__name__)
                logger.error(
                    "Failed to escalate alert",
                    alert_id=alert.alert_id,
                    error=str(e),
                )

        result.deferred_replayed = await self._replay_deferred(now)

        latency = time.perf_counter() - started
        get_metrics().record_escalation_tick(latency)
        if result.escalated or result.deferred_replayed or result.errors:
            logger.info(
                "Escalation tick complete",
                scanned=result.scanned,
                escalated=len(result.escalated),
                skipped_locked=len(result.skipped_locked),
                deferred_replayed=result.deferred_replayed,
                errors=result.errors,
                latency_ms=round(latency * 1000, 2),
            )
        return result

    async def _scan_candidates(self) -> AsyncIterator[Alert]:
        """Yield every open alert, one keyset page at a time.

        An alert escalated during the scan re-enters later in the order
        with a fresh ``level_entered_at``; it is yielded only once.
        """
        page_size = self._config.escalation_scan_page_size
        after = None
        seen: set[str] = set()
        while True:
            page = await self._alerts.get_escalation_candidates(limit=page_size, after=after)
            for alert in page:
                if alert.alert_id not in seen:
                    seen.add(alert.alert_id)
                    yield alert
            if len(page) < page_size:
                return
            after = (page[-1].level_entered_at, page[-1].alert_id)

    async def _is_due(self, alert: Any, now: datetime) -> bool:
        config = await self._dispatcher.load_configuration(alert.sensor_id)
        policy = config.escalation
        if not policy.enabled:
            return False
        timeout = policy.timeout_for(alert.escalation_level)
        if timeout is None:
            return False
        return now - alert.level_entered_at >= timedelta(minutes=timeout)

    async def _replay_deferred(self, now: datetime) -> int:
        items = await self._deferred.claim_due(
            now,
            limit=self._config.deferred_batch_size,
            lease_seconds=self._config.deferred_lease_seconds,
        )
        for item in items:
            self._lifecycle.run_in_background(
                self._replay_one(item, now),
                name=f"deferred:{item.alert_id}:{item.escalation_level}",
            )
        try:
            get_metrics().set_deferred_pending(await self._deferred.pending_count())
        except Exception:
            logger.debug("Could not read deferred queue depth")
        return len(items)

    async def _replay_one(self, item: DeferredNotification, now: datetime) -> None:
        """Replay one leased item; acknowledge it only once dispatch returned."""
        try:
            await self._dispatcher.dispatch_deferred(item)
        except Exception as e:
            retry_at = now + timedelta(seconds=self._config.deferred_retry_seconds)
            logger.error(
                "Deferred replay failed",
                alert_id=item.alert_id,
                escalation_level=item.escalation_level,
                error=str(e),
                retry_at=retry_at.isoformat(),
            )
            await self._deferred.retry(item, retry_at)
            return
        await self._deferred.ack(item)
