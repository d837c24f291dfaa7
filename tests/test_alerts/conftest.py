"""Shared fixtures for alerting tests.

The fakes below keep state in memory and mirror the repository method
signatures, so lifecycle, dispatch and scheduling can be exercised end to
end without Postgres or Redis.
"""

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import asyncpg
import pytest

from src.alerts.channels import NotificationChannel, NotificationMessage
from src.alerts.config import AlertConfig
from src.alerts.dispatcher import NotificationConfig, NotificationDispatcher
from src.alerts.errors import ChannelDeliveryFailure
from src.alerts.escalation import EscalationScheduler
from src.alerts.evaluator import ReadingEvaluator
from src.alerts.lifecycle import AlertLifecycleManager
from src.alerts.schedule import ScheduleFilter
from src.alerts.schemas import (
    Alert,
    AlertConfiguration,
    EscalationLevel,
    EscalationPolicy,
    Recipient,
)
from src.alerts.service import AlertService
from src.alerts.threshold_store import ThresholdStore
from src.alerts.thresholds import TemperatureThreshold
from src.queues.deferred import DeferredNotification


# ── Fakes ───────────────────────────────────────────────


class FakeClock:
    """Mutable clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAlertRepository:
    """In-memory AlertRepository. Returns copies, like rows from a database."""

    def __init__(self) -> None:
        self.alerts: dict[str, Alert] = {}
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield None

    def _open_for_pair(self, sensor_id, metric_kind):
        for alert in self.alerts.values():
            if (
                alert.sensor_id == sensor_id
                and alert.metric_kind == metric_kind
                and not alert.is_resolved
            ):
                return alert
        return None

    async def create(self, alert, conn=None):
        if self._open_for_pair(alert.sensor_id, alert.metric_kind) is not None:
            raise asyncpg.UniqueViolationError("idx_sensor_alerts_open_pair")
        self.alerts[alert.alert_id] = copy.deepcopy(alert)
        return copy.deepcopy(alert)

    async def update(self, alert, conn=None):
        stored = self.alerts.get(alert.alert_id)
        if stored is None or stored.is_resolved:
            return None
        updated = copy.deepcopy(alert)
        updated.recipients_notified = list(stored.recipients_notified)
        updated.attempt_counters = dict(stored.attempt_counters)
        self.alerts[alert.alert_id] = updated
        return copy.deepcopy(updated)

    async def record_delivery(self, alert_id, channel, recipient, success):
        stored = self.alerts.get(alert_id)
        if stored is None or stored.is_resolved:
            return
        stored.attempt_counters[channel] = stored.attempt_counters.get(channel, 0) + 1
        if success and recipient not in stored.recipients_notified:
            stored.recipients_notified.append(recipient)

    async def get_by_id(self, alert_id, *, for_update=False, conn=None):
        stored = self.alerts.get(alert_id)
        return copy.deepcopy(stored) if stored else None

    async def get_open_for_pair(self, sensor_id, metric_kind, *, for_update=False, conn=None):
        stored = self._open_for_pair(sensor_id, metric_kind)
        return copy.deepcopy(stored) if stored else None

    async def get_open(self, *, sensor_id=None, company_id=None):
        return [
            copy.deepcopy(a)
            for a in self.alerts.values()
            if not a.is_resolved
            and (sensor_id is None or a.sensor_id == sensor_id)
            and (company_id is None or a.company_id == company_id)
        ]

    async def get_escalation_candidates(self, limit=500, after=None):
        candidates = [
            a for a in self.alerts.values()
            if a.state in ("ACTIVA", "EN_ESCALAMIENTO")
            and (after is None or (a.level_entered_at, a.alert_id) > after)
        ]
        candidates.sort(key=lambda a: (a.level_entered_at, a.alert_id))
        return [copy.deepcopy(a) for a in candidates[:limit]]

    async def list_open_for_company(self, company_id):
        alerts = [
            a for a in self.alerts.values()
            if a.company_id == company_id and a.state != "RESUELTA"
        ]
        alerts.sort(key=lambda a: (a.sensor_id, a.metric_kind))
        return [copy.deepcopy(a) for a in alerts]

    async def list_alerts(self, *, severity=None, state=None, sensor_id=None,
                          company_id=None, limit=50, offset=0, **_):
        alerts = [
            a for a in self.alerts.values()
            if (severity is None or a.severity == severity)
            and (state is None or a.state == state)
            and (sensor_id is None or a.sensor_id == sensor_id)
            and (company_id is None or a.company_id == company_id)
        ]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return [copy.deepcopy(a) for a in alerts[offset:offset + limit]]

    async def get_history(self, sensor_id, since):
        alerts = [
            a for a in self.alerts.values()
            if a.sensor_id == sensor_id and a.created_at >= since
        ]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return [copy.deepcopy(a) for a in alerts]

    async def count_by(self, column, *, sensor_id=None, company_id=None, since=None):
        counts: dict[str, int] = {}
        for a in self.alerts.values():
            if sensor_id is not None and a.sensor_id != sensor_id:
                continue
            if company_id is not None and a.company_id != company_id:
                continue
            if since is not None and a.created_at < since:
                continue
            key = getattr(a, column)
            counts[key] = counts.get(key, 0) + 1
        return counts


class FakeAttemptRepository:
    """Enforces the (alert, channel, recipient, attempt_number) unique slot."""

    def __init__(self) -> None:
        self.attempts = []

    async def claim(self, attempt):
        taken = any(
            (a.alert_id, a.channel, a.recipient, a.attempt_number)
            == (attempt.alert_id, attempt.channel, attempt.recipient, attempt.attempt_number)
            for a in self.attempts
        )
        if taken:
            return False
        self.attempts.append(attempt)
        return True

    async def complete(self, attempt):
        # Rows are shared with the dispatcher, so the outcome is already set
        return None

    async def count(self, alert_id, channel, recipient):
        return sum(
            1 for a in self.attempts
            if a.alert_id == alert_id and a.channel == channel and a.recipient == recipient
        )

    async def list_for_alert(self, alert_id):
        return [a for a in self.attempts if a.alert_id == alert_id]

    def for_channel(self, channel):
        return [a for a in self.attempts if a.channel == channel]


class FakeConfigRepository:
    def __init__(self) -> None:
        self.configs: dict[int, AlertConfiguration] = {}
        self.schedules = {}

    async def get(self, sensor_id):
        return copy.deepcopy(self.configs.get(sensor_id))

    async def upsert(self, config):
        stored = copy.deepcopy(config)
        stored.updated_at = datetime.now(timezone.utc)
        self.configs[config.sensor_id] = stored
        return copy.deepcopy(stored)

    async def get_company_schedule(self, company_id):
        return self.schedules.get(company_id)

    async def upsert_company_schedule(self, company_id, window):
        self.schedules[company_id] = window
        return window


class FakeDeferredQueue:
    def __init__(self) -> None:
        self.items: list[DeferredNotification] = []
        self._next_id = 1

    async def defer(self, item):
        item.deferred_id = self._next_id
        self._next_id += 1
        self.items.append(item)
        return item

    async def claim_due(self, now, limit=100, lease_seconds=300.0):
        due = sorted((i for i in self.items if i.due_at <= now), key=lambda i: i.due_at)
        leased = []
        for item in due[:limit]:
            item.due_at = now + timedelta(seconds=lease_seconds)
            leased.append(copy.copy(item))
        return leased

    async def ack(self, item):
        self.items = [i for i in self.items if i.deferred_id != item.deferred_id]

    async def retry(self, item, due_at):
        for stored in self.items:
            if stored.deferred_id == item.deferred_id:
                stored.due_at = due_at

    async def pending_count(self):
        return len(self.items)


class FakeThresholdRepository:
    def __init__(self) -> None:
        self.thresholds = {}
        self.get_calls = 0

    async def get(self, sensor_id, metric_kind):
        self.get_calls += 1
        return self.thresholds.get((sensor_id, metric_kind))

    async def list_for_sensor(self, sensor_id):
        return [t for (sid, _), t in sorted(self.thresholds.items()) if sid == sensor_id]

    async def upsert(self, config):
        config.updated_at = datetime.now(timezone.utc)
        self.thresholds[(config.sensor_id, config.metric_kind)] = config
        return config


class FakeSensorRepository:
    def __init__(self, sensors) -> None:
        self.sensors = {s.sensor_id: s for s in sensors}

    async def get_by_id(self, sensor_id):
        return self.sensors.get(sensor_id)

    async def list_for_company(self, company_id):
        return sorted(
            (s for s in self.sensors.values() if s.company_id == company_id),
            key=lambda s: s.sensor_id,
        )


class FakeChannel(NotificationChannel):
    """Channel that fails the first ``fail_times`` sends (all, if None)."""

    def __init__(self, name: str, fail_times: int | None = 0) -> None:
        self._name = name
        self.fail_times = fail_times
        self.sent: list[NotificationMessage] = []
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    async def send(self, message: NotificationMessage) -> bool:
        self.calls += 1
        if self.fail_times is None or self.calls <= self.fail_times:
            raise ChannelDeliveryFailure(self._name, "provider unavailable")
        self.sent.append(message)
        return True


class FakeBroadcaster:
    def __init__(self) -> None:
        self.events: list[tuple[str, Alert]] = []
        self.publish_event = AsyncMock(return_value=True)

    async def publish_alert(self, event_type, alert):
        self.events.append((event_type, alert))
        return True

    def event_types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


# ── Factories ───────────────────────────────────────────


def make_alert(**overrides) -> Alert:
    fields = dict(
        sensor_id=25,
        company_id=3,
        metric_kind="TEMPERATURA",
        triggering_value=40.0,
        unit="°C",
        severity="ALTA",
        message="Temperatura de 40.0 °C por encima del máximo (35.0 °C) en sensor 25",
        created_at=datetime(2026, 3, 4, 16, 0, 0, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return Alert(**fields)


def make_configuration(sensor_id: int = 25, **overrides) -> AlertConfiguration:
    """Two recipients, one escalation level for the supervisor."""
    fields = dict(
        sensor_id=sensor_id,
        recipients=[
            Recipient(
                recipient_id="op",
                name="Operador",
                email="operador@example.com",
                phone="+525500000001",
                preference="AMBOS",
            ),
            Recipient(
                recipient_id="sup",
                name="Supervisor",
                email="supervisor@example.com",
                preference="EMAIL",
            ),
        ],
        escalation=EscalationPolicy(
            enabled=True,
            initial_timeout_minutes=15,
            levels=[EscalationLevel(level=1, timeout_minutes=30, recipient_ids=["sup"])],
        ),
        max_attempts=3,
    )
    fields.update(overrides)
    return AlertConfiguration(**fields)


# ── Fixtures ────────────────────────────────────────────


@pytest.fixture
def clock(fixed_now):
    return FakeClock(fixed_now)


@pytest.fixture
def alert_config():
    return AlertConfig()


@pytest.fixture
def alert_repo():
    return FakeAlertRepository()


@pytest.fixture
def attempt_repo():
    return FakeAttemptRepository()


@pytest.fixture
def config_repo():
    return FakeConfigRepository()


@pytest.fixture
def deferred_queue():
    return FakeDeferredQueue()


@pytest.fixture
def threshold_repo():
    repo = FakeThresholdRepository()
    repo.thresholds[(25, "TEMPERATURA")] = TemperatureThreshold(
        sensor_id=25, min_value=15.0, max_value=35.0,
    )
    return repo


@pytest.fixture
def sensor_repo(temperature_sensor, multi_sensor):
    return FakeSensorRepository([temperature_sensor, multi_sensor])


@pytest.fixture
def threshold_store(threshold_repo, sensor_repo):
    return ThresholdStore(threshold_repo, sensor_repo, cache_ttl=300.0)


@pytest.fixture
def email_channel():
    return FakeChannel("email")


@pytest.fixture
def realtime_channel():
    return FakeChannel("realtime")


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def dispatcher(
    email_channel, realtime_channel, attempt_repo, alert_repo, config_repo,
    threshold_store, deferred_queue, alert_config, clock, sleep,
):
    return NotificationDispatcher(
        channels=[email_channel, realtime_channel],
        attempt_repo=attempt_repo,
        alert_repo=alert_repo,
        config_repo=config_repo,
        threshold_store=threshold_store,
        schedule_filter=ScheduleFilter(config_repo),
        deferred_queue=deferred_queue,
        config=NotificationConfig(circuit_breaker_threshold=50),
        alert_config=alert_config,
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture
def lifecycle(alert_repo, dispatcher, broadcaster, alert_config, clock):
    return AlertLifecycleManager(
        alert_repo, dispatcher, broadcaster=broadcaster, config=alert_config, clock=clock,
    )


@pytest.fixture
def evaluator(threshold_store, lifecycle, alert_config):
    return ReadingEvaluator(threshold_store, lifecycle, alert_config)


@pytest.fixture
def scheduler(alert_repo, lifecycle, dispatcher, deferred_queue, alert_config, clock):
    return EscalationScheduler(
        alert_repo, lifecycle, dispatcher, deferred_queue, config=alert_config, clock=clock,
    )


@pytest.fixture
def service(
    alert_repo, attempt_repo, config_repo, threshold_store, lifecycle, dispatcher,
    alert_config, clock,
):
    return AlertService(
        alert_repo, attempt_repo, config_repo, threshold_store, lifecycle, dispatcher,
        config=alert_config, clock=clock,
    )


@pytest.fixture
def alert_factory():
    return make_alert


@pytest.fixture
def configuration_factory():
    return make_configuration
