"""Tests for EscalationScheduler ticks."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.alerts.config import AlertConfig
from src.alerts.escalation import EscalationScheduler, TickResult
from src.alerts.schemas import ScheduleWindow
from src.queues.deferred import DeferredNotification


async def _open_alert(lifecycle):
    alert = await lifecycle.create_or_update(
        sensor_id=25,
        company_id=3,
        metric_kind="TEMPERATURA",
        value=40.0,
        unit="°C",
        severity="ALTA",
        message="Temperatura de 40.0 °C por encima del máximo (35.0 °C) en sensor 25",
    )
    await lifecycle.drain()
    return alert


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_escalates_after_level_timeout(
        self, scheduler, lifecycle, config_repo, configuration_factory,
        email_channel, broadcaster, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)
        email_channel.sent.clear()

        early = await scheduler.run_once(clock.advance(minutes=14))
        assert early.scanned == 1
        assert early.escalated == []

        tick = await scheduler.run_once(clock.advance(minutes=1))
        await lifecycle.drain()

        assert tick.escalated == [alert.alert_id]
        assert "alert-escalated" in broadcaster.event_types()
        assert [m.recipient for m in email_channel.sent] == ["supervisor@example.com"]
        assert all(m.escalation_level == 1 for m in email_channel.sent)

    @pytest.mark.asyncio
    async def test_escalates_one_level_per_tick(
        self, scheduler, lifecycle, alert_repo, config_repo, configuration_factory, clock,
    ):
        from src.alerts.schemas import EscalationLevel, EscalationPolicy

        config_repo.configs[25] = configuration_factory(escalation=EscalationPolicy(
            enabled=True,
            initial_timeout_minutes=15,
            levels=[
                EscalationLevel(level=1, timeout_minutes=30, recipient_ids=["sup"]),
                EscalationLevel(level=2, timeout_minutes=30, recipient_ids=["sup"]),
            ],
        ))
        alert = await _open_alert(lifecycle)

        # Long overdue, but only one level per tick
        await scheduler.run_once(clock.advance(hours=5))
        await lifecycle.drain()
        assert alert_repo.alerts[alert.alert_id].escalation_level == 1

        await scheduler.run_once(clock.advance(minutes=29))
        assert alert_repo.alerts[alert.alert_id].escalation_level == 1

        await scheduler.run_once(clock.advance(minutes=1))
        await lifecycle.drain()
        stored = alert_repo.alerts[alert.alert_id]
        assert stored.escalation_level == 2
        assert stored.state == "ESCALADA"

    @pytest.mark.asyncio
    async def test_resolved_alert_is_not_escalated(
        self, scheduler, lifecycle, alert_repo, config_repo, configuration_factory, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)
        await lifecycle.resolve(alert.alert_id)

        tick = await scheduler.run_once(clock.advance(minutes=60))

        assert tick.scanned == 0
        assert tick.escalated == []
        assert alert_repo.alerts[alert.alert_id].state == "RESUELTA"

    @pytest.mark.asyncio
    async def test_escalation_disabled(
        self, scheduler, lifecycle, config_repo, configuration_factory, clock,
    ):
        config = configuration_factory()
        config.escalation.enabled = False
        config_repo.configs[25] = config
        await _open_alert(lifecycle)

        tick = await scheduler.run_once(clock.advance(minutes=60))
        assert tick.escalated == []

    @pytest.mark.asyncio
    async def test_no_configuration_never_escalates(self, scheduler, lifecycle, clock):
        await _open_alert(lifecycle)
        tick = await scheduler.run_once(clock.advance(hours=24))
        assert tick.escalated == []

    @pytest.mark.asyncio
    async def test_skips_locked_alert(
        self, scheduler, lifecycle, config_repo, configuration_factory, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)

        async with lifecycle._alert_locks.hold(alert.alert_id):
            tick = await scheduler.run_once(clock.advance(minutes=20))

        assert tick.skipped_locked == [alert.alert_id]
        assert tick.escalated == []

    @pytest.mark.asyncio
    async def test_concurrent_ticks_escalate_once(
        self, scheduler, lifecycle, alert_repo, config_repo, configuration_factory, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)
        now = clock.advance(minutes=20)

        original = alert_repo.get_escalation_candidates

        async def slow_candidates(limit=500, after=None):
            candidates = await original(limit, after)
            await asyncio.sleep(0)
            return candidates

        # Both ticks read the candidate at level 0 before either escalates
        alert_repo.get_escalation_candidates = slow_candidates
        results = await asyncio.gather(scheduler.run_once(now), scheduler.run_once(now))
        await lifecycle.drain()

        escalated = [r for tick in results for r in tick.escalated]
        assert escalated == [alert.alert_id]
        assert alert_repo.alerts[alert.alert_id].escalation_level == 1

    @pytest.mark.asyncio
    async def test_error_on_one_alert_does_not_stop_tick(
        self, scheduler, lifecycle, config_repo, configuration_factory, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        await _open_alert(lifecycle)
        lifecycle.escalate = AsyncMock(side_effect=RuntimeError("db down"))

        tick = await scheduler.run_once(clock.advance(minutes=20))

        assert tick.errors == 1
        assert tick.escalated == []

    @pytest.mark.asyncio
    async def test_due_alert_found_behind_full_pages(
        self, alert_repo, lifecycle, dispatcher, deferred_queue, config_repo,
        configuration_factory, alert_factory, clock,
    ):
        scheduler = EscalationScheduler(
            alert_repo, lifecycle, dispatcher, deferred_queue,
            config=AlertConfig(escalation_scan_page_size=3), clock=clock,
        )
        # Older alerts of sensors without a configuration never escalate
        for sensor_id in range(100, 107):
            stale = alert_factory(
                sensor_id=sensor_id,
                created_at=clock() - timedelta(hours=6),
                level_entered_at=clock() - timedelta(hours=6),
            )
            alert_repo.alerts[stale.alert_id] = stale
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)

        tick = await scheduler.run_once(clock.advance(minutes=20))
        await lifecycle.drain()

        assert tick.scanned == 8
        assert tick.escalated == [alert.alert_id]
        assert alert_repo.alerts[alert.alert_id].escalation_level == 1

    @pytest.mark.asyncio
    async def test_future_dated_reading_escalates_on_server_time(
        self, scheduler, lifecycle, alert_repo, config_repo, configuration_factory, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        opened_at = clock()
        device_time = opened_at + timedelta(days=1)

        alert = await lifecycle.create_or_update(
            sensor_id=25,
            company_id=3,
            metric_kind="TEMPERATURA",
            value=40.0,
            unit="°C",
            severity="ALTA",
            message="Temperatura de 40.0 °C por encima del máximo (35.0 °C) en sensor 25",
            timestamp=device_time,
        )
        await lifecycle.drain()

        assert alert.created_at == opened_at
        assert alert.level_entered_at == opened_at
        assert alert.last_breach_at == device_time

        tick = await scheduler.run_once(clock.advance(minutes=15))
        await lifecycle.drain()

        assert tick.escalated == [alert.alert_id]
        assert alert_repo.alerts[alert.alert_id].escalation_level == 1

    @pytest.mark.asyncio
    async def test_locks_released_after_transitions(
        self, scheduler, lifecycle, config_repo, configuration_factory, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)
        await _open_alert(lifecycle)
        await scheduler.run_once(clock.advance(minutes=20))
        await lifecycle.resolve(alert.alert_id)
        await lifecycle.drain()

        assert len(lifecycle._alert_locks) == 0
        assert len(lifecycle._pair_locks) == 0


class TestDeferredReplay:
    @pytest.mark.asyncio
    async def test_replays_due_items(
        self, scheduler, lifecycle, deferred_queue, config_repo, configuration_factory,
        email_channel, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)
        email_channel.sent.clear()

        await deferred_queue.defer(DeferredNotification(
            alert_id=alert.alert_id,
            escalation_level=0,
            channels=["email"],
            due_at=clock() + timedelta(minutes=5),
        ))

        assert (await scheduler.run_once(clock.advance(minutes=1))).deferred_replayed == 0

        tick = await scheduler.run_once(clock.advance(minutes=5))
        await lifecycle.drain()

        assert tick.deferred_replayed == 1
        assert sorted(m.recipient for m in email_channel.sent) == [
            "operador@example.com", "supervisor@example.com",
        ]
        assert await deferred_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_replay_ignores_quiet_hours(
        self, scheduler, lifecycle, deferred_queue, config_repo, configuration_factory,
        email_channel, clock,
    ):
        config_repo.configs[25] = configuration_factory(
            schedule=ScheduleWindow(start="08:00", end="09:00", days=[0]),
        )
        alert = await _open_alert(lifecycle)
        email_channel.sent.clear()

        await deferred_queue.defer(DeferredNotification(
            alert_id=alert.alert_id, escalation_level=0, channels=["email"], due_at=clock(),
        ))
        await scheduler.run_once(clock())
        await lifecycle.drain()

        assert len(email_channel.sent) == 2

    @pytest.mark.asyncio
    async def test_replay_for_resolved_alert_is_dropped(
        self, scheduler, lifecycle, deferred_queue, config_repo, configuration_factory,
        email_channel, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)
        await lifecycle.resolve(alert.alert_id)
        email_channel.sent.clear()

        await deferred_queue.defer(DeferredNotification(
            alert_id=alert.alert_id, escalation_level=0, channels=["email"], due_at=clock(),
        ))
        tick = await scheduler.run_once(clock())
        await lifecycle.drain()

        assert tick.deferred_replayed == 1
        assert email_channel.sent == []

    @pytest.mark.asyncio
    async def test_failed_replay_is_kept_and_retried(
        self, scheduler, lifecycle, dispatcher, deferred_queue, clock,
    ):
        alert = await _open_alert(lifecycle)
        await deferred_queue.defer(DeferredNotification(
            alert_id=alert.alert_id, escalation_level=0, channels=["email"], due_at=clock(),
        ))
        dispatcher.dispatch_deferred = AsyncMock(side_effect=RuntimeError("db down"))

        now = clock()
        tick = await scheduler.run_once(now)
        await lifecycle.drain()

        assert tick.deferred_replayed == 1
        assert await deferred_queue.pending_count() == 1
        assert deferred_queue.items[0].due_at == now + timedelta(seconds=60)

        dispatcher.dispatch_deferred = AsyncMock(return_value=[])
        assert (await scheduler.run_once(clock.advance(seconds=30))).deferred_replayed == 0

        await scheduler.run_once(clock.advance(seconds=30))
        await lifecycle.drain()

        dispatcher.dispatch_deferred.assert_awaited_once()
        assert await deferred_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_lease_of_crashed_worker_expires(
        self, scheduler, lifecycle, deferred_queue, config_repo, configuration_factory,
        email_channel, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open_alert(lifecycle)
        email_channel.sent.clear()
        await deferred_queue.defer(DeferredNotification(
            alert_id=alert.alert_id, escalation_level=0, channels=["email"], due_at=clock(),
        ))

        # Leased by a worker that never acknowledges it
        assert len(await deferred_queue.claim_due(clock(), lease_seconds=300)) == 1
        assert (await scheduler.run_once(clock.advance(minutes=4))).deferred_replayed == 0

        tick = await scheduler.run_once(clock.advance(minutes=1))
        await lifecycle.drain()

        assert tick.deferred_replayed == 1
        assert len(email_channel.sent) == 2
        assert await deferred_queue.pending_count() == 0


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        scheduler.run_once = AsyncMock(return_value=TickResult())

        await scheduler.start()
        await asyncio.sleep(0.01)
        assert scheduler.is_running is True
        scheduler.run_once.assert_awaited()

        await scheduler.stop()
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_failed_tick_keeps_running(self, scheduler, monkeypatch):
        scheduler.run_once = AsyncMock(side_effect=RuntimeError("db down"))
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) >= 2:
                await scheduler.stop()

        monkeypatch.setattr("src.alerts.escalation.asyncio.sleep", fake_sleep)
        await scheduler.run()

        assert scheduler.run_once.await_count == 2
        assert all(d >= 30.0 for d in delays)
