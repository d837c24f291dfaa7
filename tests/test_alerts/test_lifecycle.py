"""Tests for AlertLifecycleManager transitions and concurrency guarantees."""

import asyncio

import pytest

from src.alerts.errors import AlreadyResolved, AlreadyTerminal, NotFound


async def _open(lifecycle, value=40.0, severity="ALTA", **overrides):
    fields = dict(
        sensor_id=25,
        company_id=3,
        metric_kind="TEMPERATURA",
        value=value,
        unit="°C",
        severity=severity,
        message=f"Temperatura de {value} °C",
    )
    fields.update(overrides)
    return await lifecycle.create_or_update(**fields)


class TestCreateOrUpdate:
    @pytest.mark.asyncio
    async def test_creates_alert_and_dispatches_level_zero(
        self, lifecycle, broadcaster, realtime_channel,
    ):
        alert = await _open(lifecycle)
        await lifecycle.drain()

        assert alert.state == "ACTIVA"
        assert alert.escalation_level == 0
        assert broadcaster.event_types() == ["alert-created"]
        assert [m.recipient for m in realtime_channel.sent] == ["sensor:25"]
        assert realtime_channel.sent[0].escalation_level == 0

    @pytest.mark.asyncio
    async def test_rebreach_updates_in_place(self, lifecycle, alert_repo, clock):
        first = await _open(lifecycle, value=40.0)
        clock.advance(minutes=1)
        second = await _open(lifecycle, value=44.0, severity="CRITICA", timestamp=clock())
        await lifecycle.drain()

        assert second.alert_id == first.alert_id
        assert second.triggering_value == 44.0
        assert second.severity == "CRITICA"
        assert second.breach_count == 2
        assert second.last_breach_at == clock()
        assert second.escalation_level == 0
        assert len(alert_repo.alerts) == 1

    @pytest.mark.asyncio
    async def test_concurrent_breaches_open_one_alert(self, lifecycle, alert_repo):
        results = await asyncio.gather(*(_open(lifecycle, value=40.0 + i) for i in range(5)))
        await lifecycle.drain()

        assert len({a.alert_id for a in results}) == 1
        assert len(alert_repo.alerts) == 1
        stored = next(iter(alert_repo.alerts.values()))
        assert stored.breach_count == 5

    @pytest.mark.asyncio
    async def test_unique_violation_retries_as_update(self, lifecycle, alert_repo, alert_factory):
        # Another process opens the pair between our read and our insert
        existing = alert_factory()
        original_get = alert_repo.get_open_for_pair
        calls = {"n": 0}

        async def stale_first_read(sensor_id, metric_kind, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                alert_repo.alerts[existing.alert_id] = existing
                return None
            return await original_get(sensor_id, metric_kind, **kwargs)

        alert_repo.get_open_for_pair = stale_first_read
        alert = await _open(lifecycle, value=41.0)
        await lifecycle.drain()

        assert alert.alert_id == existing.alert_id
        assert alert.breach_count == 2

    @pytest.mark.asyncio
    async def test_new_alert_after_resolution(self, lifecycle, alert_repo):
        first = await _open(lifecycle)
        await lifecycle.resolve(first.alert_id)
        second = await _open(lifecycle)
        await lifecycle.drain()

        assert second.alert_id != first.alert_id
        assert len(alert_repo.alerts) == 2


class TestResolve:
    @pytest.mark.asyncio
    async def test_resolve(self, lifecycle, broadcaster, clock):
        alert = await _open(lifecycle)
        resolved = await lifecycle.resolve(alert.alert_id, "Puerta cerrada")
        await lifecycle.drain()

        assert resolved.state == "RESUELTA"
        assert resolved.resolved_at == clock()
        assert resolved.resolution_comment == "Puerta cerrada"
        assert broadcaster.event_types() == ["alert-created", "alert-resolved"]

    @pytest.mark.asyncio
    async def test_second_resolve_conflicts(self, lifecycle):
        alert = await _open(lifecycle)
        await lifecycle.resolve(alert.alert_id)

        with pytest.raises(AlreadyResolved):
            await lifecycle.resolve(alert.alert_id)
        await lifecycle.drain()

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, lifecycle):
        with pytest.raises(NotFound):
            await lifecycle.resolve("missing")

    @pytest.mark.asyncio
    async def test_resolved_alert_is_frozen(self, lifecycle, alert_repo):
        alert = await _open(lifecycle)
        resolved = await lifecycle.resolve(alert.alert_id)

        resolved.triggering_value = 99.0
        assert await alert_repo.update(resolved) is None
        assert alert_repo.alerts[alert.alert_id].triggering_value == 40.0
        await lifecycle.drain()


class TestEscalate:
    @pytest.mark.asyncio
    async def test_escalate_one_level(
        self, lifecycle, config_repo, configuration_factory, email_channel, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open(lifecycle)
        await lifecycle.drain()
        email_channel.sent.clear()

        clock.advance(minutes=3)
        escalated = await lifecycle.escalate(alert.alert_id)
        await lifecycle.drain()

        assert escalated.escalation_level == 1
        assert escalated.state == "ESCALADA"
        assert escalated.level_entered_at == clock()
        assert [m.recipient for m in email_channel.sent] == ["supervisor@example.com"]

    @pytest.mark.asyncio
    async def test_intermediate_level_is_en_escalamiento(
        self, lifecycle, config_repo, configuration_factory,
    ):
        from src.alerts.schemas import EscalationLevel, EscalationPolicy

        config_repo.configs[25] = configuration_factory(escalation=EscalationPolicy(
            enabled=True,
            levels=[
                EscalationLevel(level=1, timeout_minutes=30, recipient_ids=["sup"]),
                EscalationLevel(level=2, timeout_minutes=60, recipient_ids=["sup"]),
            ],
        ))
        alert = await _open(lifecycle)

        first = await lifecycle.escalate(alert.alert_id)
        second = await lifecycle.escalate(alert.alert_id)
        await lifecycle.drain()

        assert (first.escalation_level, first.state) == (1, "EN_ESCALAMIENTO")
        assert (second.escalation_level, second.state) == (2, "ESCALADA")

    @pytest.mark.asyncio
    async def test_escalate_past_max_level(self, lifecycle, config_repo, configuration_factory):
        config_repo.configs[25] = configuration_factory()
        alert = await _open(lifecycle)
        await lifecycle.escalate(alert.alert_id)

        with pytest.raises(AlreadyTerminal):
            await lifecycle.escalate(alert.alert_id)
        await lifecycle.drain()

    @pytest.mark.asyncio
    async def test_escalate_without_levels(self, lifecycle):
        alert = await _open(lifecycle)
        with pytest.raises(AlreadyTerminal, match="highest escalation level"):
            await lifecycle.escalate(alert.alert_id)
        await lifecycle.drain()

    @pytest.mark.asyncio
    async def test_escalate_resolved(self, lifecycle, config_repo, configuration_factory):
        config_repo.configs[25] = configuration_factory()
        alert = await _open(lifecycle)
        await lifecycle.resolve(alert.alert_id)

        with pytest.raises(AlreadyTerminal):
            await lifecycle.escalate(alert.alert_id)
        await lifecycle.drain()

    @pytest.mark.asyncio
    async def test_only_if_due_checks_timeout(
        self, lifecycle, config_repo, configuration_factory, clock,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open(lifecycle)

        assert await lifecycle.escalate(
            alert.alert_id, now=clock.advance(minutes=14), only_if_due=True,
        ) is None
        escalated = await lifecycle.escalate(
            alert.alert_id, now=clock.advance(minutes=1), only_if_due=True,
        )
        await lifecycle.drain()

        assert escalated.escalation_level == 1

    @pytest.mark.asyncio
    async def test_level_never_decreases_on_rebreach(
        self, lifecycle, config_repo, configuration_factory,
    ):
        config_repo.configs[25] = configuration_factory()
        alert = await _open(lifecycle)
        await lifecycle.escalate(alert.alert_id)

        updated = await _open(lifecycle, value=41.0)
        await lifecycle.drain()

        assert updated.escalation_level == 1


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_failed_task_is_logged_not_raised(self, lifecycle):
        async def fail():
            raise RuntimeError("boom")

        lifecycle.run_in_background(fail(), name="fail")
        assert lifecycle.pending_tasks == 1
        await lifecycle.drain()
        assert lifecycle.pending_tasks == 0

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels(self, lifecycle):
        lifecycle.run_in_background(asyncio.sleep(10), name="slow")
        await lifecycle.drain(timeout=0.01)
        await asyncio.sleep(0.01)
        assert lifecycle.pending_tasks == 0

    @pytest.mark.asyncio
    async def test_is_locked_during_transition(self, lifecycle, alert_repo):
        alert = await _open(lifecycle)
        seen = {}
        original = alert_repo.get_by_id

        async def spy(alert_id, **kwargs):
            seen["locked"] = lifecycle.is_locked(alert_id)
            return await original(alert_id, **kwargs)

        alert_repo.get_by_id = spy
        await lifecycle.resolve(alert.alert_id)
        await lifecycle.drain()

        assert seen["locked"] is True
        assert lifecycle.is_locked(alert.alert_id) is False
