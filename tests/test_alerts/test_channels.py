"""Tests for notification channels and the circuit breaker."""

import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.alerts.channels import (
    CircuitBreaker,
    CircuitState,
    EmailChannel,
    NotificationChannel,
    NotificationMessage,
    RealtimeChannel,
    SmsChannel,
)
from src.alerts.errors import ChannelDeliveryFailure


# ── Fixtures ────────────────────────────────────────────


@pytest.fixture
def message():
    return NotificationMessage(
        recipient="operador@example.com",
        subject="Sensor 25 TEMPERATURA",
        body="Temperatura de 40.0 °C por encima del máximo (35.0 °C) en sensor 25",
        severity="ALTA",
        sensor_id=25,
        company_id=3,
        alert_id="alert-001",
        escalation_level=1,
        data={"state": "EN_ESCALAMIENTO", "value": 40.0},
    )


def _mock_response(status_code: int = 200) -> httpx.Response:
    """Create a mock httpx.Response."""
    return httpx.Response(status_code=status_code, request=httpx.Request("POST", "http://test"))


def _patch_client(response=None, side_effect=None):
    """Patch httpx.AsyncClient in the channels module; returns (patcher, client)."""
    patcher = patch("src.alerts.channels.httpx.AsyncClient")
    mock_client_cls = patcher.start()
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return patcher, mock_client


# ── EmailChannel ────────────────────────────────────────


class TestEmailChannel:
    """Tests for EmailChannel (SendGrid)."""

    @pytest.mark.asyncio
    async def test_successful_send(self, message):
        channel = EmailChannel(api_key="SG.test", from_email="alertas@example.com")
        patcher, mock_client = _patch_client(_mock_response(202))
        try:
            result = await channel.send(message)
        finally:
            patcher.stop()

        assert result is True
        call = mock_client.post.call_args
        assert call.args[0] == "https://api.sendgrid.com/v3/mail/send"
        assert call.kwargs["headers"] == {"Authorization": "Bearer SG.test"}
        payload = call.kwargs["json"]
        assert payload["personalizations"] == [{"to": [{"email": "operador@example.com"}]}]
        assert payload["from"] == {"email": "alertas@example.com"}
        assert payload["subject"] == "[🟠 ALTA] Sensor 25 TEMPERATURA"
        assert payload["content"][0]["value"] == message.body

    @pytest.mark.asyncio
    async def test_error_status_raises(self, message):
        channel = EmailChannel(api_key="SG.test", from_email="alertas@example.com")
        patcher, _ = _patch_client(_mock_response(401))
        try:
            with pytest.raises(ChannelDeliveryFailure, match="SendGrid returned 401"):
                await channel.send(message)
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_timeout_raises(self, message):
        channel = EmailChannel(api_key="SG.test", from_email="alertas@example.com")
        patcher, _ = _patch_client(side_effect=httpx.ReadTimeout("timed out"))
        try:
            with pytest.raises(ChannelDeliveryFailure, match="timed out"):
                await channel.send(message)
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, message):
        channel = EmailChannel(api_key="SG.test", from_email="alertas@example.com")
        patcher, _ = _patch_client(side_effect=httpx.ConnectError("refused"))
        try:
            with pytest.raises(ChannelDeliveryFailure) as exc_info:
                await channel.send(message)
        finally:
            patcher.stop()
        assert exc_info.value.channel == "email"
        assert "transport error" in str(exc_info.value)


# ── SmsChannel ──────────────────────────────────────────


class TestSmsChannel:
    """Tests for SmsChannel (Twilio)."""

    @pytest.mark.asyncio
    async def test_successful_send(self, message):
        channel = SmsChannel(
            account_sid="AC123", auth_token="secret", from_number="+15005550006",
        )
        message.recipient = "+525500000001"
        patcher, mock_client = _patch_client(_mock_response(201))
        try:
            result = await channel.send(message)
        finally:
            patcher.stop()

        assert result is True
        call = mock_client.post.call_args
        assert call.args[0] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert call.kwargs["auth"] == ("AC123", "secret")
        data = call.kwargs["data"]
        assert data["To"] == "+525500000001"
        assert data["From"] == "+15005550006"
        assert data["Body"].startswith("[🟠 ALTA] Sensor 25 TEMPERATURA\n")

    @pytest.mark.asyncio
    async def test_error_status_raises(self, message):
        channel = SmsChannel(account_sid="AC123", auth_token="secret", from_number="+1")
        patcher, _ = _patch_client(_mock_response(500))
        try:
            with pytest.raises(ChannelDeliveryFailure, match="sms: Twilio returned 500"):
                await channel.send(message)
        finally:
            patcher.stop()


# ── RealtimeChannel ─────────────────────────────────────


class TestRealtimeChannel:
    @pytest.mark.asyncio
    async def test_publishes_to_sensor_and_company(self, message):
        broadcaster = AsyncMock()
        broadcaster.publish_event.return_value = True
        message.recipient = "sensor:25"

        assert await RealtimeChannel(broadcaster).send(message) is True

        event_type, payload = broadcaster.publish_event.call_args.args
        assert event_type == "alert-notification"
        assert payload["alert_id"] == "alert-001"
        assert payload["escalation_level"] == 1
        assert payload["state"] == "EN_ESCALAMIENTO"
        assert broadcaster.publish_event.call_args.kwargs["topics"] == ["sensor:25", "company:3"]

    @pytest.mark.asyncio
    async def test_publish_failure_raises(self, message):
        broadcaster = AsyncMock()
        broadcaster.publish_event.return_value = False

        with pytest.raises(ChannelDeliveryFailure, match="realtime"):
            await RealtimeChannel(broadcaster).send(message)


# ── CircuitBreaker ──────────────────────────────────────


class _FailingChannel(NotificationChannel):
    def __init__(self):
        self.fail = True
        self.calls = 0

    @property
    def name(self) -> str:
        return "email"

    async def send(self, message):
        self.calls += 1
        if self.fail:
            raise ChannelDeliveryFailure("email", "503")
        return True


class TestCircuitBreaker:
    """Tests for CircuitBreaker state machine."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, message):
        inner = _FailingChannel()
        breaker = CircuitBreaker(inner, failure_threshold=3, recovery_timeout=60.0)

        for _ in range(3):
            with pytest.raises(ChannelDeliveryFailure):
                await breaker.send(message)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(ChannelDeliveryFailure, match="circuit open"):
            await breaker.send(message)
        assert inner.calls == 3

    @pytest.mark.asyncio
    async def test_half_open_probe_closes(self, message):
        inner = _FailingChannel()
        breaker = CircuitBreaker(inner, failure_threshold=1, recovery_timeout=10.0)

        with pytest.raises(ChannelDeliveryFailure):
            await breaker.send(message)
        assert breaker.state == CircuitState.OPEN

        inner.fail = False
        breaker._last_failure_time = time.monotonic() - 11.0
        assert await breaker.send(message) is True
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens(self, message):
        inner = _FailingChannel()
        breaker = CircuitBreaker(inner, failure_threshold=1, recovery_timeout=10.0)

        with pytest.raises(ChannelDeliveryFailure):
            await breaker.send(message)
        breaker._last_failure_time = time.monotonic() - 11.0

        with pytest.raises(ChannelDeliveryFailure, match="503"):
            await breaker.send(message)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, message):
        inner = _FailingChannel()
        breaker = CircuitBreaker(inner, failure_threshold=2)

        with pytest.raises(ChannelDeliveryFailure):
            await breaker.send(message)
        inner.fail = False
        await breaker.send(message)
        inner.fail = True
        with pytest.raises(ChannelDeliveryFailure):
            await breaker.send(message)

        assert breaker.state == CircuitState.CLOSED

    def test_name_delegates(self):
        assert CircuitBreaker(_FailingChannel()).name == "email"
