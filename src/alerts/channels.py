"""Notification channel implementations for alert delivery.

Provides an ABC for notification channels plus email (SendGrid HTTP
API), SMS (Twilio REST API) and realtime push (broadcast gateway)
implementations. A CircuitBreaker decorator wraps any channel to stop
hammering a provider that is down.

Channels return True on delivery and raise ``ChannelDeliveryFailure``
otherwise; retry policy lives in the dispatcher.

Pattern: Decorator (CircuitBreaker wraps any NotificationChannel).
"""

import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from src.alerts.errors import ChannelDeliveryFailure

logger = logging.getLogger(__name__)

_SEVERITY_PREFIX = {
    "CRITICA": "🔴 CRÍTICA",
    "ALTA": "🟠 ALTA",
    "MEDIA": "🟡 MEDIA",
    "BAJA": "🔵 BAJA",
}


@dataclass
class NotificationMessage:
    """One message to one recipient address over one channel."""

    recipient: str
    subject: str
    body: str
    severity: str
    sensor_id: int | None = None
    company_id: int | None = None
    alert_id: str | None = None
    escalation_level: int = 0
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def headline(self) -> str:
        prefix = _SEVERITY_PREFIX.get(self.severity, self.severity)
        return f"[{prefix}] {self.subject}"


class NotificationChannel(ABC):
    """Abstract base for notification delivery channels."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Channel identifier: 'email', 'sms' or 'realtime'."""

    @abstractmethod
    async def send(self, message: NotificationMessage) -> bool:
        """Deliver a message through this channel.

        Returns:
            True if the provider accepted the message.

        Raises:
            ChannelDeliveryFailure: On any provider or transport error.
        """


class EmailChannel(NotificationChannel):
    """Delivers messages through the SendGrid v3 mail/send endpoint.

    Creates a new ``httpx.AsyncClient`` per call (short-lived, no pooling)
    matching the project's HTTP pattern.
    """

    def __init__(
        self,
        api_key: str,
        from_email: str,
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._from_email = from_email
        self._api_url = api_url
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "email"

    def _build_payload(self, message: NotificationMessage) -> dict:
        html = (
            f"<h2>{message.headline}</h2>"
            f"<p>{message.body}</p>"
        )
        if message.sensor_id is not None:
            html += f"<p><small>Sensor {message.sensor_id}</small></p>"
        return {
            "personalizations": [{"to": [{"email": message.recipient}]}],
            "from": {"email": self._from_email},
            "subject": message.headline,
            "content": [
                {"type": "text/plain", "value": message.body},
                {"type": "text/html", "value": html},
            ],
        }

    async def send(self, message: NotificationMessage) -> bool:
        payload = self._build_payload(message)
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.TimeoutException:
            raise ChannelDeliveryFailure(self.name, "SendGrid request timed out")
        except httpx.HTTPError as e:
            raise ChannelDeliveryFailure(self.name, f"SendGrid transport error: {e}")

        if resp.is_success:
            return True
        logger.warning(
            "SendGrid returned %d for %s (alert %s)",
            resp.status_code, message.recipient, message.alert_id,
        )
        raise ChannelDeliveryFailure(self.name, f"SendGrid returned {resp.status_code}")


class SmsChannel(NotificationChannel):
    """Delivers messages through the Twilio Messages REST resource."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._url = f"{api_base}/Accounts/{account_sid}/Messages.json"
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "sms"

    def _format_body(self, message: NotificationMessage) -> str:
        return f"{message.headline}\n{message.body}"

    async def send(self, message: NotificationMessage) -> bool:
        data = {
            "To": message.recipient,
            "From": self._from_number,
            "Body": self._format_body(message),
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    self._url,
                    data=data,
                    auth=(self._account_sid, self._auth_token),
                )
        except httpx.TimeoutException:
            raise ChannelDeliveryFailure(self.name, "Twilio request timed out")
        except httpx.HTTPError as e:
            raise ChannelDeliveryFailure(self.name, f"Twilio transport error: {e}")

        if resp.is_success:
            return True
        logger.warning(
            "Twilio returned %d for %s (alert %s)",
            resp.status_code, message.recipient, message.alert_id,
        )
        raise ChannelDeliveryFailure(self.name, f"Twilio returned {resp.status_code}")


class RealtimeChannel(NotificationChannel):
    """Pushes an ``alert-notification`` event to gateway subscribers."""

    def __init__(self, broadcaster: Any) -> None:
        self._broadcaster = broadcaster

    @property
    def name(self) -> str:
        return "realtime"

    async def send(self, message: NotificationMessage) -> bool:
        topics = [message.recipient]
        if message.company_id is not None:
            topics.append(f"company:{message.company_id}")
        published = await self._broadcaster.publish_event(
            "alert-notification",
            {
                "alert_id": message.alert_id,
                "subject": message.headline,
                "body": message.body,
                "severity": message.severity,
                "escalation_level": message.escalation_level,
                **message.data,
            },
            topics=topics,
        )
        if not published:
            raise ChannelDeliveryFailure(self.name, "Broadcast publish failed")
        return True


class CircuitState(enum.Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker(NotificationChannel):
    """Wraps a NotificationChannel with circuit breaker protection.

    State machine: CLOSED → OPEN → HALF_OPEN → CLOSED.

    - CLOSED: All requests pass through. Consecutive failures tracked.
    - OPEN: Requests fail immediately. After recovery_timeout, moves
      to HALF_OPEN.
    - HALF_OPEN: Single probe request allowed. Success → CLOSED, failure → OPEN.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
    ) -> None:
        self._channel = channel
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_time: float = 0.0

    @property
    def name(self) -> str:
        return self._channel.name

    @property
    def state(self) -> CircuitState:
        return self._state

    async def send(self, message: NotificationMessage) -> bool:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self._recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                logger.info(
                    "Circuit breaker %s: OPEN → HALF_OPEN (recovery probe)",
                    self.name,
                )
            else:
                raise ChannelDeliveryFailure(self.name, "circuit open")

        try:
            success = await self._channel.send(message)
        except ChannelDeliveryFailure:
            self._on_failure()
            raise

        if success:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(
                    "Circuit breaker %s: HALF_OPEN → CLOSED (probe succeeded)",
                    self.name,
                )
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
        else:
            self._on_failure()
        return success

    def _on_failure(self) -> None:
        self._consecutive_failures += 1
        self._last_failure_time = time.monotonic()

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker %s: HALF_OPEN → OPEN (probe failed)",
                self.name,
            )
        elif (
            self._state == CircuitState.CLOSED
            and self._consecutive_failures >= self._failure_threshold
        ):
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker %s: CLOSED → OPEN after %d failures",
                self.name, self._consecutive_failures,
            )
