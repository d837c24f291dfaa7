"""Notification dispatcher orchestrating alert delivery across channels.

For one (alert, level) it resolves the enabled channels and recipients,
then runs one attempt chain per (channel, recipient). Every try claims a
numbered NotificationAttempt row before it is sent, and the persisted
count for the chain is what bounds retries, so the ceiling holds across
escalation levels, manual resends and processes. Outside the quiet-hours
window non-critical dispatch is parked in the deferred queue instead of
being sent.

Notification failures never block the alert lifecycle; nothing raised by
a channel escapes ``notify()``.

Pattern: Orchestrator, delegates to stateless channels wrapped in
circuit breakers.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.alerts.attempts import NotificationAttemptRepository
from src.alerts.channels import CircuitBreaker, NotificationChannel, NotificationMessage
from src.alerts.config import AlertConfig
from src.alerts.config_repository import AlertConfigRepository
from src.alerts.errors import ChannelDeliveryFailure, ChannelExhausted, ConfigurationInvalid
from src.alerts.locks import KeyedLocks
from src.alerts.repository import AlertRepository
from src.alerts.schedule import ScheduleFilter, deferral_until
from src.alerts.schemas import (
    VALID_CHANNELS,
    VALID_SEVERITIES,
    Alert,
    AlertConfiguration,
    NotificationAttempt,
)
from src.alerts.threshold_store import ThresholdStore
from src.observability.metrics import get_metrics
from src.queues.backoff import ExponentialBackoff
from src.queues.deferred import DeferredNotification, DeferredNotificationQueue

logger = logging.getLogger(__name__)

# Channels used when a sensor metric has no stored threshold
_DEFAULT_CHANNELS = ("email", "realtime")


class NotificationConfig(BaseSettings):
    """Configuration for notification dispatch."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATIONS_",
        case_sensitive=False,
        extra="ignore",
    )

    retry_base_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay in seconds before the first retry of a chain",
    )
    retry_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Backoff multiplier between consecutive retries",
    )
    retry_max_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound for a single retry delay",
    )
    retry_jitter: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Random +/- fraction applied to each retry delay",
    )
    circuit_breaker_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures before circuit opens",
    )
    circuit_breaker_recovery_seconds: float = Field(
        default=60.0,
        ge=5.0,
        description="Seconds before circuit breaker probes recovery",
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for SendGrid and Twilio HTTP calls",
    )


@dataclass
class ChannelResult:
    """Outcome of one attempt chain.

    ``status`` is one of: sent, failed, exhausted, deferred, skipped,
    cancelled (alert resolved mid-chain).
    """

    channel: str
    recipient: str
    success: bool
    status: str
    attempts: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "recipient": self.recipient,
            "success": self.success,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
        }


class NotificationDispatcher:
    """Orchestrates alert delivery across notification channels.

    Wraps each channel in a CircuitBreaker. Retry delays come from an
    ExponentialBackoff per chain; ``sleep`` and ``clock`` are injectable
    so tests run without waiting.
    """

    def __init__(
        self,
        channels: list[NotificationChannel],
        attempt_repo: NotificationAttemptRepository,
        alert_repo: AlertRepository,
        config_repo: AlertConfigRepository,
        threshold_store: ThresholdStore,
        schedule_filter: ScheduleFilter,
        deferred_queue: DeferredNotificationQueue,
        config: NotificationConfig | None = None,
        alert_config: AlertConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or NotificationConfig()
        self._alert_config = alert_config or AlertConfig()
        self._attempts = attempt_repo
        self._alerts = alert_repo
        self._config_repo = config_repo
        self._thresholds = threshold_store
        self._schedule = schedule_filter
        self._deferred = deferred_queue
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._chain_locks = KeyedLocks()

        # Wrap each channel in a circuit breaker
        self._channels: dict[str, CircuitBreaker] = {}
        for ch in channels:
            if isinstance(ch, CircuitBreaker):
                self._channels[ch.name] = ch
            else:
                self._channels[ch.name] = CircuitBreaker(
                    channel=ch,
                    failure_threshold=self._config.circuit_breaker_threshold,
                    recovery_timeout=self._config.circuit_breaker_recovery_seconds,
                )

    @property
    def channels(self) -> dict[str, CircuitBreaker]:
        """Access wrapped channels (for inspection/testing)."""
        return self._channels

    async def load_configuration(self, sensor_id: int) -> AlertConfiguration:
        """Stored configuration of a sensor, or the defaults."""
        config = await self._config_repo.get(sensor_id)
        if config is not None:
            return config
        default = AlertConfiguration(
            sensor_id=sensor_id,
            max_attempts=self._alert_config.default_max_attempts,
        )
        default.escalation.initial_timeout_minutes = (
            self._alert_config.default_initial_timeout_minutes
        )
        return default

    async def notify(
        self,
        alert: Alert,
        level: int,
        channels: list[str] | None = None,
        manual: bool = False,
        *,
        check_schedule: bool = True,
    ) -> list[ChannelResult]:
        """Deliver ``alert`` to the recipients of escalation ``level``.

        Args:
            alert: Alert to deliver.
            level: Escalation level whose recipients are notified.
            channels: Restrict delivery to these channels.
            manual: Operator resend; bypasses quiet hours and is recorded
                as manual.
            check_schedule: False when replaying a deferred dispatch.

        Returns:
            One ChannelResult per (channel, recipient) chain.
        """
        if alert.is_resolved:
            logger.info("Skipping dispatch for resolved alert %s", alert.alert_id)
            return []

        config = await self.load_configuration(alert.sensor_id)
        enabled = await self._enabled_channels(alert, channels)

        if check_schedule and not manual:
            window = await self._schedule.window_for(alert.company_id, sensor_config=config)
            due_at = deferral_until(alert.severity, window, self._clock())
            if due_at is not None:
                await self._deferred.defer(
                    DeferredNotification(
                        alert_id=alert.alert_id,
                        escalation_level=level,
                        channels=enabled,
                        due_at=due_at,
                    )
                )
                get_metrics().record_deferred()
                return [
                    ChannelResult(channel=name, recipient="", success=False, status="deferred")
                    for name in enabled
                ]

        message_text = self._message_for(alert, level, config)
        chains: list[Awaitable[ChannelResult]] = []
        results: list[ChannelResult] = []

        for name in enabled:
            channel = self._channels.get(name)
            if channel is None:
                results.append(
                    ChannelResult(
                        channel=name,
                        recipient="",
                        success=False,
                        status="skipped",
                        error="channel not configured",
                    )
                )
                continue
            for recipient in self._recipients_for(alert, level, config, name):
                message = NotificationMessage(
                    recipient=recipient,
                    subject=f"Sensor {alert.sensor_id} {alert.metric_kind}",
                    body=message_text,
                    severity=alert.severity,
                    sensor_id=alert.sensor_id,
                    company_id=alert.company_id,
                    alert_id=alert.alert_id,
                    escalation_level=level,
                    data={"state": alert.state, "value": alert.triggering_value},
                )
                chains.append(
                    self._run_chain(alert, channel, message, config.max_attempts, manual)
                )

        results.extend(await asyncio.gather(*chains))
        self._record_delivery(alert, results)
        return results

    async def dispatch_deferred(self, item: DeferredNotification) -> list[ChannelResult]:
        """Replay a deferred dispatch whose window has opened."""
        alert = await self._alerts.get_by_id(item.alert_id)
        if alert is None or alert.is_resolved:
            logger.info(
                "Dropping deferred notification for alert %s (resolved or gone)",
                item.alert_id,
            )
            return []
        return await self.notify(
            alert,
            item.escalation_level,
            channels=item.channels,
            check_schedule=False,
        )

    async def send_test(
        self,
        channel: str,
        recipient: str,
        severity: str = "MEDIA",
    ) -> ChannelResult:
        """Send one synthetic message. Records no attempt and touches no alert.

        Raises:
            ConfigurationInvalid: Unknown or unconfigured channel, or bad severity.
        """
        if channel not in VALID_CHANNELS:
            raise ConfigurationInvalid(
                f"Invalid channel {channel!r}. Must be one of: {sorted(VALID_CHANNELS)}"
            )
        if severity not in VALID_SEVERITIES:
            raise ConfigurationInvalid(f"Invalid severity {severity!r}")
        wrapped = self._channels.get(channel)
        if wrapped is None:
            raise ConfigurationInvalid(f"Channel {channel!r} is not configured")

        message = NotificationMessage(
            recipient=recipient,
            subject="Notificación de prueba",
            body="Este es un mensaje de prueba del sistema de alertas de sensores.",
            severity=severity,
            data={"test": True},
        )
        try:
            await wrapped.send(message)
        except ChannelDeliveryFailure as e:
            return ChannelResult(
                channel=channel, recipient=recipient, success=False,
                status="failed", attempts=1, error=str(e),
            )
        return ChannelResult(
            channel=channel, recipient=recipient, success=True, status="sent", attempts=1,
        )

    async def _enabled_channels(
        self, alert: Alert, requested: list[str] | None,
    ) -> list[str]:
        threshold = await self._thresholds.get(alert.sensor_id, alert.metric_kind)
        toggled = threshold.enabled_channels() if threshold else list(_DEFAULT_CHANNELS)
        if requested is None:
            return toggled
        return [name for name in toggled if name in requested]

    def _recipients_for(
        self,
        alert: Alert,
        level: int,
        config: AlertConfiguration,
        channel: str,
    ) -> list[str]:
        if channel == "realtime":
            return [f"sensor:{alert.sensor_id}"]
        addresses: list[str] = []
        for recipient in config.recipients_for_level(level):
            address = recipient.address_for(channel)
            if address and address not in addresses:
                addresses.append(address)
        return addresses

    def _message_for(
        self, alert: Alert, level: int, config: AlertConfiguration,
    ) -> str:
        override = None
        escalation_level = config.escalation.get_level(level) if level > 0 else None
        if escalation_level is not None and escalation_level.message:
            override = escalation_level.message
        text = override or alert.message
        unit = f" {alert.unit}" if alert.unit else ""
        return (
            f"{text}\n"
            f"Valor: {alert.triggering_value}{unit} | "
            f"Severidad: {alert.severity} | Nivel: {level}"
        )

    async def _next_attempt(
        self,
        alert: Alert,
        channel: NotificationChannel,
        message: NotificationMessage,
        max_attempts: int,
        manual: bool,
    ) -> NotificationAttempt | None:
        """Claim the chain's next attempt number, or None at the ceiling."""
        recipient = message.recipient
        while True:
            count = await self._attempts.count(alert.alert_id, channel.name, recipient)
            if count >= max_attempts:
                return None
            attempt = NotificationAttempt(
                alert_id=alert.alert_id,
                channel=channel.name,
                recipient=recipient,
                escalation_level=message.escalation_level,
                attempt_number=count + 1,
                success=False,
                manual=manual,
            )
            if await self._attempts.claim(attempt):
                return attempt
            # Another process took this number; count again

    async def _run_chain(
        self,
        alert: Alert,
        channel: NotificationChannel,
        message: NotificationMessage,
        max_attempts: int,
        manual: bool,
    ) -> ChannelResult:
        """Try one (channel, recipient) until success or the ceiling.

        Each step claims an attempt number, sends, and stores the outcome
        while holding the chain lock, so concurrent chains for the same
        key (auto dispatch and a resend, or an escalation and a deferred
        replay) share one ceiling. The lock is not held across backoff.
        Never raises; every outcome is folded into the ChannelResult.
        """
        backoff = ExponentialBackoff(
            base_delay=self._config.retry_base_delay,
            max_delay=self._config.retry_max_delay,
            multiplier=self._config.retry_multiplier,
            jitter_range=self._config.retry_jitter,
        )
        recipient = message.recipient
        chain_key = (alert.alert_id, channel.name, recipient)
        made = 0
        last_error: str | None = None

        try:
            while True:
                if made > 0:
                    current = await self._alerts.get_by_id(alert.alert_id)
                    if current is None or current.is_resolved:
                        return ChannelResult(
                            channel=channel.name,
                            recipient=recipient,
                            success=False,
                            status="cancelled",
                            attempts=made,
                            error=last_error,
                        )

                async with self._chain_locks.hold(chain_key):
                    attempt = await self._next_attempt(
                        alert, channel, message, max_attempts, manual,
                    )
                    if attempt is None:
                        exhausted = ChannelExhausted(
                            alert.alert_id, channel.name, recipient, max_attempts,
                        )
                        logger.warning("%s", exhausted)
                        get_metrics().record_channel_exhausted(channel.name)
                        return ChannelResult(
                            channel=channel.name,
                            recipient=recipient,
                            success=False,
                            status="exhausted",
                            attempts=made,
                            error=last_error or str(exhausted),
                        )

                    made += 1
                    attempt.success, attempt.error = await self._try_send(channel, message)
                    await self._attempts.complete(attempt)

                await self._alerts.record_delivery(
                    alert.alert_id, channel.name, recipient, attempt.success,
                )
                get_metrics().record_notification_attempt(channel.name, attempt.success)

                if attempt.success:
                    if made > 1:
                        logger.info(
                            "Alert %s delivered to %s via %s on attempt %d",
                            alert.alert_id, recipient, channel.name, attempt.attempt_number,
                        )
                    return ChannelResult(
                        channel=channel.name,
                        recipient=recipient,
                        success=True,
                        status="sent",
                        attempts=made,
                    )

                last_error = attempt.error
                if attempt.attempt_number < max_attempts:
                    await self._sleep(backoff.next_delay())
        except Exception as e:
            logger.error(
                "Attempt chain for alert %s on %s to %s aborted: %s",
                alert.alert_id, channel.name, recipient, e,
            )
            return ChannelResult(
                channel=channel.name,
                recipient=recipient,
                success=False,
                status="failed",
                attempts=made,
                error=str(e),
            )

    async def _try_send(
        self, channel: NotificationChannel, message: NotificationMessage,
    ) -> tuple[bool, str | None]:
        try:
            if await channel.send(message):
                return True, None
            return False, "delivery failed"
        except ChannelDeliveryFailure as e:
            logger.warning("Channel %s send error: %s", channel.name, e)
            return False, str(e)
        except Exception as e:
            logger.exception("Unexpected error from channel %s", channel.name)
            return False, f"{type(e).__name__}: {e}"

    def _record_delivery(self, alert: Alert, results: list[ChannelResult]) -> None:
        """Log the overall outcome of one dispatch."""
        successes = [f"{r.channel}:{r.recipient}" for r in results if r.success]
        failures = [
            f"{r.channel}:{r.recipient}"
            for r in results
            if not r.success and r.status != "skipped"
        ]

        if failures and not successes:
            logger.error(
                "Alert %s (%s) failed ALL deliveries: %s",
                alert.alert_id, alert.severity, failures,
            )
        elif failures:
            logger.warning(
                "Alert %s partial delivery: ok=%s failed=%s",
                alert.alert_id, successes, failures,
            )
        else:
            logger.debug(
                "Alert %s delivered: %s",
                alert.alert_id, successes,
            )
