"""Domain errors raised by the alerting core.

Routes translate these into HTTP status codes; background paths
(evaluation batches, escalation ticks, dispatch tasks) log and continue.
"""


class AlertingError(Exception):
    """Base class for all alerting errors."""


class InvalidReading(AlertingError):
    """A reading event is malformed (missing metric, non-numeric value)."""


class NotFound(AlertingError):
    """A referenced alert, sensor, or configuration does not exist."""


class AlreadyResolved(AlertingError):
    """The alert is already RESUELTA."""


class AlreadyTerminal(AlertingError):
    """The alert cannot be escalated further (resolved or at max level)."""


class ConfigurationInvalid(AlertingError):
    """A threshold or alert configuration was rejected at upsert."""


class ChannelDeliveryFailure(AlertingError):
    """A single send failed transiently and may be retried."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class ChannelExhausted(AlertingError):
    """The attempt ceiling was reached for one (alert, channel, recipient)."""

    def __init__(self, alert_id: str, channel: str, recipient: str, attempts: int) -> None:
        super().__init__(
            f"Alert {alert_id} exhausted {attempts} attempts on "
            f"{channel} for {recipient}"
        )
        self.alert_id = alert_id
        self.channel = channel
        self.recipient = recipient
        self.attempts = attempts
