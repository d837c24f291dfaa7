"""Sensor alerting core: thresholds, evaluation, lifecycle and delivery.

Components:
- ThresholdConfig and its per-metric variants: bounds and critical rules
- ThresholdStore: validated, cached threshold access
- ReadingEvaluator / classify_reading: NORMAL / ALERTA / CRITICO classification
- Alert: Dataclass mapping to the sensor_alerts table
- AlertLifecycleManager: the alert state machine and its locks
- EscalationScheduler: time-driven escalation and deferred replay
- NotificationDispatcher: retries over persisted attempts, quiet hours
- EmailChannel / SmsChannel / RealtimeChannel / CircuitBreaker: delivery
- AlertBroadcaster: realtime topic registry with Redis fan-out
- AlertService: query, resolution and configuration surface
- AlertConfig / NotificationConfig: Pydantic settings
"""

from src.alerts.broadcaster import AlertBroadcaster
from src.alerts.channels import (
    CircuitBreaker,
    EmailChannel,
    NotificationChannel,
    NotificationMessage,
    RealtimeChannel,
    SmsChannel,
)
from src.alerts.config import AlertConfig
from src.alerts.dispatcher import ChannelResult, NotificationConfig, NotificationDispatcher
from src.alerts.errors import (
    AlertingError,
    AlreadyResolved,
    AlreadyTerminal,
    ChannelDeliveryFailure,
    ChannelExhausted,
    ConfigurationInvalid,
    InvalidReading,
    NotFound,
)
from src.alerts.escalation import EscalationScheduler
from src.alerts.evaluator import ReadingEvaluator, classify_reading
from src.alerts.lifecycle import AlertLifecycleManager
from src.alerts.repository import AlertRepository
from src.alerts.schemas import (
    VALID_SEVERITIES,
    VALID_STATES,
    Alert,
    AlertConfiguration,
    NotificationAttempt,
    Reading,
)
from src.alerts.service import AlertService
from src.alerts.threshold_store import ThresholdStore
from src.alerts.thresholds import (
    HumidityThreshold,
    PressureThreshold,
    TemperatureThreshold,
    ThresholdConfig,
    WeightThreshold,
)

__all__ = [
    "Alert",
    "AlertBroadcaster",
    "AlertConfig",
    "AlertConfiguration",
    "AlertLifecycleManager",
    "AlertRepository",
    "AlertService",
    "AlertingError",
    "AlreadyResolved",
    "AlreadyTerminal",
    "ChannelDeliveryFailure",
    "ChannelExhausted",
    "ChannelResult",
    "CircuitBreaker",
    "ConfigurationInvalid",
    "EmailChannel",
    "EscalationScheduler",
    "HumidityThreshold",
    "InvalidReading",
    "NotFound",
    "NotificationAttempt",
    "NotificationChannel",
    "NotificationConfig",
    "NotificationDispatcher",
    "NotificationMessage",
    "PressureThreshold",
    "Reading",
    "ReadingEvaluator",
    "RealtimeChannel",
    "SmsChannel",
    "TemperatureThreshold",
    "ThresholdConfig",
    "ThresholdStore",
    "VALID_SEVERITIES",
    "VALID_STATES",
    "WeightThreshold",
    "classify_reading",
]
