"""
Request and response models for the sensor alerting API.
"""

import datetime as dt
from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Response model for errors."""

    detail: str = Field(
        ...,
        description="Error message",
    )
    error_type: str = Field(
        default="error",
        description="Error type",
    )


# Health models


class ComponentHealth(BaseModel):
    """Health of one infrastructure dependency."""

    status: str = Field(..., description="healthy or unhealthy")
    latency_ms: float | None = Field(default=None, description="Probe latency")
    details: dict[str, Any] = Field(default_factory=dict, description="Extra details")


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(
        ...,
        description="Overall service status: healthy, degraded, or unhealthy",
    )
    components: dict[str, ComponentHealth] = Field(
        default_factory=dict,
        description="Per-dependency health (database, redis, broadcaster)",
    )
    version: str = Field(
        default="0.1.0",
        description="Service version",
    )


# Alert models


class AlertItem(BaseModel):
    """Single alert record."""

    alert_id: str = Field(..., description="Unique alert identifier")
    sensor_id: int = Field(..., description="Sensor that breached")
    company_id: int | None = Field(default=None, description="Owning company")
    metric_kind: str = Field(..., description="TEMPERATURA, HUMEDAD, PESO or PRESION")
    triggering_value: float = Field(..., description="Latest out-of-bounds value")
    unit: str = Field(default="", description="Unit of the value")
    severity: str = Field(..., description="BAJA, MEDIA, ALTA or CRITICA")
    state: str = Field(..., description="ACTIVA, EN_ESCALAMIENTO, ESCALADA or RESUELTA")
    escalation_level: int = Field(..., description="Current escalation level (0 = initial)")
    message: str = Field(..., description="Human-readable breach description")
    breach_count: int = Field(default=1, description="Breaches folded into this alert")
    created_at: str = Field(..., description="First breach (ISO format)")
    updated_at: str | None = Field(default=None, description="Last mutation (ISO format)")
    last_breach_at: str | None = Field(default=None, description="Latest breach (ISO format)")
    level_entered_at: str | None = Field(default=None, description="Current level start (ISO format)")
    resolved_at: str | None = Field(default=None, description="Resolution time (ISO format)")
    resolution_comment: str | None = Field(default=None, description="Operator comment")
    recipients_notified: list[str] = Field(default_factory=list, description="Addresses reached")
    attempt_counters: dict[str, int] = Field(default_factory=dict, description="Attempts per channel")


class AlertsResponse(BaseModel):
    """Response model for listing alerts."""

    alerts: list[AlertItem] = Field(..., description="List of alerts")
    total: int = Field(..., description="Number of alerts returned")
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class AlertResponse(BaseModel):
    """Response model for a single alert or an alert mutation."""

    alert: AlertItem = Field(..., description="The alert after the operation")
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class ResolveRequest(BaseModel):
    """Request body for resolving an alert."""

    comment: str | None = Field(
        default=None,
        max_length=2000,
        description="Resolution comment recorded on the alert",
    )


class ResendRequest(BaseModel):
    """Request body for a manual resend."""

    channel: str = Field(..., description="Channel to resend on: email, sms or realtime")


class ChannelResultItem(BaseModel):
    """Outcome of one (channel, recipient) attempt chain."""

    channel: str
    recipient: str
    success: bool
    status: str = Field(..., description="sent, failed, exhausted, deferred, skipped or cancelled")
    attempts: int = Field(default=0, description="Attempts made in this call")
    error: str | None = None


class ResendResponse(BaseModel):
    """Response model for a manual resend."""

    alert: AlertItem
    results: list[ChannelResultItem]
    latency_ms: float


class AttemptItem(BaseModel):
    """One recorded notification attempt."""

    attempt_id: str
    alert_id: str
    channel: str
    recipient: str
    escalation_level: int
    attempt_number: int
    success: bool
    error: str | None = None
    manual: bool = False
    created_at: str


class AttemptsResponse(BaseModel):
    """Response model for an alert's attempt history."""

    alert_id: str
    attempts: list[AttemptItem]
    total: int
    latency_ms: float


class HistoryDay(BaseModel):
    """Alerts created on one calendar day."""

    date: str
    count: int
    alerts: list[AlertItem]


class AlertHistoryResponse(BaseModel):
    """Per-sensor alert history grouped by date."""

    sensor_id: int
    days: int
    since: str
    total: int
    by_state: dict[str, int]
    by_severity: dict[str, int]
    by_date: list[HistoryDay]
    latency_ms: float


class AlertStatsResponse(BaseModel):
    """Aggregate alert counts."""

    total: int
    active: int
    by_severity: dict[str, int]
    by_state: dict[str, int]
    latency_ms: float


class TestNotificationRequest(BaseModel):
    """Request body for a synthetic notification."""

    channel: str = Field(..., description="email, sms or realtime")
    recipient: str = Field(
        ...,
        min_length=1,
        description="Email address, phone number, or realtime topic (sensor:<id>)",
    )
    severity: str = Field(default="MEDIA", description="Severity shown in the message")


class TestNotificationResponse(BaseModel):
    result: ChannelResultItem
    latency_ms: float


# Reading models


class ReadingRequest(BaseModel):
    """One sensor reading."""

    sensor_id: int = Field(..., description="Reporting sensor")
    metric_kind: str = Field(..., description="TEMPERATURA, HUMEDAD, PESO or PRESION")
    value: float = Field(..., description="Measured value")
    unit: str = Field(default="", description="Unit of the value")
    timestamp: dt.datetime | None = Field(
        default=None,
        description="Measurement time (defaults to now)",
    )


class ReadingBatchRequest(BaseModel):
    """Batch of readings evaluated in order."""

    readings: list[ReadingRequest] = Field(
        ...,
        min_length=1,
        max_length=500,
        description="Readings to evaluate (1-500)",
    )


class ReadingResultItem(BaseModel):
    """Evaluation outcome of one reading."""

    sensor_id: int
    metric_kind: str
    value: float
    classification: str = Field(..., description="NORMAL, ALERTA or CRITICO")
    severity: str | None = None
    alert: AlertItem | None = None


class ReadingErrorItem(BaseModel):
    index: int
    error: str


class ReadingsResponse(BaseModel):
    """Response model for reading ingestion."""

    results: list[ReadingResultItem]
    errors: list[ReadingErrorItem] = Field(default_factory=list)
    processed: int
    latency_ms: float


# Threshold models


class ThresholdRequest(BaseModel):
    """Threshold upsert for one metric of a sensor."""

    metric_kind: str = Field(..., description="TEMPERATURA, HUMEDAD, PESO or PRESION")
    min_value: float | None = Field(default=None, description="Lower bound")
    max_value: float | None = Field(default=None, description="Upper bound")
    severity_default: str = Field(default="MEDIA", description="Floor severity for breaches")
    alert_message: str | None = Field(default=None, description="Template for ALERTA breaches")
    critical_message: str | None = Field(default=None, description="Template for CRITICO breaches")
    verification_interval_minutes: int = Field(default=5, description="Repeat-breach window")
    enabled: bool = True
    notify_email: bool = True
    notify_sms: bool = False
    notify_realtime: bool = True


class ThresholdItem(ThresholdRequest):
    sensor_id: int
    unit: str
    updated_at: str | None = None


class ThresholdsResponse(BaseModel):
    sensor_id: int
    thresholds: list[ThresholdItem]
    latency_ms: float


class ThresholdResponse(BaseModel):
    threshold: ThresholdItem
    latency_ms: float


# Alert configuration models


class RecipientModel(BaseModel):
    recipient_id: str
    name: str = ""
    email: str | None = None
    phone: str | None = None
    preference: str = Field(default="EMAIL", description="EMAIL, SMS or AMBOS")
    priority: str = Field(default="MEDIA", description="BAJA, MEDIA, ALTA or CRITICA")
    active: bool = True


class EscalationLevelModel(BaseModel):
    level: int = Field(..., description="Level number, 1..N")
    timeout_minutes: int = Field(..., description="Minutes at this level before the next")
    recipient_ids: list[str] = Field(default_factory=list)
    message: str | None = Field(default=None, description="Message override for this level")


class EscalationPolicyModel(BaseModel):
    enabled: bool = False
    initial_timeout_minutes: int = Field(default=15, description="Minutes at level 0")
    levels: list[EscalationLevelModel] = Field(default_factory=list)


class ScheduleWindowModel(BaseModel):
    start: str = Field(default="08:00", description="HH:MM")
    end: str = Field(default="18:00", description="HH:MM, earlier than start for overnight")
    days: list[int] = Field(default=[1, 2, 3, 4, 5], description="0=Sunday .. 6=Saturday")
    timezone: str = Field(default="America/Mexico_City", description="IANA timezone")
    active: bool = True


class AlertConfigRequest(BaseModel):
    recipients: list[RecipientModel] = Field(default_factory=list)
    escalation: EscalationPolicyModel = Field(default_factory=EscalationPolicyModel)
    schedule: ScheduleWindowModel | None = Field(
        default=None,
        description="Sensor window overriding the company window",
    )
    max_attempts: int = Field(default=3, description="Attempts per (alert, channel, recipient)")


class AlertConfigResponse(AlertConfigRequest):
    sensor_id: int
    updated_at: str | None = None


class CompanyScheduleResponse(BaseModel):
    company_id: int
    schedule: ScheduleWindowModel | None = None
