"""Schema definitions for sensor alerts and their configuration.

``Alert`` maps 1:1 to the ``sensor_alerts`` table. Each alert is the
single open record for one (sensor, metric kind) pair, created by the
first out-of-bounds reading and closed only by an explicit resolution.
Configuration records (recipients, escalation levels, quiet-hours
windows) are stored as JSONB per sensor.
"""

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.alerts.errors import ConfigurationInvalid, InvalidReading
from src.sensors.schemas import VALID_METRIC_KINDS

Severity = Literal["BAJA", "MEDIA", "ALTA", "CRITICA"]

VALID_SEVERITIES: frozenset[str] = frozenset({
    "BAJA",
    "MEDIA",
    "ALTA",
    "CRITICA",
})

SEVERITY_RANK: dict[str, int] = {
    "BAJA": 0,
    "MEDIA": 1,
    "ALTA": 2,
    "CRITICA": 3,
}

AlertState = Literal["ACTIVA", "EN_ESCALAMIENTO", "ESCALADA", "RESUELTA"]

VALID_STATES: frozenset[str] = frozenset({
    "ACTIVA",
    "EN_ESCALAMIENTO",
    "ESCALADA",
    "RESUELTA",
})

# States the escalation scheduler still advances
ESCALATABLE_STATES: frozenset[str] = frozenset({"ACTIVA", "EN_ESCALAMIENTO"})

Classification = Literal["NORMAL", "ALERTA", "CRITICO"]

ChannelName = Literal["email", "sms", "realtime"]

VALID_CHANNELS: frozenset[str] = frozenset({"email", "sms", "realtime"})

RecipientPreference = Literal["EMAIL", "SMS", "AMBOS"]

VALID_PREFERENCES: frozenset[str] = frozenset({"EMAIL", "SMS", "AMBOS"})


def max_severity(a: str, b: str) -> str:
    """Return the more urgent of two severities."""
    return a if SEVERITY_RANK[a] >= SEVERITY_RANK[b] else b


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class Reading:
    """One sensor reading event entering the evaluator."""

    sensor_id: int
    metric_kind: str
    value: float
    unit: str = ""
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reading":
        """Parse a raw reading payload.

        Raises:
            InvalidReading: On a missing or unknown metric kind, a missing
                sensor id, or a value that is not a finite number.
        """
        sensor_id = data.get("sensor_id")
        if sensor_id is None:
            raise InvalidReading("Reading has no sensor_id")
        try:
            sensor_id = int(sensor_id)
        except (TypeError, ValueError):
            raise InvalidReading(f"Invalid sensor_id {sensor_id!r}")

        metric_kind = data.get("metric_kind")
        if not metric_kind:
            raise InvalidReading("Reading has no metric_kind")
        metric_kind = str(metric_kind).upper()
        if metric_kind not in VALID_METRIC_KINDS:
            raise InvalidReading(f"Unknown metric_kind {metric_kind!r}")

        raw_value = data.get("value")
        if raw_value is None or isinstance(raw_value, bool):
            raise InvalidReading("Reading has no numeric value")
        try:
            value = float(raw_value)
        except (TypeError, ValueError):
            raise InvalidReading(f"Non-numeric value {raw_value!r}")
        if not math.isfinite(value):
            raise InvalidReading(f"Non-finite value {raw_value!r}")

        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            try:
                timestamp = datetime.fromisoformat(timestamp)
            except ValueError:
                raise InvalidReading(f"Invalid timestamp {timestamp!r}")
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        elif timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return cls(
            sensor_id=sensor_id,
            metric_kind=metric_kind,
            value=value,
            unit=data.get("unit") or "",
            timestamp=timestamp,
        )


@dataclass
class Alert:
    """A persisted alert record from the sensor_alerts table.

    Attributes:
        alert_id: UUID4 identifier.
        sensor_id: Sensor that breached.
        metric_kind: Metric that breached (TEMPERATURA, HUMEDAD, ...).
        triggering_value: Most recent out-of-bounds value.
        severity: BAJA, MEDIA, ALTA or CRITICA.
        message: Human-readable description of the breach.
        company_id: Owning company of the sensor.
        unit: Unit of the triggering value.
        state: ACTIVA, EN_ESCALAMIENTO, ESCALADA or RESUELTA.
        escalation_level: Current level, starts at 0, never decreases.
        breach_count: Out-of-bounds readings folded into this alert.
        created_at: First breach.
        updated_at: Last mutation.
        last_breach_at: Timestamp of the latest breaching reading.
        level_entered_at: When the current escalation level started.
        resolved_at: Set once on resolution.
        resolution_comment: Operator comment given on resolution.
        recipients_notified: Recipients reached at least once, in order.
        attempt_counters: Delivery attempts per channel.
    """

    sensor_id: int
    metric_kind: str
    triggering_value: float
    severity: str
    message: str
    company_id: int | None = None
    unit: str = ""
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: str = "ACTIVA"
    escalation_level: int = 0
    breach_count: int = 1
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime | None = None
    last_breach_at: datetime | None = None
    level_entered_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution_comment: str | None = None
    recipients_notified: list[str] = field(default_factory=list)
    attempt_counters: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.metric_kind not in VALID_METRIC_KINDS:
            raise ValueError(
                f"Invalid metric_kind {self.metric_kind!r}. "
                f"Must be one of: {sorted(VALID_METRIC_KINDS)}"
            )
        if self.severity not in VALID_SEVERITIES:
            raise ValueError(
                f"Invalid severity {self.severity!r}. "
                f"Must be one of: {sorted(VALID_SEVERITIES)}"
            )
        if self.state not in VALID_STATES:
            raise ValueError(
                f"Invalid state {self.state!r}. "
                f"Must be one of: {sorted(VALID_STATES)}"
            )
        if self.escalation_level < 0:
            raise ValueError("escalation_level must be >= 0")
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.last_breach_at is None:
            self.last_breach_at = self.created_at
        if self.level_entered_at is None:
            self.level_entered_at = self.created_at

    @property
    def is_resolved(self) -> bool:
        return self.state == "RESUELTA"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "alert_id": self.alert_id,
            "sensor_id": self.sensor_id,
            "company_id": self.company_id,
            "metric_kind": self.metric_kind,
            "triggering_value": self.triggering_value,
            "unit": self.unit,
            "severity": self.severity,
            "state": self.state,
            "escalation_level": self.escalation_level,
            "message": self.message,
            "breach_count": self.breach_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
            "last_breach_at": _iso(self.last_breach_at),
            "level_entered_at": _iso(self.level_entered_at),
            "resolved_at": _iso(self.resolved_at),
            "resolution_comment": self.resolution_comment,
            "recipients_notified": list(self.recipients_notified),
            "attempt_counters": dict(self.attempt_counters),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        """Create an Alert from a dictionary.

        Args:
            data: Dictionary with alert fields.

        Returns:
            Alert instance.
        """
        created_at = _parse_dt(data.get("created_at")) or datetime.now(timezone.utc)

        attempt_counters = data.get("attempt_counters") or {}
        if isinstance(attempt_counters, str):
            attempt_counters = json.loads(attempt_counters)

        return cls(
            alert_id=data.get("alert_id", str(uuid.uuid4())),
            sensor_id=int(data["sensor_id"]),
            company_id=data.get("company_id"),
            metric_kind=data["metric_kind"],
            triggering_value=float(data["triggering_value"]),
            unit=data.get("unit") or "",
            severity=data["severity"],
            state=data.get("state", "ACTIVA"),
            escalation_level=data.get("escalation_level", 0),
            message=data.get("message", ""),
            breach_count=data.get("breach_count", 1),
            created_at=created_at,
            updated_at=_parse_dt(data.get("updated_at")),
            last_breach_at=_parse_dt(data.get("last_breach_at")),
            level_entered_at=_parse_dt(data.get("level_entered_at")),
            resolved_at=_parse_dt(data.get("resolved_at")),
            resolution_comment=data.get("resolution_comment"),
            recipients_notified=list(data.get("recipients_notified") or []),
            attempt_counters=dict(attempt_counters),
        )


@dataclass
class Recipient:
    """An addressable notification target (destinatario)."""

    recipient_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    preference: str = "EMAIL"
    priority: str = "MEDIA"
    active: bool = True

    def address_for(self, channel: str) -> str | None:
        """Address to use on ``channel``, or None if the recipient opted out."""
        if not self.active:
            return None
        if channel == "email" and self.preference in ("EMAIL", "AMBOS"):
            return self.email
        if channel == "sms" and self.preference in ("SMS", "AMBOS"):
            return self.phone
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "preference": self.preference,
            "priority": self.priority,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipient":
        return cls(
            recipient_id=str(data["recipient_id"]),
            name=data.get("name", ""),
            email=data.get("email"),
            phone=data.get("phone"),
            preference=data.get("preference", "EMAIL"),
            priority=data.get("priority", "MEDIA"),
            active=data.get("active", True),
        )


@dataclass
class EscalationLevel:
    """One escalation step: who to notify and how long before the next step."""

    level: int
    timeout_minutes: int
    recipient_ids: list[str] = field(default_factory=list)
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "timeout_minutes": self.timeout_minutes,
            "recipient_ids": list(self.recipient_ids),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationLevel":
        return cls(
            level=int(data["level"]),
            timeout_minutes=int(data["timeout_minutes"]),
            recipient_ids=[str(r) for r in data.get("recipient_ids", [])],
            message=data.get("message"),
        )


@dataclass
class EscalationPolicy:
    """Escalation settings of a sensor.

    Level 0 notifies every active recipient and lasts
    ``initial_timeout_minutes``; levels 1..N come from ``levels``.
    """

    enabled: bool = False
    initial_timeout_minutes: int = 15
    levels: list[EscalationLevel] = field(default_factory=list)

    @property
    def max_level(self) -> int:
        return max((lvl.level for lvl in self.levels), default=0)

    def get_level(self, level: int) -> EscalationLevel | None:
        for lvl in self.levels:
            if lvl.level == level:
                return lvl
        return None

    def timeout_for(self, level: int) -> int | None:
        """Minutes an alert stays at ``level`` before escalating, None at the top."""
        if level >= self.max_level:
            return None
        if level == 0:
            return self.initial_timeout_minutes
        current = self.get_level(level)
        return current.timeout_minutes if current else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "initial_timeout_minutes": self.initial_timeout_minutes,
            "levels": [lvl.to_dict() for lvl in self.levels],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationPolicy":
        return cls(
            enabled=data.get("enabled", False),
            initial_timeout_minutes=int(data.get("initial_timeout_minutes", 15)),
            levels=[EscalationLevel.from_dict(lvl) for lvl in data.get("levels", [])],
        )


def _parse_hhmm(value: str) -> time:
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError):
        raise ConfigurationInvalid(f"Invalid time {value!r}, expected HH:MM")


@dataclass
class ScheduleWindow:
    """Notification window; outside it non-critical dispatch is deferred.

    Days follow the 0=Sunday .. 6=Saturday convention. ``end`` earlier
    than ``start`` describes an overnight window. An inactive window
    means notifications are allowed at any time.
    """

    start: str = "08:00"
    end: str = "18:00"
    days: list[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    timezone: str = "America/Mexico_City"
    active: bool = True

    @property
    def start_time(self) -> time:
        return _parse_hhmm(self.start)

    @property
    def end_time(self) -> time:
        return _parse_hhmm(self.end)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def validate(self) -> None:
        _parse_hhmm(self.start)
        _parse_hhmm(self.end)
        if self.start == self.end:
            raise ConfigurationInvalid("Schedule window start and end must differ")
        if not self.days or any(d not in range(7) for d in self.days):
            raise ConfigurationInvalid(
                f"Schedule days must be a non-empty subset of 0..6, got {self.days}"
            )
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationInvalid(f"Unknown timezone {self.timezone!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "days": list(self.days),
            "timezone": self.timezone,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleWindow":
        return cls(
            start=data.get("start", "08:00"),
            end=data.get("end", "18:00"),
            days=[int(d) for d in data.get("days", [1, 2, 3, 4, 5])],
            timezone=data.get("timezone", "America/Mexico_City"),
            active=data.get("active", True),
        )


@dataclass
class AlertConfiguration:
    """Per-sensor notification and escalation settings."""

    sensor_id: int
    recipients: list[Recipient] = field(default_factory=list)
    escalation: EscalationPolicy = field(default_factory=EscalationPolicy)
    schedule: ScheduleWindow | None = None
    max_attempts: int = 3
    updated_at: datetime | None = None

    def get_recipient(self, recipient_id: str) -> Recipient | None:
        for recipient in self.recipients:
            if recipient.recipient_id == recipient_id:
                return recipient
        return None

    def recipients_for_level(self, level: int) -> list[Recipient]:
        """Active recipients notified at ``level`` (level 0 is everyone)."""
        if level == 0:
            return [r for r in self.recipients if r.active]
        escalation_level = self.escalation.get_level(level)
        if escalation_level is None:
            return []
        found = (self.get_recipient(rid) for rid in escalation_level.recipient_ids)
        return [r for r in found if r is not None and r.active]

    def validate(self) -> None:
        """Reject inconsistent configurations.

        Raises:
            ConfigurationInvalid: On bad attempt ceilings, non-contiguous
                or zero-timeout levels, unknown recipient references,
                unknown preferences, or a malformed schedule window.
        """
        if not 1 <= self.max_attempts <= 10:
            raise ConfigurationInvalid("max_attempts must be between 1 and 10")

        seen_ids: set[str] = set()
        for recipient in self.recipients:
            if recipient.recipient_id in seen_ids:
                raise ConfigurationInvalid(
                    f"Duplicate recipient id {recipient.recipient_id!r}"
                )
            seen_ids.add(recipient.recipient_id)
            if recipient.preference not in VALID_PREFERENCES:
                raise ConfigurationInvalid(
                    f"Invalid preference {recipient.preference!r}. "
                    f"Must be one of: {sorted(VALID_PREFERENCES)}"
                )
            if recipient.priority not in VALID_SEVERITIES:
                raise ConfigurationInvalid(
                    f"Invalid priority {recipient.priority!r}"
                )

        if self.escalation.initial_timeout_minutes < 1:
            raise ConfigurationInvalid("initial_timeout_minutes must be > 0")

        numbers = sorted(lvl.level for lvl in self.escalation.levels)
        if numbers != list(range(1, len(numbers) + 1)):
            raise ConfigurationInvalid(
                f"Escalation levels must be numbered 1..N, got {numbers}"
            )
        for lvl in self.escalation.levels:
            if lvl.timeout_minutes < 1:
                raise ConfigurationInvalid(
                    f"Level {lvl.level} timeout_minutes must be > 0"
                )
            unknown = [rid for rid in lvl.recipient_ids if rid not in seen_ids]
            if unknown:
                raise ConfigurationInvalid(
                    f"Level {lvl.level} references unknown recipients {unknown}"
                )

        if self.schedule is not None:
            self.schedule.validate()

    def to_dict(self) -> dict[str, Any]:
        return {
            "sensor_id": self.sensor_id,
            "recipients": [r.to_dict() for r in self.recipients],
            "escalation": self.escalation.to_dict(),
            "schedule": self.schedule.to_dict() if self.schedule else None,
            "max_attempts": self.max_attempts,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlertConfiguration":
        schedule = data.get("schedule")
        return cls(
            sensor_id=int(data["sensor_id"]),
            recipients=[Recipient.from_dict(r) for r in data.get("recipients", [])],
            escalation=EscalationPolicy.from_dict(data.get("escalation") or {}),
            schedule=ScheduleWindow.from_dict(schedule) if schedule else None,
            max_attempts=int(data.get("max_attempts", 3)),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class NotificationAttempt:
    """One delivery try: claimed as pending, then completed with its outcome."""

    alert_id: str
    channel: str
    recipient: str
    escalation_level: int
    attempt_number: int
    success: bool
    error: str | None = None
    manual: bool = False
    attempt_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def __post_init__(self) -> None:
        if self.channel not in VALID_CHANNELS:
            raise ValueError(
                f"Invalid channel {self.channel!r}. "
                f"Must be one of: {sorted(VALID_CHANNELS)}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "alert_id": self.alert_id,
            "channel": self.channel,
            "recipient": self.recipient,
            "escalation_level": self.escalation_level,
            "attempt_number": self.attempt_number,
            "success": self.success,
            "error": self.error,
            "manual": self.manual,
            "created_at": self.created_at.isoformat(),
        }
