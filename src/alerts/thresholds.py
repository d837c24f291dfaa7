"""Threshold configurations, one variant per metric kind.

Every variant carries the same min/max pair for its own metric plus the
rule that decides when a breach is critical and which severity a
non-critical breach gets. ``build_threshold`` dispatches on
``metric_kind`` so callers never branch on the metric themselves.

    Temperature   critical beyond +/- an absolute margin      ALTA / ALTA
    Humidity      critical beyond +/- an absolute margin      MEDIA low, ALTA high
    Weight        critical below min*f_low or above max*f_high  MEDIA low, ALTA high
    Pressure      critical below min*f_low or above max*f_high  ALTA / ALTA
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Literal

from src.alerts.config import AlertConfig
from src.alerts.errors import ConfigurationInvalid
from src.alerts.schemas import VALID_SEVERITIES
from src.sensors.schemas import VALID_METRIC_KINDS

BreachDirection = Literal["low", "high"]


@dataclass
class ThresholdConfig:
    """Bounds and notification settings for one (sensor, metric kind).

    Attributes:
        sensor_id: Sensor the threshold belongs to.
        min_value: Lower bound, None for no lower bound.
        max_value: Upper bound, None for no upper bound.
        severity_default: Floor severity for non-critical breaches.
        alert_message: Template for ALERTA breaches.
        critical_message: Template for CRITICO breaches.
        verification_interval_minutes: Window for repeated-breach detection.
        enabled: Disabled thresholds never raise alerts.
        notify_email / notify_sms / notify_realtime: Channel toggles.
    """

    metric_kind: ClassVar[str] = ""
    unit: ClassVar[str] = ""
    low_severity: ClassVar[str] = "ALTA"
    high_severity: ClassVar[str] = "ALTA"

    sensor_id: int
    min_value: float | None = None
    max_value: float | None = None
    severity_default: str = "MEDIA"
    alert_message: str | None = None
    critical_message: str | None = None
    verification_interval_minutes: int = 5
    enabled: bool = True
    notify_email: bool = True
    notify_sms: bool = False
    notify_realtime: bool = True
    updated_at: datetime | None = None

    def validate(self) -> None:
        """Raise ConfigurationInvalid if the config cannot be stored."""
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value >= self.max_value
        ):
            raise ConfigurationInvalid(
                f"min_value ({self.min_value}) must be lower than "
                f"max_value ({self.max_value})"
            )
        if self.min_value is None and self.max_value is None:
            raise ConfigurationInvalid("At least one bound is required")
        if self.severity_default not in VALID_SEVERITIES:
            raise ConfigurationInvalid(
                f"Invalid severity_default {self.severity_default!r}. "
                f"Must be one of: {sorted(VALID_SEVERITIES)}"
            )
        if self.verification_interval_minutes < 1:
            raise ConfigurationInvalid("verification_interval_minutes must be > 0")

    def breach_direction(self, value: float) -> BreachDirection | None:
        if self.min_value is not None and value < self.min_value:
            return "low"
        if self.max_value is not None and value > self.max_value:
            return "high"
        return None

    def is_critical(self, value: float, direction: BreachDirection, config: AlertConfig) -> bool:
        raise NotImplementedError

    def severity_for(self, direction: BreachDirection) -> str:
        return self.low_severity if direction == "low" else self.high_severity

    def enabled_channels(self) -> list[str]:
        channels = []
        if self.notify_email:
            channels.append("email")
        if self.notify_sms:
            channels.append("sms")
        if self.notify_realtime:
            channels.append("realtime")
        return channels

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "sensor_id": self.sensor_id,
            "metric_kind": self.metric_kind,
            "unit": self.unit,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "severity_default": self.severity_default,
            "alert_message": self.alert_message,
            "critical_message": self.critical_message,
            "verification_interval_minutes": self.verification_interval_minutes,
            "enabled": self.enabled,
            "notify_email": self.notify_email,
            "notify_sms": self.notify_sms,
            "notify_realtime": self.notify_realtime,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class _AbsoluteMarginThreshold(ThresholdConfig):
    """Critical once the value is a fixed distance past the bound."""

    def margin(self, config: AlertConfig) -> float:
        raise NotImplementedError

    def is_critical(self, value: float, direction: BreachDirection, config: AlertConfig) -> bool:
        margin = self.margin(config)
        if direction == "low":
            return value < self.min_value - margin
        return value > self.max_value + margin


class _RelativeFactorThreshold(ThresholdConfig):
    """Critical once the value passes the bound scaled by a factor."""

    def factors(self, config: AlertConfig) -> tuple[float, float]:
        raise NotImplementedError

    def is_critical(self, value: float, direction: BreachDirection, config: AlertConfig) -> bool:
        low_factor, high_factor = self.factors(config)
        if direction == "low":
            return value < self.min_value * low_factor
        return value > self.max_value * high_factor


@dataclass
class TemperatureThreshold(_AbsoluteMarginThreshold):
    metric_kind: ClassVar[str] = "TEMPERATURA"
    unit: ClassVar[str] = "°C"

    def margin(self, config: AlertConfig) -> float:
        return config.temperature_critical_margin


@dataclass
class HumidityThreshold(_AbsoluteMarginThreshold):
    metric_kind: ClassVar[str] = "HUMEDAD"
    unit: ClassVar[str] = "%"
    low_severity: ClassVar[str] = "MEDIA"

    def margin(self, config: AlertConfig) -> float:
        return config.humidity_critical_margin


@dataclass
class WeightThreshold(_RelativeFactorThreshold):
    metric_kind: ClassVar[str] = "PESO"
    unit: ClassVar[str] = "kg"
    low_severity: ClassVar[str] = "MEDIA"

    def factors(self, config: AlertConfig) -> tuple[float, float]:
        return config.weight_critical_low_factor, config.weight_critical_high_factor


@dataclass
class PressureThreshold(_RelativeFactorThreshold):
    metric_kind: ClassVar[str] = "PRESION"
    unit: ClassVar[str] = "hPa"

    def factors(self, config: AlertConfig) -> tuple[float, float]:
        return config.pressure_critical_low_factor, config.pressure_critical_high_factor


THRESHOLD_TYPES: dict[str, type[ThresholdConfig]] = {
    cls.metric_kind: cls
    for cls in (TemperatureThreshold, HumidityThreshold, WeightThreshold, PressureThreshold)
}


def build_threshold(metric_kind: str, **fields: Any) -> ThresholdConfig:
    """Instantiate the variant for ``metric_kind``.

    Raises:
        ConfigurationInvalid: If the metric kind is unknown.
    """
    if metric_kind not in VALID_METRIC_KINDS:
        raise ConfigurationInvalid(
            f"Invalid metric_kind {metric_kind!r}. "
            f"Must be one of: {sorted(VALID_METRIC_KINDS)}"
        )
    return THRESHOLD_TYPES[metric_kind](**fields)


def threshold_from_dict(data: dict[str, Any]) -> ThresholdConfig:
    """Create a ThresholdConfig variant from a dictionary."""
    updated_at = data.get("updated_at")
    if isinstance(updated_at, str):
        updated_at = datetime.fromisoformat(updated_at)
    return build_threshold(
        data["metric_kind"],
        sensor_id=int(data["sensor_id"]),
        min_value=data.get("min_value"),
        max_value=data.get("max_value"),
        severity_default=data.get("severity_default", "MEDIA"),
        alert_message=data.get("alert_message"),
        critical_message=data.get("critical_message"),
        verification_interval_minutes=data.get("verification_interval_minutes", 5),
        enabled=data.get("enabled", True),
        notify_email=data.get("notify_email", True),
        notify_sms=data.get("notify_sms", False),
        notify_realtime=data.get("notify_realtime", True),
        updated_at=updated_at,
    )
