"""Sensor records and the metric kinds each sensor type may report.

Sensors are owned by the inventory side of the platform; this service
only reads them to resolve the owning company and to validate which
metric kinds may be configured for a sensor.
"""

from dataclasses import dataclass
from typing import Any, Literal

MetricKind = Literal["TEMPERATURA", "HUMEDAD", "PESO", "PRESION"]

VALID_METRIC_KINDS: frozenset[str] = frozenset({
    "TEMPERATURA",
    "HUMEDAD",
    "PESO",
    "PRESION",
})

SensorType = Literal[
    "TEMPERATURA",
    "HUMEDAD",
    "PESO",
    "PRESION",
    "MULTIPARAMETRICO",
]

VALID_SENSOR_TYPES: frozenset[str] = frozenset({
    "TEMPERATURA",
    "HUMEDAD",
    "PESO",
    "PRESION",
    "MULTIPARAMETRICO",
})

# Declared sensor type -> metric kinds it is allowed to report
SENSOR_TYPE_METRICS: dict[str, frozenset[str]] = {
    "TEMPERATURA": frozenset({"TEMPERATURA"}),
    "HUMEDAD": frozenset({"HUMEDAD"}),
    "PESO": frozenset({"PESO"}),
    "PRESION": frozenset({"PRESION"}),
    "MULTIPARAMETRICO": frozenset({"TEMPERATURA", "HUMEDAD"}),
}

DEFAULT_UNITS: dict[str, str] = {
    "TEMPERATURA": "°C",
    "HUMEDAD": "%",
    "PESO": "kg",
    "PRESION": "hPa",
}


def allowed_metrics(sensor_type: str) -> frozenset[str]:
    """Metric kinds a sensor of ``sensor_type`` may be configured for."""
    return SENSOR_TYPE_METRICS.get(sensor_type, frozenset())


@dataclass
class Sensor:
    """A physical sensor installed at a company location.

    Attributes:
        sensor_id: Numeric identifier.
        company_id: Owning company (scopes quiet hours and broadcast topics).
        name: Display name.
        sensor_type: Declared type, determines the allowed metric kinds.
        location: Free-form location label (warehouse, room).
        active: Inactive sensors are still evaluated but listed as such.
    """

    sensor_id: int
    company_id: int
    name: str
    sensor_type: str
    location: str | None = None
    active: bool = True

    def __post_init__(self) -> None:
        if self.sensor_type not in VALID_SENSOR_TYPES:
            raise ValueError(
                f"Invalid sensor_type {self.sensor_type!r}. "
                f"Must be one of: {sorted(VALID_SENSOR_TYPES)}"
            )

    def allows(self, metric_kind: str) -> bool:
        return metric_kind in allowed_metrics(self.sensor_type)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "sensor_id": self.sensor_id,
            "company_id": self.company_id,
            "name": self.name,
            "sensor_type": self.sensor_type,
            "location": self.location,
            "active": self.active,
        }
