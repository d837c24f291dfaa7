"""Sensor lookups used to scope thresholds, alerts and broadcasts.

Components:
- Sensor: Dataclass mapping to the sensors table
- SensorRepository: Read access (plus upsert for local setups)
- SENSOR_TYPE_METRICS: Declared sensor type -> allowed metric kinds
"""

from src.sensors.repository import SensorRepository
from src.sensors.schemas import (
    DEFAULT_UNITS,
    SENSOR_TYPE_METRICS,
    VALID_METRIC_KINDS,
    VALID_SENSOR_TYPES,
    MetricKind,
    Sensor,
    SensorType,
    allowed_metrics,
)

__all__ = [
    "DEFAULT_UNITS",
    "MetricKind",
    "SENSOR_TYPE_METRICS",
    "Sensor",
    "SensorRepository",
    "SensorType",
    "VALID_METRIC_KINDS",
    "VALID_SENSOR_TYPES",
    "allowed_metrics",
]
