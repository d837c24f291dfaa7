"""Reading evaluation: classify each reading against its threshold.

``classify_reading`` is a pure function in the style of the other
stateless checks: threshold + value (+ the open alert for the repeated
breach rule) in, classification out. ``ReadingEvaluator`` does the I/O
around it: resolve sensor and threshold, look up the open alert, and
hand ALERTA/CRITICO readings to the lifecycle manager. NORMAL readings
never resolve an open alert. Every evaluated reading is published as a
``sensor-reading`` event for live dashboards.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from src.alerts.broadcaster import topics_for
from src.alerts.config import AlertConfig
from src.alerts.errors import InvalidReading, NotFound
from src.alerts.lifecycle import AlertLifecycleManager
from src.alerts.schemas import Alert, Reading, max_severity
from src.alerts.threshold_store import ThresholdStore
from src.alerts.thresholds import ThresholdConfig
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

_METRIC_LABELS = {
    "TEMPERATURA": "Temperatura",
    "HUMEDAD": "Humedad",
    "PESO": "Peso",
    "PRESION": "Presión",
}


class _SafeFormat(dict):
    """Leaves unknown ``{placeholders}`` in the text untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass
class Classification:
    """Outcome of classifying one value against one threshold."""

    level: str  # NORMAL, ALERTA or CRITICO
    severity: str | None = None
    direction: str | None = None
    repeated: bool = False

    @property
    def is_breach(self) -> bool:
        return self.level != "NORMAL"


NORMAL = Classification(level="NORMAL")


def classify_reading(
    threshold: ThresholdConfig | None,
    value: float,
    config: AlertConfig,
    open_alert: Alert | None = None,
    timestamp: datetime | None = None,
) -> Classification:
    """Classify ``value`` as NORMAL, ALERTA or CRITICO.

    A value beyond the variant's critical margin is CRITICO. A value that
    is only out of bounds is ALERTA, unless it is the Nth breach folded
    into ``open_alert`` and arrives within the verification interval of
    the previous breach, in which case it is CRITICO as well.

    Args:
        threshold: Threshold for the reading's (sensor, metric), if any.
        value: Reading value.
        config: Alert configuration with margins and repeat count.
        open_alert: The pair's non-resolved alert, if any.
        timestamp: Reading time, needed for the repeated-breach rule.

    Returns:
        Classification with the severity to record.
    """
    if threshold is None or not threshold.enabled:
        return NORMAL

    direction = threshold.breach_direction(value)
    if direction is None:
        return NORMAL

    if threshold.is_critical(value, direction, config):
        return Classification(level="CRITICO", severity="CRITICA", direction=direction)

    if open_alert is not None and timestamp is not None:
        interval = timedelta(minutes=threshold.verification_interval_minutes)
        within = timestamp - open_alert.last_breach_at <= interval
        if within and open_alert.breach_count + 1 >= config.repeat_breach_count:
            return Classification(
                level="CRITICO",
                severity="CRITICA",
                direction=direction,
                repeated=True,
            )

    severity = max_severity(threshold.severity_default, threshold.severity_for(direction))
    return Classification(level="ALERTA", severity=severity, direction=direction)


def render_message(
    threshold: ThresholdConfig,
    classification: Classification,
    value: float,
    unit: str,
) -> str:
    """Message for a breach: the threshold's template or a default description.

    Templates may use ``{sensor_id} {metric} {value} {unit} {min} {max}
    {severity}``; unknown placeholders are left as written.
    """
    template = (
        threshold.critical_message
        if classification.level == "CRITICO"
        else threshold.alert_message
    )
    if template:
        try:
            return template.format_map(_SafeFormat(
                sensor_id=threshold.sensor_id,
                metric=threshold.metric_kind,
                value=value,
                unit=unit,
                min=threshold.min_value,
                max=threshold.max_value,
                severity=classification.severity,
            ))
        except (ValueError, IndexError, AttributeError) as e:
            logger.warning(
                "Bad message template for sensor %d %s: %s",
                threshold.sensor_id, threshold.metric_kind, e,
            )

    label = _METRIC_LABELS.get(threshold.metric_kind, threshold.metric_kind)
    if classification.direction == "low":
        bound = f"por debajo del mínimo ({threshold.min_value} {unit})"
    else:
        bound = f"por encima del máximo ({threshold.max_value} {unit})"
    prefix = "CRÍTICO: " if classification.level == "CRITICO" else ""
    text = f"{prefix}{label} de {value} {unit} {bound} en sensor {threshold.sensor_id}"
    if classification.repeated:
        text += " (lecturas fuera de rango repetidas)"
    return text


@dataclass
class EvaluationResult:
    """What happened to one reading."""

    reading: Reading
    classification: str
    severity: str | None = None
    alert: Alert | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sensor_id": self.reading.sensor_id,
            "metric_kind": self.reading.metric_kind,
            "value": self.reading.value,
            "classification": self.classification,
            "severity": self.severity,
            "alert": self.alert.to_dict() if self.alert else None,
        }


@dataclass
class BatchResult:
    """Per-reading outcomes of a batch; failures do not stop the batch."""

    results: list[EvaluationResult] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


class ReadingEvaluator:
    """Consumes reading events and drives the alert lifecycle."""

    def __init__(
        self,
        threshold_store: ThresholdStore,
        lifecycle: AlertLifecycleManager,
        config: AlertConfig | None = None,
        broadcaster: Any | None = None,
    ) -> None:
        self._store = threshold_store
        self._lifecycle = lifecycle
        self._config = config or AlertConfig()
        self._broadcaster = broadcaster

    async def evaluate(self, reading: Reading) -> EvaluationResult:
        """Classify a parsed reading and create or update its alert.

        Raises:
            NotFound: If the sensor does not exist.
            InvalidReading: If the sensor type does not report this metric.
        """
        started = time.perf_counter()

        sensor = await self._store.get_sensor(reading.sensor_id)
        if sensor is None:
            raise NotFound(f"Sensor {reading.sensor_id} not found")
        if not sensor.allows(reading.metric_kind):
            raise InvalidReading(
                f"Sensor {sensor.sensor_id} ({sensor.sensor_type}) does not "
                f"report {reading.metric_kind}"
            )

        threshold = await self._store.get(reading.sensor_id, reading.metric_kind)
        open_alert = None
        if threshold is not None and threshold.enabled:
            open_alert = await self._lifecycle.get_open(
                reading.sensor_id, reading.metric_kind,
            )

        result = classify_reading(
            threshold,
            reading.value,
            self._config,
            open_alert=open_alert,
            timestamp=reading.timestamp,
        )

        alert = None
        if result.is_breach:
            unit = reading.unit or threshold.unit
            alert = await self._lifecycle.create_or_update(
                sensor_id=reading.sensor_id,
                company_id=sensor.company_id,
                metric_kind=reading.metric_kind,
                value=reading.value,
                unit=unit,
                severity=result.severity,
                message=render_message(threshold, result, reading.value, unit),
                timestamp=reading.timestamp,
            )

        get_metrics().record_reading(
            reading.metric_kind,
            result.level,
            latency=time.perf_counter() - started,
        )
        self._publish_reading(reading, sensor.company_id, result, alert, threshold)
        return EvaluationResult(
            reading=reading,
            classification=result.level,
            severity=result.severity,
            alert=alert,
        )

    def _publish_reading(
        self,
        reading: Reading,
        company_id: int,
        result: Classification,
        alert: Alert | None,
        threshold: ThresholdConfig | None,
    ) -> None:
        if self._broadcaster is None:
            return
        data = {
            "sensor_id": reading.sensor_id,
            "company_id": company_id,
            "metric_kind": reading.metric_kind,
            "value": reading.value,
            "unit": reading.unit or (threshold.unit if threshold else ""),
            "timestamp": reading.timestamp.isoformat(),
            "classification": result.level,
            "severity": result.severity,
            "alert_id": alert.alert_id if alert else None,
        }
        self._lifecycle.run_in_background(
            self._broadcaster.publish_event(
                "sensor-reading", data, topics_for(reading.sensor_id, company_id),
            ),
            name=f"reading:{reading.sensor_id}:{reading.metric_kind}",
        )

    async def process(self, raw: dict[str, Any]) -> EvaluationResult:
        """Parse and evaluate one raw reading payload.

        Raises:
            InvalidReading: Malformed payload; the reading is dropped.
            NotFound: Unknown sensor.
        """
        try:
            reading = Reading.from_dict(raw)
        except InvalidReading as e:
            get_metrics().record_invalid_reading("malformed")
            logger.info("Dropping invalid reading: %s", e)
            raise
        try:
            return await self.evaluate(reading)
        except NotFound:
            get_metrics().record_invalid_reading("unknown_sensor")
            raise
        except InvalidReading as e:
            get_metrics().record_invalid_reading("metric_not_allowed")
            logger.info("Dropping invalid reading: %s", e)
            raise

    async def process_batch(self, raws: list[dict[str, Any]]) -> BatchResult:
        """Evaluate readings in order, isolating failures per reading."""
        batch = BatchResult()
        for index, raw in enumerate(raws):
            try:
                batch.results.append(await self.process(raw))
            except (InvalidReading, NotFound) as e:
                batch.errors.append({"index": index, "error": str(e)})
            except Exception as e:
                logger.error("Unexpected error evaluating reading %d: %s", index, e)
                batch.errors.append({"index": index, "error": "internal error"})
        return batch
