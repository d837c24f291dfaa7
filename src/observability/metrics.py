"""
Prometheus metrics for monitoring the alerting pipeline.

Defines and exposes metrics for:
- Reading evaluation outcomes
- Alert lifecycle transitions
- Notification delivery and deferral
- Escalation scheduler ticks
- Realtime gateway connections

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for latency histograms (in seconds)
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsCollector:
    """
    Prometheus metrics collector for the sensor alerting service.

    Usage:
        metrics = get_metrics()
        metrics.start_server()

        metrics.record_reading("TEMPERATURA", "ALERTA")
        metrics.record_notification_attempt("email", success=False)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        # Evaluation
        self.readings_evaluated = Counter(
            "sensor_alerts_readings_evaluated_total",
            "Total readings evaluated",
            ["metric_kind", "classification"],  # NORMAL, ALERTA, CRITICO
        )

        self.readings_invalid = Counter(
            "sensor_alerts_readings_invalid_total",
            "Readings dropped as malformed or for unknown sensors",
            ["reason"],
        )

        self.evaluation_latency = Histogram(
            "sensor_alerts_evaluation_latency_seconds",
            "Latency of evaluating one reading",
            buckets=LATENCY_BUCKETS,
        )

        # Lifecycle
        self.alerts_transitions = Counter(
            "sensor_alerts_transitions_total",
            "Alert lifecycle transitions",
            ["transition", "severity"],  # created, updated, escalated, resolved
        )

        # Notifications
        self.notification_attempts = Counter(
            "sensor_alerts_notification_attempts_total",
            "Notification delivery attempts",
            ["channel", "outcome"],  # success, failure
        )

        self.notification_exhausted = Counter(
            "sensor_alerts_notification_exhausted_total",
            "Attempt chains that reached the attempt ceiling",
            ["channel"],
        )

        self.notifications_deferred = Counter(
            "sensor_alerts_notifications_deferred_total",
            "Dispatches deferred by a quiet-hours window",
        )

        self.deferred_pending = Gauge(
            "sensor_alerts_deferred_pending",
            "Deferred notifications waiting for their window",
        )

        # Escalation scheduler
        self.escalation_tick_latency = Histogram(
            "sensor_alerts_escalation_tick_seconds",
            "Duration of one escalation scheduler tick",
            buckets=LATENCY_BUCKETS,
        )

        self.escalation_errors = Counter(
            "sensor_alerts_escalation_errors_total",
            "Escalation scheduler errors",
            ["error_type"],
        )

        # Realtime gateway
        self.ws_connections = Gauge(
            "sensor_alerts_ws_connections",
            "Live WebSocket connections on this worker",
        )

        self.broadcast_events = Counter(
            "sensor_alerts_broadcast_events_total",
            "Events published to the realtime gateway",
            ["event_type"],
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    # Convenience methods

    def record_reading(
        self,
        metric_kind: str,
        classification: str,
        latency: float | None = None,
    ) -> None:
        """
        Record an evaluated reading.

        Args:
            metric_kind: TEMPERATURA, HUMEDAD, PESO or PRESION
            classification: NORMAL, ALERTA or CRITICO
            latency: Optional evaluation latency in seconds
        """
        self.readings_evaluated.labels(
            metric_kind=metric_kind,
            classification=classification,
        ).inc()

        if latency is not None:
            self.evaluation_latency.observe(latency)

    def record_invalid_reading(self, reason: str) -> None:
        self.readings_invalid.labels(reason=reason).inc()

    def record_transition(self, transition: str, severity: str) -> None:
        """
        Record an alert lifecycle transition.

        Args:
            transition: created, updated, escalated or resolved
            severity: Alert severity after the transition
        """
        self.alerts_transitions.labels(
            transition=transition,
            severity=severity,
        ).inc()

    def record_notification_attempt(self, channel: str, success: bool) -> None:
        outcome = "success" if success else "failure"
        self.notification_attempts.labels(channel=channel, outcome=outcome).inc()

    def record_channel_exhausted(self, channel: str) -> None:
        self.notification_exhausted.labels(channel=channel).inc()

    def record_deferred(self) -> None:
        self.notifications_deferred.inc()

    def set_deferred_pending(self, count: int) -> None:
        self.deferred_pending.set(count)

    def record_escalation_tick(self, latency: float) -> None:
        self.escalation_tick_latency.observe(latency)

    def record_escalation_error(self, error_type: str) -> None:
        self.escalation_errors.labels(error_type=error_type).inc()

    def set_ws_connections(self, count: int) -> None:
        self.ws_connections.set(count)

    def record_broadcast(self, event_type: str) -> None:
        self.broadcast_events.labels(event_type=event_type).inc()


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
