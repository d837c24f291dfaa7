"""Tests for the Prometheus metrics collector."""

from prometheus_client import REGISTRY

from src.observability.metrics import get_metrics


def _value(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestMetricsCollector:
    def test_singleton(self):
        assert get_metrics() is get_metrics()

    def test_record_reading(self):
        metrics = get_metrics()
        before = _value(
            "sensor_alerts_readings_evaluated_total",
            metric_kind="TEMPERATURA", classification="CRITICO",
        )
        latency_before = _value("sensor_alerts_evaluation_latency_seconds_count")

        metrics.record_reading("TEMPERATURA", "CRITICO", latency=0.02)

        assert _value(
            "sensor_alerts_readings_evaluated_total",
            metric_kind="TEMPERATURA", classification="CRITICO",
        ) == before + 1
        assert _value("sensor_alerts_evaluation_latency_seconds_count") == latency_before + 1

    def test_record_transition(self):
        metrics = get_metrics()
        before = _value("sensor_alerts_transitions_total", transition="escalated", severity="ALTA")

        metrics.record_transition("escalated", "ALTA")

        assert _value(
            "sensor_alerts_transitions_total", transition="escalated", severity="ALTA",
        ) == before + 1

    def test_notification_outcomes(self):
        metrics = get_metrics()
        ok = _value("sensor_alerts_notification_attempts_total", channel="sms", outcome="success")
        failed = _value("sensor_alerts_notification_attempts_total", channel="sms", outcome="failure")

        metrics.record_notification_attempt("sms", success=True)
        metrics.record_notification_attempt("sms", success=False)
        metrics.record_notification_attempt("sms", success=False)

        assert _value(
            "sensor_alerts_notification_attempts_total", channel="sms", outcome="success",
        ) == ok + 1
        assert _value(
            "sensor_alerts_notification_attempts_total", channel="sms", outcome="failure",
        ) == failed + 2

    def test_gauges(self):
        metrics = get_metrics()

        metrics.set_deferred_pending(7)
        metrics.set_ws_connections(2)

        assert _value("sensor_alerts_deferred_pending") == 7
        assert _value("sensor_alerts_ws_connections") == 2
