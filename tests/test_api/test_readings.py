"""Tests for reading ingestion endpoints."""

from datetime import datetime, timezone

from src.alerts.errors import InvalidReading, NotFound
from src.alerts.evaluator import BatchResult, EvaluationResult
from src.alerts.schemas import Reading


def _reading(value: float = 40.0) -> Reading:
    return Reading(
        sensor_id=25,
        metric_kind="TEMPERATURA",
        value=value,
        unit="°C",
        timestamp=datetime(2026, 3, 4, 16, 0, tzinfo=timezone.utc),
    )


class TestIngestReading:
    def test_breach_opens_alert(self, client, mock_evaluator, make_alert):
        alert = make_alert()
        mock_evaluator.process.return_value = EvaluationResult(
            reading=_reading(), classification="ALERTA", severity="ALTA", alert=alert,
        )

        resp = client.post(
            "/readings",
            json={"sensor_id": 25, "metric_kind": "TEMPERATURA", "value": 40.0, "unit": "°C"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["processed"] == 1
        result = data["results"][0]
        assert result["classification"] == "ALERTA"
        assert result["alert"]["alert_id"] == alert.alert_id
        payload = mock_evaluator.process.call_args.args[0]
        assert payload["sensor_id"] == 25
        assert payload["timestamp"] is None

    def test_normal_reading(self, client, mock_evaluator):
        mock_evaluator.process.return_value = EvaluationResult(
            reading=_reading(20.0), classification="NORMAL",
        )

        resp = client.post(
            "/readings", json={"sensor_id": 25, "metric_kind": "TEMPERATURA", "value": 20.0},
        )

        result = resp.json()["results"][0]
        assert result["classification"] == "NORMAL"
        assert result["alert"] is None

    def test_unknown_sensor(self, client, mock_evaluator):
        mock_evaluator.process.side_effect = NotFound("Sensor 999 not found")
        resp = client.post(
            "/readings", json={"sensor_id": 999, "metric_kind": "TEMPERATURA", "value": 1.0},
        )
        assert resp.status_code == 404

    def test_metric_not_allowed(self, client, mock_evaluator):
        mock_evaluator.process.side_effect = InvalidReading(
            "Sensor 25 of type TEMPERATURA cannot report PESO",
        )
        resp = client.post(
            "/readings", json={"sensor_id": 25, "metric_kind": "PESO", "value": 1.0},
        )
        assert resp.status_code == 422
        assert "cannot report PESO" in resp.json()["detail"]

    def test_non_numeric_value_rejected(self, client, mock_evaluator):
        resp = client.post(
            "/readings", json={"sensor_id": 25, "metric_kind": "TEMPERATURA", "value": "hot"},
        )
        assert resp.status_code == 422
        mock_evaluator.process.assert_not_called()

    def test_missing_metric_rejected(self, client):
        resp = client.post("/readings", json={"sensor_id": 25, "value": 1.0})
        assert resp.status_code == 422

    def test_unexpected_error(self, client, mock_evaluator):
        mock_evaluator.process.side_effect = RuntimeError("pool closed")
        resp = client.post(
            "/readings", json={"sensor_id": 25, "metric_kind": "TEMPERATURA", "value": 1.0},
        )
        assert resp.status_code == 500


class TestIngestBatch:
    def test_batch_reports_errors(self, client, mock_evaluator):
        mock_evaluator.process_batch.return_value = BatchResult(
            results=[EvaluationResult(reading=_reading(20.0), classification="NORMAL")],
            errors=[{"index": 1, "error": "Sensor 999 not found"}],
        )

        resp = client.post(
            "/readings/batch",
            json={"readings": [
                {"sensor_id": 25, "metric_kind": "TEMPERATURA", "value": 20.0},
                {"sensor_id": 999, "metric_kind": "TEMPERATURA", "value": 20.0},
            ]},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["processed"] == 1
        assert data["errors"] == [{"index": 1, "error": "Sensor 999 not found"}]
        assert len(mock_evaluator.process_batch.call_args.args[0]) == 2

    def test_empty_batch_rejected(self, client):
        resp = client.post("/readings/batch", json={"readings": []})
        assert resp.status_code == 422
