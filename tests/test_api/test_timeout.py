"""Tests for TimeoutMiddleware."""

import asyncio

from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient

from src.api.middleware.timeout import DEFAULT_EXCLUDED_PREFIXES, TimeoutMiddleware

SLOW_SECONDS = 0.3


def _client(timeout: float, **kwargs) -> TestClient:
    app = FastAPI()
    app.add_middleware(TimeoutMiddleware, timeout_seconds=timeout, **kwargs)

    @app.get("/alerts")
    async def list_alerts():
        return {"alerts": []}

    @app.post("/readings")
    async def ingest():
        await asyncio.sleep(SLOW_SECONDS)
        return {"processed": 1}

    @app.get("/health")
    async def health():
        await asyncio.sleep(SLOW_SECONDS)
        return {"status": "healthy"}

    @app.websocket("/ws/alerts")
    async def ws_alerts(ws: WebSocket):
        await ws.accept()
        await asyncio.sleep(SLOW_SECONDS)
        await ws.send_json({"type": "alert-created"})
        await ws.close()

    return TestClient(app)


class TestTimeoutMiddleware:
    def test_within_budget(self):
        response = _client(timeout=5.0).get("/alerts")
        assert response.status_code == 200
        assert response.json() == {"alerts": []}

    def test_slow_ingestion_returns_504(self):
        response = _client(timeout=0.05).post("/readings")

        assert response.status_code == 504
        body = response.json()
        assert body["path"] == "/readings"
        assert body["timeout_seconds"] == 0.05
        assert "timed out" in body["detail"]

    def test_health_not_bounded(self):
        response = _client(timeout=0.05).get("/health")
        assert response.status_code == 200

    def test_websocket_not_bounded(self):
        with _client(timeout=0.05).websocket_connect("/ws/alerts") as ws:
            assert ws.receive_json() == {"type": "alert-created"}

    def test_custom_exclusions_replace_defaults(self):
        client = _client(timeout=0.05, excluded_prefixes=("/readings",))

        assert client.post("/readings").status_code == 200
        assert client.get("/health").status_code == 504

    def test_default_exclusions(self):
        assert "/health" in DEFAULT_EXCLUDED_PREFIXES
        assert "/ws/" in DEFAULT_EXCLUDED_PREFIXES
