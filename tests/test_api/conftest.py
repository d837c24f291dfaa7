"""Shared fixtures for API tests."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.alerts.evaluator import ReadingEvaluator
from src.alerts.schemas import Alert
from src.alerts.service import AlertService
from src.api.app import create_app
from src.api.auth import verify_api_key
from src.api.dependencies import (
    get_alert_service,
    get_database,
    get_reading_evaluator,
    get_redis_client,
)


def _make_alert(
    alert_id: str = "alert_001",
    severity: str = "ALTA",
    state: str = "ACTIVA",
    **kwargs,
) -> Alert:
    """Helper to create an Alert with sensible defaults."""
    return Alert(
        alert_id=alert_id,
        sensor_id=kwargs.pop("sensor_id", 25),
        company_id=kwargs.pop("company_id", 3),
        metric_kind=kwargs.pop("metric_kind", "TEMPERATURA"),
        triggering_value=kwargs.pop("triggering_value", 40.0),
        unit=kwargs.pop("unit", "°C"),
        severity=severity,
        state=state,
        message=kwargs.pop(
            "message",
            "Temperatura de 40.0 °C por encima del máximo (35.0 °C) en sensor 25",
        ),
        created_at=kwargs.pop(
            "created_at", datetime(2026, 3, 4, 16, 0, 0, tzinfo=timezone.utc)
        ),
        **kwargs,
    )


async def _no_message(**kwargs):
    await asyncio.sleep(0.01)
    return None


def _mock_redis():
    """Redis client good enough for the broadcaster and /health."""
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.close = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=_no_message)

    client = MagicMock()
    client.pubsub.return_value = pubsub
    client.publish = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def make_alert():
    return _make_alert


@pytest.fixture
def mock_alert_service():
    """Mock AlertService."""
    service = AsyncMock(spec=AlertService)
    service.list_alerts.return_value = []
    service.get_active.return_value = []
    return service


@pytest.fixture
def mock_evaluator():
    """Mock ReadingEvaluator."""
    return AsyncMock(spec=ReadingEvaluator)


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.health_check = AsyncMock(return_value=True)
    return db


@pytest.fixture
def mock_redis():
    return _mock_redis()


@pytest.fixture
def app(mock_alert_service, mock_evaluator, mock_db, mock_redis):
    """FastAPI app with dependency overrides; Redis is patched for the lifespan."""
    app = create_app()

    app.dependency_overrides[verify_api_key] = lambda: "test-key"
    app.dependency_overrides[get_alert_service] = lambda: mock_alert_service
    app.dependency_overrides[get_reading_evaluator] = lambda: mock_evaluator
    app.dependency_overrides[get_database] = lambda: mock_db
    app.dependency_overrides[get_redis_client] = lambda: mock_redis

    publisher = MagicMock()
    publisher.start = AsyncMock()
    publisher.stop = AsyncMock()

    with patch("redis.asyncio.from_url", return_value=mock_redis), patch(
        "src.api.app.get_sensor_state_publisher", AsyncMock(return_value=publisher),
    ):
        yield app

    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """FastAPI TestClient with the lifespan running."""
    with TestClient(app) as c:
        yield c
