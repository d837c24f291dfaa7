"""WebSocket endpoint for real-time alert streaming.

Clients connect to ``/ws/alerts`` and receive events for the topics they
subscribe to: ``sensor:<id>`` and ``company:<id>``. Initial topics come
from the ``sensor_id`` / ``company_id`` query parameters; after connecting
clients send JSON control messages::

    {"type": "subscribe", "sensor_id": 25}
    {"type": "unsubscribe", "company_id": 3}
    {"type": "ping"}

A client with no subscriptions receives nothing but heartbeats.

Auth is via ``api_key`` query parameter since browsers cannot set
custom headers on WebSocket upgrade requests.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from src.alerts.broadcaster import AlertBroadcaster, company_topic, sensor_topic, topics_for
from src.api.auth import is_valid_api_key
from src.config.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()

# Module-level broadcaster reference, set during app lifespan
_broadcaster: AlertBroadcaster | None = None


def set_broadcaster(broadcaster: AlertBroadcaster | None) -> None:
    """Set the module-level broadcaster (called during app startup)."""
    global _broadcaster
    _broadcaster = broadcaster


def get_broadcaster() -> AlertBroadcaster | None:
    """Get the current broadcaster instance."""
    return _broadcaster


def _topic_from_message(msg: dict[str, Any]) -> str | None:
    """Topic named by a subscribe/unsubscribe message, or None if malformed."""
    try:
        if msg.get("sensor_id") is not None:
            return sensor_topic(int(msg["sensor_id"]))
        if msg.get("company_id") is not None:
            return company_topic(int(msg["company_id"]))
    except (TypeError, ValueError):
        return None
    return None


async def _handle_message(
    ws: WebSocket,
    broadcaster: AlertBroadcaster,
    raw: str,
) -> None:
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        await ws.send_text(json.dumps({"type": "error", "detail": "Invalid JSON"}))
        return
    if not isinstance(msg, dict):
        await ws.send_text(json.dumps({"type": "error", "detail": "Expected an object"}))
        return

    msg_type = msg.get("type")

    # Accept client-initiated pings
    if msg_type == "ping":
        await ws.send_text(json.dumps({"type": "pong"}))
        return

    if msg_type in ("subscribe", "unsubscribe"):
        topic = _topic_from_message(msg)
        if topic is None:
            await ws.send_text(json.dumps({
                "type": "error",
                "detail": f"{msg_type} requires an integer sensor_id or company_id",
            }))
            return
        if msg_type == "subscribe":
            broadcaster.subscribe(ws, topic)
        else:
            broadcaster.unsubscribe(ws, topic)
        await ws.send_text(json.dumps({
            "type": f"{msg_type}d",
            "topic": topic,
            "topics": sorted(broadcaster.topics_of(ws)),
        }))
        return

    await ws.send_text(json.dumps({
        "type": "error",
        "detail": f"Unknown message type {msg_type!r}",
    }))


@router.websocket("/ws/alerts")
async def ws_alerts(
    ws: WebSocket,
    sensor_id: int | None = Query(default=None),
    company_id: int | None = Query(default=None),
    api_key: str | None = Query(default=None),
) -> None:
    """WebSocket endpoint for real-time alert streaming.

    Query parameters:
        sensor_id: Subscribe to ``sensor:<id>`` on connect.
        company_id: Subscribe to ``company:<id>`` on connect.
        api_key: API key for authentication.
    """
    settings = get_settings()

    # Check feature flag
    if not settings.ws_alerts_enabled:
        await ws.close(code=1008, reason="WebSocket alerts not enabled")
        return

    if not is_valid_api_key(api_key, settings.api_keys):
        await ws.close(code=1008, reason="Invalid or missing API key")
        return

    broadcaster = _broadcaster
    if broadcaster is None:
        await ws.close(code=1011, reason="Broadcaster not available")
        return

    # Accept the connection
    await ws.accept()

    # Register with broadcaster
    if not broadcaster.connect(ws, topics=topics_for(sensor_id, company_id)):
        await ws.close(code=1008, reason="Max connections reached")
        return

    try:
        # Keep connection alive and serve control messages
        while True:
            try:
                raw = await ws.receive_text()
            except WebSocketDisconnect:
                break
            await _handle_message(ws, broadcaster, raw)
    finally:
        broadcaster.disconnect(ws)
