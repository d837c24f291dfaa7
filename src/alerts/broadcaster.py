"""Realtime alert gateway: topic subscriptions with Redis pub/sub fan-out.

WebSocket clients subscribe to ``sensor:<id>`` and ``company:<id>``
topics. Lifecycle events (``alert-created``, ``alert-escalated``,
``alert-resolved``), realtime notifications (``alert-notification``) and
evaluated readings (``sensor-reading``) are published to the topics of
their sensor and company. Periodic ``sensor-states`` snapshots go to
company topics from each process to its own clients.

With a Redis client, events go through the ``alerts:broadcast`` channel
and every API worker's listener delivers them to its own clients, so this
scales across multiple uvicorn workers. Without Redis, events are
delivered to this process's clients directly. Delivery is best-effort and
at-most-once.

Pattern: Background subscriber task + per-topic subscription registry.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from collections.abc import Callable
from typing import Any

from starlette.websockets import WebSocket

from src.alerts.schemas import Alert
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

CHANNEL_NAME = "alerts:broadcast"

EVENT_TYPES: frozenset[str] = frozenset({
    "alert-created",
    "alert-escalated",
    "alert-resolved",
    "alert-notification",
    "sensor-reading",
    "sensor-states",
    "heartbeat",
})


def sensor_topic(sensor_id: int) -> str:
    return f"sensor:{sensor_id}"


def company_topic(company_id: int) -> str:
    return f"company:{company_id}"


def topics_for(sensor_id: int | None, company_id: int | None) -> list[str]:
    """Topics an event about this sensor/company is published to."""
    topics: list[str] = []
    if sensor_id is not None:
        topics.append(sensor_topic(sensor_id))
    if company_id is not None:
        topics.append(company_topic(company_id))
    return topics


def _payload(event_type: str, data: dict[str, Any], topics: list[str]) -> dict[str, Any]:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type {event_type!r}")
    return {
        "type": event_type,
        "topics": list(topics),
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@dataclass
class ClientConnection:
    """A connected WebSocket client and the topics it follows."""

    ws: WebSocket
    topics: set[str] = field(default_factory=set)
    connected_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class AlertBroadcaster:
    """Manages WebSocket subscriptions and the Redis pub/sub subscription.

    Lifecycle:
        1. ``start(redis_client)``: subscribe to Redis channel (if any),
           spawn listener and heartbeat tasks
        2. ``connect(ws, topics)`` / ``subscribe`` / ``unsubscribe`` /
           ``disconnect(ws)``: manage clients
        3. ``publish_event(...)`` / ``publish_alert(...)``: emit events
        4. ``stop()``: cancel background tasks, close pub/sub
    """

    def __init__(
        self,
        max_connections: int = 100,
        heartbeat_interval: int = 30,
    ) -> None:
        self._max_connections = max_connections
        self._heartbeat_interval = heartbeat_interval
        self._clients: dict[WebSocket, ClientConnection] = {}
        self._topics: dict[str, set[WebSocket]] = {}
        self._subscriber_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._redis: Any | None = None
        self._pubsub: Any | None = None
        self._observers: list[Callable[[dict[str, Any]], None]] = []
        self._running = False

    @property
    def active_connections(self) -> int:
        """Number of currently connected WebSocket clients."""
        return len(self._clients)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uses_redis(self) -> bool:
        return self._pubsub is not None

    def subscribers(self, topic: str) -> set[WebSocket]:
        return set(self._topics.get(topic, ()))

    def subscribed_companies(self) -> list[int]:
        """Companies with at least one client of this process on their topic."""
        companies = []
        for topic in self._topics:
            prefix, _, company_id = topic.partition(":")
            if prefix == "company" and company_id.isdigit():
                companies.append(int(company_id))
        return sorted(companies)

    def add_observer(self, observer: Callable[[dict[str, Any]], None]) -> None:
        """Call ``observer`` with every payload this process receives."""
        self._observers.append(observer)

    def topics_of(self, ws: WebSocket) -> set[str]:
        client = self._clients.get(ws)
        return set(client.topics) if client else set()

    def connect(self, ws: WebSocket, topics: list[str] | None = None) -> bool:
        """Register a new WebSocket client.

        Args:
            ws: WebSocket connection.
            topics: Initial topic subscriptions.

        Returns:
            True if registered, False if max connections reached.
        """
        if len(self._clients) >= self._max_connections:
            return False

        self._clients[ws] = ClientConnection(ws=ws)
        for topic in topics or []:
            self.subscribe(ws, topic)

        get_metrics().set_ws_connections(len(self._clients))
        logger.info(
            "WebSocket client connected (total=%d, topics=%s)",
            len(self._clients), sorted(topics or []),
        )
        return True

    def disconnect(self, ws: WebSocket) -> None:
        """Remove a WebSocket client and all of its subscriptions."""
        removed = self._clients.pop(ws, None)
        if removed:
            for topic in removed.topics:
                self._drop_subscriber(topic, ws)
            get_metrics().set_ws_connections(len(self._clients))
            logger.info(
                "WebSocket client disconnected (total=%d)", len(self._clients),
            )

    def subscribe(self, ws: WebSocket, topic: str) -> bool:
        """Add ``topic`` to a connected client. False if not connected."""
        client = self._clients.get(ws)
        if client is None:
            return False
        client.topics.add(topic)
        self._topics.setdefault(topic, set()).add(ws)
        return True

    def unsubscribe(self, ws: WebSocket, topic: str) -> bool:
        client = self._clients.get(ws)
        if client is None or topic not in client.topics:
            return False
        client.topics.discard(topic)
        self._drop_subscriber(topic, ws)
        return True

    def _drop_subscriber(self, topic: str, ws: WebSocket) -> None:
        subscribers = self._topics.get(topic)
        if subscribers is None:
            return
        subscribers.discard(ws)
        if not subscribers:
            del self._topics[topic]

    async def start(self, redis_client: Any | None = None) -> None:
        """Start the Redis subscriber (if any) and heartbeat background tasks.

        Args:
            redis_client: An async Redis client instance, or None for
                single-process delivery.
        """
        if self._running:
            return

        self._running = True

        if redis_client is not None:
            try:
                self._pubsub = redis_client.pubsub()
                await self._pubsub.subscribe(CHANNEL_NAME)
                self._redis = redis_client
                self._subscriber_task = asyncio.create_task(
                    self._listen(), name="alert-broadcaster-listener",
                )
            except Exception as e:
                self._pubsub = None
                self._redis = None
                logger.error(
                    "Redis pub/sub unavailable, broadcasting locally only: %s", e,
                )

        self._heartbeat_task = asyncio.create_task(
            self._send_heartbeats(), name="alert-broadcaster-heartbeat",
        )
        logger.info(
            "AlertBroadcaster started (redis=%s, heartbeat=%ds)",
            self.uses_redis, self._heartbeat_interval,
        )

    async def stop(self) -> None:
        """Stop the subscriber and heartbeat tasks, close pub/sub."""
        self._running = False

        for task in (self._subscriber_task, self._heartbeat_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._subscriber_task = None
        self._heartbeat_task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(CHANNEL_NAME)
                await self._pubsub.close()
            except Exception as e:
                logger.warning("Error closing pub/sub: %s", e)
            self._pubsub = None
        self._redis = None

        self._clients.clear()
        self._topics.clear()
        get_metrics().set_ws_connections(0)
        logger.info("AlertBroadcaster stopped")

    async def publish_event(
        self,
        event_type: str,
        data: dict[str, Any],
        topics: list[str],
    ) -> bool:
        """Publish one event to ``topics``.

        Returns:
            True if the event was handed to Redis or delivered locally.
        """
        payload = _payload(event_type, data, topics)
        get_metrics().record_broadcast(event_type)

        if self._redis is not None:
            try:
                await self._redis.publish(CHANNEL_NAME, json.dumps(payload, default=str))
                return True
            except Exception as e:
                logger.warning("Failed to publish %s to broadcast channel: %s", event_type, e)
                return False

        await self._deliver(payload)
        return True

    async def deliver_local(
        self,
        event_type: str,
        data: dict[str, Any],
        topics: list[str],
    ) -> None:
        """Deliver to this process's clients only, bypassing Redis."""
        get_metrics().record_broadcast(event_type)
        await self._deliver(_payload(event_type, data, topics))

    async def publish_alert(self, event_type: str, alert: Alert) -> bool:
        """Publish a lifecycle event for ``alert`` to its sensor and company."""
        return await self.publish_event(
            event_type,
            alert.to_dict(),
            topics_for(alert.sensor_id, alert.company_id),
        )

    async def _listen(self) -> None:
        """Background task: read messages from Redis pub/sub and deliver."""
        try:
            while self._running:
                try:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0,
                    )
                    if message is not None and message["type"] == "message":
                        await self._dispatch_message(message["data"])
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Error reading pub/sub message: %s", e)
                    await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            pass

    async def _dispatch_message(self, raw_data: str | bytes) -> None:
        """Parse a pub/sub message and deliver it to local subscribers."""
        try:
            if isinstance(raw_data, bytes):
                raw_data = raw_data.decode("utf-8")
            payload = json.loads(raw_data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Invalid broadcast message: %s", e)
            return
        await self._deliver(payload)

    async def _deliver(self, payload: dict[str, Any]) -> None:
        """Send ``payload`` once to every client following any of its topics."""
        for observer in self._observers:
            try:
                observer(payload)
            except Exception as e:
                logger.warning("Broadcast observer failed: %s", e)

        targets: set[WebSocket] = set()
        for topic in payload.get("topics", []):
            targets |= self._topics.get(topic, set())
        if not targets:
            return

        text = json.dumps(payload, default=str)
        disconnected: list[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_text(text)
            except Exception:
                disconnected.append(ws)

        for ws in disconnected:
            self.disconnect(ws)

    async def _send_heartbeats(self) -> None:
        """Background task: send periodic heartbeat pings to all clients."""
        try:
            while self._running:
                await asyncio.sleep(self._heartbeat_interval)
                if not self._clients:
                    continue

                heartbeat = json.dumps({
                    "type": "heartbeat",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                })

                disconnected: list[WebSocket] = []
                for ws in list(self._clients):
                    try:
                        await ws.send_text(heartbeat)
                    except Exception:
                        disconnected.append(ws)

                for ws in disconnected:
                    self.disconnect(ws)
        except asyncio.CancelledError:
            pass
