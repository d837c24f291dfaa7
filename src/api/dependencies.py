"""
Dependency injection for FastAPI endpoints.

Every collaborator is a module-level singleton created on first use, so
routes, the lifespan hooks and the CLI share one instance per process.
Tests replace any of them through ``app.dependency_overrides``.
"""

from typing import AsyncGenerator

import redis.asyncio as redis
import structlog

from src.alerts.attempts import NotificationAttemptRepository
from src.alerts.broadcaster import AlertBroadcaster
from src.alerts.channels import EmailChannel, NotificationChannel, RealtimeChannel, SmsChannel
from src.alerts.config import AlertConfig
from src.alerts.config_repository import AlertConfigRepository
from src.alerts.dispatcher import NotificationConfig, NotificationDispatcher
from src.alerts.escalation import EscalationScheduler
from src.alerts.evaluator import ReadingEvaluator
from src.alerts.lifecycle import AlertLifecycleManager
from src.alerts.repository import AlertRepository
from src.alerts.schedule import ScheduleFilter
from src.alerts.sensor_states import SensorStatePublisher
from src.alerts.service import AlertService
from src.alerts.threshold_store import ThresholdRepository, ThresholdStore
from src.config.settings import Settings, get_settings
from src.queues.deferred import DeferredNotificationQueue
from src.sensors.repository import SensorRepository
from src.storage.database import Database

logger = structlog.get_logger(__name__)

# Global service instances (initialized on first request)
_database: Database | None = None
_redis_client: redis.Redis | None = None
_broadcaster: AlertBroadcaster | None = None
_threshold_store: ThresholdStore | None = None
_dispatcher: NotificationDispatcher | None = None
_lifecycle: AlertLifecycleManager | None = None
_evaluator: ReadingEvaluator | None = None
_alert_service: AlertService | None = None
_scheduler: EscalationScheduler | None = None
_state_publisher: SensorStatePublisher | None = None


async def get_database() -> Database:
    """Get the shared, connected Database."""
    global _database

    if _database is None:
        database = Database()
        await database.connect()
        _database = database

    return _database


def _get_redis() -> redis.Redis:
    global _redis_client

    if _redis_client is None:
        settings = get_settings()
        _redis_client = redis.from_url(
            str(settings.redis_url),
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def get_redis_client() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client used for broadcast fan-out."""
    yield _get_redis()


async def get_alert_repository() -> AlertRepository:
    return AlertRepository(await get_database())


async def get_attempt_repository() -> NotificationAttemptRepository:
    return NotificationAttemptRepository(await get_database())


async def get_config_repository() -> AlertConfigRepository:
    return AlertConfigRepository(await get_database())


async def get_deferred_queue() -> DeferredNotificationQueue:
    return DeferredNotificationQueue(await get_database())


async def get_threshold_store() -> ThresholdStore:
    """
    Get the threshold store.

    A singleton so the TTL cache is shared within this process. Upserts
    made by other processes reach it through Redis pub/sub.
    """
    global _threshold_store

    if _threshold_store is None:
        database = await get_database()
        _threshold_store = ThresholdStore(
            ThresholdRepository(database),
            SensorRepository(database),
            cache_ttl=AlertConfig().threshold_cache_ttl_seconds,
        )
        await _threshold_store.start_sync(_get_redis())

    return _threshold_store


async def get_alert_broadcaster() -> AlertBroadcaster:
    """
    Get the realtime broadcaster, started on first use.

    Uses Redis pub/sub when Redis is reachable, otherwise delivers to
    this process's WebSocket clients only.
    """
    global _broadcaster

    if _broadcaster is None:
        settings = get_settings()
        broadcaster = AlertBroadcaster(
            max_connections=settings.ws_max_connections,
            heartbeat_interval=settings.ws_heartbeat_seconds,
        )
        await broadcaster.start(_get_redis())
        _broadcaster = broadcaster

    return _broadcaster


async def get_sensor_state_publisher() -> SensorStatePublisher:
    """Get the sensor-states snapshot publisher (not started)."""
    global _state_publisher

    if _state_publisher is None:
        database = await get_database()
        _state_publisher = SensorStatePublisher(
            broadcaster=await get_alert_broadcaster(),
            sensor_repo=SensorRepository(database),
            alert_repo=AlertRepository(database),
            interval_seconds=get_settings().ws_sensor_states_seconds,
        )

    return _state_publisher


async def stop_alert_broadcaster() -> None:
    """Stop the broadcaster background tasks (app shutdown)."""
    global _broadcaster

    if _broadcaster is not None:
        await _broadcaster.stop()
        _broadcaster = None


def build_channels(
    settings: Settings,
    broadcaster: AlertBroadcaster,
    config: NotificationConfig,
) -> list[NotificationChannel]:
    """Channels whose provider credentials are configured, plus realtime."""
    channels: list[NotificationChannel] = [RealtimeChannel(broadcaster)]

    if settings.email_configured:
        channels.append(
            EmailChannel(
                api_key=settings.sendgrid_api_key,
                from_email=settings.sendgrid_from_email,
                api_url=settings.sendgrid_api_url,
                timeout=config.http_timeout_seconds,
            )
        )
    else:
        logger.warning("SendGrid not configured, email channel disabled")

    if settings.sms_configured:
        channels.append(
            SmsChannel(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_phone_number,
                api_base=settings.twilio_api_base,
                timeout=config.http_timeout_seconds,
            )
        )
    else:
        logger.warning("Twilio not configured, SMS channel disabled")

    return channels


async def get_dispatcher() -> NotificationDispatcher:
    """Get the notification dispatcher with circuit-broken channels."""
    global _dispatcher

    if _dispatcher is None:
        settings = get_settings()
        config = NotificationConfig()
        database = await get_database()
        config_repo = AlertConfigRepository(database)
        broadcaster = await get_alert_broadcaster()

        _dispatcher = NotificationDispatcher(
            channels=build_channels(settings, broadcaster, config),
            attempt_repo=NotificationAttemptRepository(database),
            alert_repo=AlertRepository(database),
            config_repo=config_repo,
            threshold_store=await get_threshold_store(),
            schedule_filter=ScheduleFilter(config_repo),
            deferred_queue=DeferredNotificationQueue(database),
            config=config,
        )

    return _dispatcher


async def get_lifecycle_manager() -> AlertLifecycleManager:
    """Get the lifecycle manager (one per process: it owns the alert locks)."""
    global _lifecycle

    if _lifecycle is None:
        _lifecycle = AlertLifecycleManager(
            alert_repo=await get_alert_repository(),
            dispatcher=await get_dispatcher(),
            broadcaster=await get_alert_broadcaster(),
        )

    return _lifecycle


async def get_reading_evaluator() -> ReadingEvaluator:
    global _evaluator

    if _evaluator is None:
        _evaluator = ReadingEvaluator(
            threshold_store=await get_threshold_store(),
            lifecycle=await get_lifecycle_manager(),
            broadcaster=await get_alert_broadcaster(),
        )

    return _evaluator


async def get_alert_service() -> AlertService:
    global _alert_service

    if _alert_service is None:
        database = await get_database()
        _alert_service = AlertService(
            alert_repo=AlertRepository(database),
            attempt_repo=NotificationAttemptRepository(database),
            config_repo=AlertConfigRepository(database),
            threshold_store=await get_threshold_store(),
            lifecycle=await get_lifecycle_manager(),
            dispatcher=await get_dispatcher(),
        )

    return _alert_service


async def get_escalation_scheduler() -> EscalationScheduler:
    global _scheduler

    if _scheduler is None:
        _scheduler = EscalationScheduler(
            alert_repo=await get_alert_repository(),
            lifecycle=await get_lifecycle_manager(),
            dispatcher=await get_dispatcher(),
            deferred_queue=await get_deferred_queue(),
        )

    return _scheduler


async def cleanup_dependencies() -> None:
    """Clean up global dependencies on shutdown."""
    global _database, _redis_client, _threshold_store, _dispatcher
    global _lifecycle, _evaluator, _alert_service, _scheduler, _state_publisher

    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None

    if _lifecycle is not None:
        await _lifecycle.drain(timeout=30.0)
        _lifecycle = None

    _evaluator = None
    _alert_service = None
    _dispatcher = None
    if _threshold_store is not None:
        await _threshold_store.stop_sync()
        _threshold_store = None

    if _state_publisher is not None:
        await _state_publisher.stop()
        _state_publisher = None

    await stop_alert_broadcaster()

    if _database is not None:
        await _database.close()
        _database = None

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
