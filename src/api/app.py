"""
FastAPI application factory.

The lifespan starts the WebSocket broadcaster with its sensor-states
snapshots and, when ``ESCALATION_IN_PROCESS`` is set, the escalation
scheduler. All are optional: a failure to start one is logged and the
REST routes stay up.
"""

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.dependencies import (
    cleanup_dependencies,
    get_alert_broadcaster,
    get_escalation_scheduler,
    get_sensor_state_publisher,
)
from src.api.middleware.timeout import TimeoutMiddleware
from src.api.routes import alert_config, alerts, health, readings, thresholds, ws_alerts
from src.api.routes.ws_alerts import set_broadcaster
from src.config.settings import Settings, get_settings
from src.observability.logging import bind_context, clear_context, setup_logging
from src.observability.tracing import optional_span, setup_tracing_from_settings

logger = structlog.get_logger(__name__)

API_VERSION = "0.1.0"

OPENAPI_TAGS = [
    {"name": "health", "description": "Liveness of the API, PostgreSQL and Redis"},
    {"name": "readings", "description": "Sensor reading ingestion and evaluation"},
    {"name": "thresholds", "description": "Per-sensor metric bounds"},
    {"name": "alerts", "description": "Alert queries, resolution, escalation and resend"},
    {"name": "alert-config", "description": "Recipients, escalation levels and quiet hours"},
    {"name": "websocket", "description": "Alert events pushed over /ws/alerts"},
]

API_DESCRIPTION = """
Monitors sensor readings against per-metric thresholds and manages the
alerts they raise.

## Alert lifecycle

- **ACTIVA**: opened by the first out-of-bounds reading of a sensor metric
- **EN_ESCALAMIENTO**: escalated at least once, more levels remain
- **ESCALADA**: reached the highest configured level
- **RESUELTA**: closed by an operator; terminal

Notifications go out by email (SendGrid), SMS (Twilio) and WebSocket.

## Authentication

Every route except `/health` expects an `X-API-KEY` header. The WebSocket
endpoint takes the key as the `api_key` query parameter.
"""


async def _start_broadcaster() -> None:
    try:
        broadcaster = await get_alert_broadcaster()
    except Exception as e:
        logger.warning("WebSocket broadcaster unavailable", error=str(e))
        return
    set_broadcaster(broadcaster)
    logger.info(
        "WebSocket broadcaster started",
        mode="redis" if broadcaster.uses_redis else "local",
    )


async def _start_state_publisher() -> None:
    try:
        publisher = await get_sensor_state_publisher()
        await publisher.start()
    except Exception as e:
        logger.warning("Sensor state snapshots not started", error=str(e))


async def _start_scheduler() -> None:
    try:
        scheduler = await get_escalation_scheduler()
        await scheduler.start()
    except Exception as e:
        logger.warning("Escalation scheduler not started", error=str(e))
        return
    logger.info("Escalation scheduler running in the API process")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging()
    setup_tracing_from_settings()
    logger.info("Sensor alerts API starting", environment=settings.environment)

    if settings.ws_alerts_enabled:
        await _start_broadcaster()
        if settings.ws_sensor_states_seconds > 0:
            await _start_state_publisher()
    if settings.escalation_in_process:
        await _start_scheduler()

    yield

    logger.info("Sensor alerts API stopping")
    set_broadcaster(None)
    await cleanup_dependencies()


def _request_id(request: Request) -> str:
    """Reuse the caller's X-Request-ID / X-Correlation-ID, else a fresh UUID4."""
    return (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid.uuid4())
    )


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Registered before the request middleware so the timeout covers it too
    if settings.request_timeout_seconds > 0:
        app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.request_timeout_seconds)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = _request_id(request)
        bind_context(request_id=request_id)
        started = time.perf_counter()
        route = f"{request.method} {request.url.path}"

        try:
            with optional_span(
                "sensor-alerts.api",
                route,
                {"http.method": request.method, "http.route": request.url.path},
            ) as span:
                response = await call_next(request)
                if span is not None:
                    span.set_attribute("http.status_code", response.status_code)

            response.headers["X-Request-ID"] = request_id
            logger.info(
                "Request handled",
                route=route,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return response
        finally:
            clear_context()

    if settings.rate_limit_enabled:
        from slowapi import _rate_limit_exceeded_handler
        from slowapi.errors import RateLimitExceeded

        from src.api.rate_limit import limiter

        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def create_app() -> FastAPI:
    """Build the API with middleware, routers and the error fallback."""
    settings = get_settings()

    app = FastAPI(
        title="Sensor Alerts API",
        description=API_DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
    )
    _add_middleware(app, settings)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error_type": "internal"},
        )

    for router, tag in (
        (health.router, "health"),
        (readings.router, "readings"),
        (thresholds.router, "thresholds"),
        (alerts.router, "alerts"),
        (alert_config.router, "alert-config"),
        (ws_alerts.router, "websocket"),
    ):
        app.include_router(router, tags=[tag])

    @app.get("/", include_in_schema=False)
    async def root():
        return {"service": "Sensor Alerts API", "version": API_VERSION, "docs": "/docs"}

    return app
