"""
``/health``: PostgreSQL, Redis and, when enabled, the WebSocket broadcaster.

Only the database is required for the service to be usable. Redis carries
cross-replica fan-out, deferred notifications and rate limit counters, so
losing it degrades the service without stopping alert processing.
"""

import asyncio
import time
from collections.abc import Awaitable

import structlog
from fastapi import APIRouter, Depends

from src.api.dependencies import get_database, get_redis_client
from src.api.models import ComponentHealth, HealthResponse
from src.api.routes.ws_alerts import get_broadcaster
from src.config.settings import get_settings
from src.storage.database import Database

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _probe(check: Awaitable[object]) -> ComponentHealth:
    """Await ``check`` and report its latency; a falsy result or an error is unhealthy."""
    started = time.perf_counter()
    try:
        ok = await check
        error = None
    except Exception as e:
        ok, error = False, str(e)
    latency_ms = round((time.perf_counter() - started) * 1000, 2)
    return ComponentHealth(
        status="healthy" if ok else "unhealthy",
        latency_ms=latency_ms,
        details={"error": error} if error else {},
    )


def _broadcaster_health() -> ComponentHealth:
    broadcaster = get_broadcaster()
    if broadcaster is None or not broadcaster.is_running:
        return ComponentHealth(status="unhealthy", details={"running": False})
    return ComponentHealth(
        status="healthy",
        details={
            "running": True,
            "mode": "redis" if broadcaster.uses_redis else "local",
            "connections": broadcaster.active_connections,
        },
    )


def _overall(components: dict[str, ComponentHealth]) -> str:
    if components["database"].status != "healthy":
        return "unhealthy"
    if any(c.status != "healthy" for c in components.values()):
        return "degraded"
    return "healthy"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "unhealthy when PostgreSQL is down; degraded when Redis or the "
        "WebSocket broadcaster is down; healthy otherwise. No API key needed."
    ),
)
async def health_check(
    db: Database = Depends(get_database),
    redis_client=Depends(get_redis_client),
) -> HealthResponse:
    database, redis = await asyncio.gather(
        _probe(db.health_check()),
        _probe(redis_client.ping()),
    )
    components = {"database": database, "redis": redis}
    if get_settings().ws_alerts_enabled:
        components["broadcaster"] = _broadcaster_health()

    status = _overall(components)
    if status != "healthy":
        logger.warning(
            "Health check not healthy",
            status=status,
            failing=sorted(name for name, c in components.items() if c.status != "healthy"),
        )

    return HealthResponse(status=status, components=components, version="0.1.0")
