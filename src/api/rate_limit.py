"""
Rate limiting for the ingestion and alert routes (slowapi).

Sensor gateways usually share one API key, so the key wins over the
client address when both are present. Counters live in Redis so several
API replicas share the same budget. With RATE_LIMIT_ENABLED unset the
``@limiter.limit`` decorators do nothing.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from src.config.settings import get_settings


def rate_limit_key(request: Request) -> str:
    """``key:<api key>`` when the header is sent, else ``ip:<address>``."""
    api_key = request.headers.get("X-API-KEY")
    if api_key:
        return f"key:{api_key}"
    return f"ip:{get_remote_address(request)}"


def readings_limit() -> str:
    """Per-caller limit for ``/readings`` routes, read at request time."""
    return get_settings().rate_limit_readings


def build_limiter() -> Limiter:
    settings = get_settings()
    return Limiter(
        key_func=rate_limit_key,
        default_limits=[settings.rate_limit_default],
        storage_uri=str(settings.redis_url),
        enabled=settings.rate_limit_enabled,
    )


limiter = build_limiter()
