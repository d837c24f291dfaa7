"""
API key authentication.

HTTP routes read the key from the ``X-API-KEY`` header. The WebSocket
endpoint reads it from the ``api_key`` query parameter, since browsers
cannot set headers on the upgrade request. Both paths go through
``is_valid_api_key``. With ``API_KEYS`` unset every caller is accepted.
"""

import secrets

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.config.settings import get_settings

api_key_header = APIKeyHeader(name="X-API-KEY", auto_error=False)

DEV_MODE_KEY = "dev-mode"


def parse_api_keys(raw: str | None) -> list[str]:
    """Split the comma-separated ``API_KEYS`` setting."""
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


def is_valid_api_key(api_key: str | None, configured: str | None) -> bool:
    """Check ``api_key`` against the configured keys.

    ``configured`` is the raw setting. None or empty means dev mode; a
    setting that parses to no keys rejects everyone.
    """
    if not configured:
        return True
    if api_key is None:
        return False
    return any(
        secrets.compare_digest(api_key, valid) for valid in parse_api_keys(configured)
    )


async def verify_api_key(api_key: str | None = Security(api_key_header)) -> str:
    """
    FastAPI dependency guarding every REST route except ``/health``.

    Returns:
        The validated key, or ``"dev-mode"`` when no keys are configured.

    Raises:
        HTTPException: 401 if the key is missing or not configured.
    """
    settings = get_settings()

    if not settings.api_keys:
        return DEV_MODE_KEY

    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-KEY header.",
        )

    if not is_valid_api_key(api_key, settings.api_keys):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    return api_key
