"""
Request timeout middleware.

Bounds every REST call (reading ingestion, alert queries and mutations)
with an asyncio timeout and answers 504 on expiry. Health checks, the
OpenAPI docs and WebSocket connections are not bounded. Work already
handed to background tasks, such as dispatch after an alert transition,
is not cancelled by a timeout.
"""

import asyncio

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

DEFAULT_EXCLUDED_PREFIXES: tuple[str, ...] = ("/health", "/ws/", "/docs", "/redoc", "/openapi.json")


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Return 504 when a request runs longer than ``timeout_seconds``."""

    def __init__(
        self,
        app,
        timeout_seconds: float = 30.0,
        excluded_prefixes: tuple[str, ...] = DEFAULT_EXCLUDED_PREFIXES,
    ):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds
        self.excluded_prefixes = excluded_prefixes

    def _is_excluded(self, request: Request) -> bool:
        if request.headers.get("upgrade", "").lower() == "websocket":
            return True
        return request.url.path.startswith(self.excluded_prefixes)

    async def dispatch(self, request: Request, call_next):
        if self._is_excluded(request):
            return await call_next(request)

        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await call_next(request)
        except TimeoutError:
            logger.warning(
                "Request timed out",
                path=request.url.path,
                method=request.method,
                timeout_seconds=self.timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={
                    "detail": f"Request timed out after {self.timeout_seconds}s",
                    "path": request.url.path,
                    "timeout_seconds": self.timeout_seconds,
                },
            )
