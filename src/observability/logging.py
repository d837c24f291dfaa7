"""
Structured logging configuration using structlog.

JSON lines in production, colored console output in development. Every
event carries the contextvars bound by the HTTP middleware (request_id)
and, when tracing is on, the active trace and span ids. Recipient email
addresses and phone numbers are masked before rendering.
"""

import logging
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from src.config.settings import get_settings
from src.observability.tracing import add_trace_context

# uvicorn.access duplicates the request log line written by the API middleware
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "asyncpg", "uvicorn.access")

_CONTACT_FIELDS = ("email", "phone", "to")


def _mask(value: str) -> str:
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{value[-4:]}" if len(value) > 4 else "***"


def mask_contact_fields(
    logger: WrappedLogger, method_name: str, event_dict: EventDict,
) -> EventDict:
    """Mask email/phone values so recipient contact data stays out of log storage."""
    for field in _CONTACT_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str) and value:
            event_dict[field] = _mask(value)
    return event_dict


def build_processors(json_output: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_trace_context,
        mask_contact_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    The repositories and channels log through ``logging.getLogger``; the
    API, escalation worker and CLI log through structlog. Both end up on
    stdout at ``LOG_LEVEL``.
    """
    settings = get_settings()

    structlog.configure(
        processors=build_processors(json_output=settings.is_production),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs) -> None:
    """Bind fields to every later log event in the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
