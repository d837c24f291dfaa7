"""
OpenTelemetry tracing for the sensor alerting service.

Three kinds of span are opened:

- ``<METHOD> <path>`` for each HTTP request (API middleware)
- ``reading.evaluate`` around the evaluator call in ``/readings``
- ``escalation.tick`` for each pass of the escalation scheduler

``optional_span`` is the entry point for all of them: it is a no-op until
``setup_tracing`` has run, so call sites do not check the flag themselves.
``add_trace_context`` copies the active ids into structlog events.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import Span, StatusCode, Tracer
from opentelemetry.trace.propagation import get_current_span

logger = logging.getLogger(__name__)

DEFAULT_OTLP_ENDPOINT = "http://localhost:4317"

_tracing_enabled = False


def setup_tracing(
    service_name: str,
    otlp_endpoint: str | None = None,
    *,
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """
    Install a global TracerProvider and turn tracing on.

    Spans go to an OTLP gRPC collector in batches. Passing ``exporter``
    (an ``InMemorySpanExporter`` in tests) switches to synchronous export.
    """
    global _tracing_enabled

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

    if exporter is not None:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    else:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        endpoint = otlp_endpoint or DEFAULT_OTLP_ENDPOINT
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
        )
    trace.set_tracer_provider(provider)

    _tracing_enabled = True
    logger.info(
        "Tracing enabled for %s (exporter: %s)",
        service_name,
        "in-memory" if exporter is not None else otlp_endpoint or DEFAULT_OTLP_ENDPOINT,
    )
    return provider


def get_tracer(name: str) -> Tracer:
    """Tracer from the global provider; a no-op tracer before setup."""
    return trace.get_tracer(name)


def is_tracing_enabled() -> bool:
    return _tracing_enabled


@contextmanager
def traced(
    tracer: Tracer,
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span]:
    """Open a span, dropping None attributes and marking it ERROR on exceptions."""
    with tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.set_status(StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise


@contextmanager
def optional_span(
    tracer_name: str,
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span | None]:
    """``traced`` when tracing is enabled, otherwise yields None."""
    if not _tracing_enabled:
        yield None
        return
    with traced(get_tracer(tracer_name), name, attributes) as span:
        yield span


def add_trace_context(
    logger_: Any, method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor adding ``trace_id``/``span_id`` inside a span."""
    ctx = get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = f"{ctx.trace_id:032x}"
        event_dict["span_id"] = f"{ctx.span_id:016x}"
    return event_dict


def setup_tracing_from_settings() -> TracerProvider | None:
    """Call ``setup_tracing`` when ``TRACING_ENABLED`` is set; used by the API and CLI."""
    from src.config.settings import get_settings

    settings = get_settings()
    if not settings.tracing_enabled or _tracing_enabled:
        return None
    return setup_tracing(
        settings.otel_service_name,
        settings.otel_exporter_otlp_endpoint,
    )
