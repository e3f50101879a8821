"""
OpenTelemetry tracing for the trade stream services.

Tracing is off unless ``TRADESTREAM_TRACE_ENABLED=true``. When it is
off, the global no-op provider stays in place and the span helpers
below cost next to nothing, so processing code can use them
unconditionally.
"""

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = structlog.get_logger(__name__)

DEFAULT_OTLP_ENDPOINT = "http://otel-collector:4317"
TRACER_NAME = "tradestream"


def _parse_headers(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``OTEL_EXPORTER_OTLP_HEADERS`` (``k1=v1,k2=v2``)."""
    headers: Dict[str, str] = {}
    for segment in (raw or "").split(","):
        key, sep, value = segment.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _exporter(endpoint: Optional[str]) -> OTLPSpanExporter:
    endpoint = (
        endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or DEFAULT_OTLP_ENDPOINT
    )
    kwargs: Dict[str, Any] = {"endpoint": endpoint}
    headers = _parse_headers(os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    if headers:
        kwargs["headers"] = headers
    if endpoint.startswith("http://"):
        kwargs["insecure"] = True
    return OTLPSpanExporter(**kwargs)


def setup_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    enabled: bool = True
) -> bool:
    """
    Install an OTLP-exporting tracer provider.

    Returns True when spans will be exported. A broken exporter
    configuration is logged and leaves tracing disabled; it never
    stops the service from starting.
    """
    if not enabled:
        logger.info("Tracing disabled by configuration")
        return False

    try:
        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        provider.add_span_processor(BatchSpanProcessor(_exporter(endpoint)))
    except (ValueError, TypeError, OSError) as exc:
        logger.error("Failed to setup tracing", error=str(exc), exc_info=True)
        return False

    trace.set_tracer_provider(provider)
    logger.info("Tracing setup complete", service=service_name, endpoint=endpoint)
    return True


@asynccontextmanager
async def trace_async_function(
    name: str,
    attributes: Optional[Dict[str, Any]] = None
) -> AsyncIterator[trace.Span]:
    """Run an async block inside a span, recording any exception on it."""
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, record_exception=False) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(trace.Status(trace.StatusCode.ERROR, str(exc)))
            raise
