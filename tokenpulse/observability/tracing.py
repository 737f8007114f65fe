"""
tokenpulse - OpenTelemetry Tracing

Spans for each poll cycle and each upstream usage fetch.

Usage:
    from tokenpulse.observability.tracing import setup_tracing, trace_upstream_fetch

    setup_tracing(service_name="tokenpulse", console_export=True)

    with trace_upstream_fetch("openai", "1h") as span:
        buckets = await fetch(...)
        span.set_attribute("usage.buckets", len(buckets))

Without setup_tracing() the global no-op tracer provider is used, so spans are
free to create.
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import SpanKind, Status, StatusCode

# Optional OTLP exporter (requires opentelemetry-exporter-otlp)
try:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    OTLP_AVAILABLE = True
except ImportError:
    OTLP_AVAILABLE = False


TRACER_NAME = "tokenpulse"


class TracingManager:
    """Owns the SDK tracer provider installed by setup_tracing()."""

    def __init__(
        self,
        service_name: str = "tokenpulse",
        service_version: str = "1.0.0",
        otlp_endpoint: Optional[str] = None,
        console_export: bool = False,
        exporter: Optional[SpanExporter] = None,
    ):
        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
        })
        self.provider = TracerProvider(resource=resource)

        if otlp_endpoint and OTLP_AVAILABLE:
            self.provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )

        if console_export:
            self.provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

        if exporter is not None:
            self.provider.add_span_processor(SimpleSpanProcessor(exporter))

        self.tracer = self.provider.get_tracer(TRACER_NAME, service_version)

    def shutdown(self):
        """Flush and shut down the tracer provider."""
        self.provider.shutdown()


_tracing_instance: Optional[TracingManager] = None


def setup_tracing(
    service_name: str = "tokenpulse",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    exporter: Optional[SpanExporter] = None,
) -> TracingManager:
    """
    Setup tracing.

    Reads OTEL_EXPORTER_OTLP_ENDPOINT and OTEL_CONSOLE_EXPORT when the
    arguments are not given.
    """
    global _tracing_instance

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    _tracing_instance = TracingManager(
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint,
        console_export=console_export,
        exporter=exporter,
    )
    return _tracing_instance


def get_tracer() -> trace.Tracer:
    """Tracer from setup_tracing(), or the global (no-op by default) one."""
    if _tracing_instance is not None:
        return _tracing_instance.tracer
    return trace.get_tracer(TRACER_NAME)


def reset_tracing():
    """Drop the configured provider (for testing)."""
    global _tracing_instance
    if _tracing_instance is not None:
        _tracing_instance.shutdown()
    _tracing_instance = None


def record_exception(span: trace.Span, exception: Exception):
    """Record an exception on a span and mark it failed."""
    span.record_exception(exception)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


@contextmanager
def trace_upstream_fetch(
    provider: str,
    granularity: str,
    attributes: Optional[Dict[str, Any]] = None,
) -> Iterator[trace.Span]:
    """Client span around one complete (all pages) usage fetch."""
    with get_tracer().start_as_current_span(
        f"{provider}.usage.fetch",
        kind=SpanKind.CLIENT,
        attributes={
            "usage.provider": provider,
            "usage.granularity": granularity,
            **(attributes or {}),
        },
    ) as span:
        yield span


@contextmanager
def trace_poll_cycle(poll_id: int) -> Iterator[trace.Span]:
    """Internal span around one monitor poll cycle."""
    with get_tracer().start_as_current_span(
        "usage.poll",
        kind=SpanKind.INTERNAL,
        attributes={"usage.poll_id": poll_id},
    ) as span:
        yield span
