"""
tokenpulse - Observability Module

- Prometheus metrics (Counter, Histogram, Gauge)
- OpenTelemetry spans around polls and upstream fetches
- Structured JSON logging with context injection

Usage:
    from tokenpulse.observability import get_logger, get_metrics, setup_logging

    setup_logging(level="INFO")
    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    get_tracer,
    setup_tracing,
    trace_poll_cycle,
    trace_upstream_fetch,
)
from .logging import (
    JSONFormatter,
    LogContext,
    StructuredLogger,
    TimedOperation,
    get_logger,
    setup_logging,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "metrics_endpoint",
    # Tracing
    "TracingManager",
    "get_tracer",
    "setup_tracing",
    "trace_poll_cycle",
    "trace_upstream_fetch",
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredLogger",
    "TimedOperation",
    "get_logger",
    "setup_logging",
]
