"""
tokenpulse - Prometheus Metrics

Metrics exposed:
- tokenpulse_upstream_requests_total: Counter of usage API pages by granularity and status
- tokenpulse_upstream_request_duration_seconds: Histogram of full fetch latency
- tokenpulse_cache_lookups_total: Counter of bucket cache hits/misses/expiries
- tokenpulse_polls_total: Counter of poll cycles by outcome
- tokenpulse_ema_rate_tokens_per_minute: Gauge of the smoothed consumption rate
- tokenpulse_polling_interval_seconds: Gauge of the next scheduled poll delay
- tokenpulse_period_tokens: Gauge of today/week/month totals

Usage:
    from tokenpulse.observability.metrics import get_metrics, metrics_endpoint

    metrics = get_metrics()
    metrics.record_poll("success")

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from typing import Optional

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


class MetricsCollector:
    """
    Central metrics collector using the Prometheus client.

    One collector per registry; use get_metrics() for the process-wide one and
    a fresh CollectorRegistry in tests.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.info = Info(
            "tokenpulse",
            "tokenpulse usage monitor information",
            registry=registry,
        )
        self.info.info({"version": "1.0.0", "service": "tokenpulse"})

        self.upstream_requests = Counter(
            "tokenpulse_upstream_requests_total",
            "Usage API page requests",
            labelnames=["granularity", "status"],
            registry=registry,
        )

        # A full paginated fetch usually completes in well under 10s
        self.upstream_duration = Histogram(
            "tokenpulse_upstream_request_duration_seconds",
            "Duration of a complete (all pages) usage fetch",
            labelnames=["granularity"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf")),
            registry=registry,
        )

        self.cache_lookups = Counter(
            "tokenpulse_cache_lookups_total",
            "Bucket cache lookups",
            labelnames=["granularity", "result"],  # result = hit/miss/expired
            registry=registry,
        )

        self.polls = Counter(
            "tokenpulse_polls_total",
            "Poll cycles by outcome",
            labelnames=["outcome"],
            registry=registry,
        )

        self.ema_rate = Gauge(
            "tokenpulse_ema_rate_tokens_per_minute",
            "Smoothed token consumption rate",
            registry=registry,
        )

        self.polling_interval = Gauge(
            "tokenpulse_polling_interval_seconds",
            "Delay before the next scheduled poll",
            registry=registry,
        )

        self.period_tokens = Gauge(
            "tokenpulse_period_tokens",
            "Token totals for the current calendar periods",
            labelnames=["period"],  # today/week/month
            registry=registry,
        )

    def record_upstream_request(self, granularity: str, status: str):
        self.upstream_requests.labels(granularity=granularity, status=status).inc()

    def observe_fetch_duration(self, granularity: str, duration_seconds: float):
        self.upstream_duration.labels(granularity=granularity).observe(duration_seconds)

    def record_cache_lookup(self, granularity: str, result: str):
        self.cache_lookups.labels(granularity=granularity, result=result).inc()

    def record_poll(self, outcome: str):
        self.polls.labels(outcome=outcome).inc()

    def set_rate(self, tokens_per_minute: float):
        self.ema_rate.set(tokens_per_minute)

    def set_polling_interval(self, seconds: float):
        self.polling_interval.set(seconds)

    def set_period_totals(self, today: int, this_week: int, this_month: int):
        self.period_tokens.labels(period="today").set(today)
        self.period_tokens.labels(period="week").set(this_week)
        self.period_tokens.labels(period="month").set(this_month)


_metrics_instance: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the process-wide collector bound to the default registry."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector(REGISTRY)
    return _metrics_instance


def metrics_endpoint(registry: CollectorRegistry = REGISTRY) -> Response:
    """
    Generate Prometheus metrics endpoint response.

    Usage:
        @app.get("/metrics")
        async def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(registry),
        media_type=CONTENT_TYPE_LATEST,
    )
