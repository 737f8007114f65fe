"""
tokenpulse - Status Server

Read-only JSON view of the monitor's latest state.

Endpoints:
- GET /health: monitor status (ok / degraded / starting)
- GET /v1/usage: calendar totals and the 24h hourly breakdown
- GET /v1/estimates: real-time estimates, decayed to the request time
- GET /v1/analytics: time-based stats and trends
- GET /metrics: Prometheus text format

When run as a service (python -m tokenpulse.server) the app lifespan starts
and stops the polling loop; the endpoints themselves never control it.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import REGISTRY, CollectorRegistry

from . import __version__
from .core.errors import ErrorDetails, ErrorType
from .monitor import UsageMonitor
from .observability.logging import get_logger
from .observability.metrics import metrics_endpoint


logger = get_logger(__name__)


def _no_data(what: str) -> JSONResponse:
    error = ErrorDetails(
        code="no_data",
        message=f"No {what} available yet; the first poll has not completed",
        type=ErrorType.INFRA,
        retryable=True,
    )
    return JSONResponse(status_code=503, content=error.to_dict())


def create_app(
    monitor: UsageMonitor,
    registry: CollectorRegistry = REGISTRY,
    run_monitor: bool = False,
) -> FastAPI:
    """
    Build the status app for ``monitor``.

    Args:
        monitor: Monitor whose state is exposed
        registry: Prometheus registry served on /metrics
        run_monitor: Start the polling loop on startup and close it on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_monitor:
            await monitor.start()
        try:
            yield
        finally:
            if run_monitor:
                await monitor.aclose()

    app = FastAPI(
        title="tokenpulse",
        description="Token usage monitor status",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Monitor status."""
        if monitor.degraded:
            status = "degraded"
        elif monitor.latest_usage is None:
            status = "starting"
        else:
            status = "ok"

        result: Dict[str, Any] = {
            "status": status,
            "version": __version__,
            "running": monitor.running,
            "consecutive_errors": monitor.consecutive_errors,
            "next_poll_seconds": round(monitor.current_interval, 1),
        }
        if monitor.last_error is not None:
            result.update(monitor.last_error.error.to_dict())
        return result

    @app.get("/v1/usage")
    async def get_usage():
        usage = monitor.latest_usage
        if usage is None:
            return _no_data("usage")
        return usage.to_dict()

    @app.get("/v1/estimates")
    async def get_estimates():
        """Estimates decayed to now; valid before the first poll too."""
        return monitor.estimator.get_estimates().to_dict()

    @app.get("/v1/analytics")
    async def get_analytics():
        analytics = monitor.latest_analytics
        if analytics is None:
            return _no_data("analytics")
        return analytics.to_dict()

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus metrics endpoint."""
        return metrics_endpoint(registry)

    return app


def main():
    import uvicorn

    from .config import MonitorSettings
    from .monitor import build_monitor
    from .observability.metrics import get_metrics
    from .observability.tracing import setup_tracing

    settings = MonitorSettings.from_env()
    setup_tracing(service_name="tokenpulse", service_version=__version__)

    monitor = build_monitor(settings, metrics=get_metrics())
    logger.info(
        "tokenpulse starting",
        host=settings.host,
        port=settings.port,
        history_path=settings.history_path,
    )
    uvicorn.run(
        create_app(monitor, run_monitor=True),
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    main()
