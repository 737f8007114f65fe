"""
tokenpulse - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- A controllable clock for time-dependent components
- Fake usage API built on httpx.MockTransport
- Fresh Prometheus registries per test
"""

import os
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest
from prometheus_client import CollectorRegistry

from tokenpulse.core.models import Granularity, UsageBucket
from tokenpulse.observability.logging import LogContext
from tokenpulse.observability.metrics import MetricsCollector


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def clear_log_context():
    LogContext.clear()
    yield
    LogContext.clear()


# ============================================================
# Clock
# ============================================================

# Wednesday 2025-03-12 10:00:00 UTC, aligned to a 3-minute bin boundary
BASE_TIME = 1741773600.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = BASE_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================
# Metrics
# ============================================================

@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return MetricsCollector(registry)


def sample_value(
    registry: CollectorRegistry,
    name: str,
    labels: Optional[Dict[str, str]] = None,
) -> float:
    value = registry.get_sample_value(name, labels or {})
    return 0.0 if value is None else value


# ============================================================
# Usage Data Helpers
# ============================================================

def bucket(start: int, tokens: int, width: int = 3600) -> UsageBucket:
    return UsageBucket(start_time=start, end_time=start + width, token_count=tokens)


def wire_bucket(start: int, width: int, *counts: Tuple[int, int]) -> Dict[str, Any]:
    """Upstream bucket JSON with one result row per (input, output) pair."""
    return {
        "object": "bucket",
        "start_time": start,
        "end_time": start + width,
        "results": [
            {
                "object": "organization.usage.completions.result",
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "model": "gpt-4o-mini",
                "num_model_requests": 1,
            }
            for input_tokens, output_tokens in counts
        ],
    }


def wire_page(
    buckets: Sequence[Dict[str, Any]],
    next_page: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "object": "page",
        "data": list(buckets),
        "has_more": next_page is not None,
        "next_page": next_page,
    }


# ============================================================
# Fake Usage API
# ============================================================

class FakeUsageAPI:
    """
    In-process stand-in for the usage endpoint.

    Pages are served per bucket_width in order; a handler can be installed to
    take over completely (errors, timeouts).
    """

    def __init__(self):
        self.pages: Dict[str, List[Dict[str, Any]]] = {"1h": [], "1d": []}
        self.requests: List[httpx.Request] = []
        self.handler: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def add_pages(self, width: str, *pages: Dict[str, Any]):
        self.pages[width].extend(pages)

    def requests_for(self, width: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.params.get("bucket_width") == width]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is not None:
            return self.handler(request)

        width = request.url.params.get("bucket_width", "1h")
        cursor = request.url.params.get("page")
        pages = self.pages.get(width) or [wire_page([])]
        index = 0 if cursor is None else int(cursor.rsplit("-", 1)[-1])
        return httpx.Response(200, json=pages[min(index, len(pages) - 1)])

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def fake_api():
    return FakeUsageAPI()


class StaticSource:
    """Usage source returning fixed series, or raising a queued error."""

    def __init__(
        self,
        hourly: Optional[List[UsageBucket]] = None,
        daily: Optional[List[UsageBucket]] = None,
    ):
        self.hourly = list(hourly or [])
        self.daily = list(daily or [])
        self.errors: List[Exception] = []
        self.calls: List[Tuple[int, int, Granularity]] = []

    async def fetch_usage(self, start: int, end: int, granularity: Granularity):
        self.calls.append((start, end, granularity))
        if self.errors:
            raise self.errors.pop(0)
        return list(self.hourly if granularity == Granularity.HOUR else self.daily)


@pytest.fixture
def source():
    return StaticSource()
