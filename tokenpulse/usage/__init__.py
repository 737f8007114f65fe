"""
tokenpulse - Usage Module

Key Components:
- Cache: TTL cache of fetched buckets
- Client: Paginated usage API client
- Aggregator: Calendar boundaries and period totals
- Estimator: Real-time rate and short-horizon counts
- Analytics: Daily history and trends
- Storage: Durable keyed store for the history
"""

from .cache import (
    # Classes
    BucketCache,
    # Functions
    ttl_for,
)
from .client import (
    OpenAIUsageClient,
    UsageSource,
)
from .aggregator import (
    # Classes
    CalendarBoundaries,
    # Functions
    build_detailed_usage,
    daily_range,
    date_key,
    hourly_range,
    period_total,
    time_based_stats,
)
from .estimator import (
    RealTimeEstimator,
    base_polling_interval,
)
from .analytics import (
    UsageAnalyticsEngine,
    trend,
)
from .storage import (
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
)

__all__ = [
    # Cache
    "BucketCache",
    "ttl_for",
    # Client
    "OpenAIUsageClient",
    "UsageSource",
    # Aggregator
    "CalendarBoundaries",
    "build_detailed_usage",
    "daily_range",
    "date_key",
    "hourly_range",
    "period_total",
    "time_based_stats",
    # Estimator
    "RealTimeEstimator",
    "base_polling_interval",
    # Analytics
    "UsageAnalyticsEngine",
    "trend",
    # Storage
    "InMemoryStore",
    "JsonFileStore",
    "KeyValueStore",
]
