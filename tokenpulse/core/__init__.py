"""
tokenpulse Core Module

Data models, error taxonomy and the upstream HTTP client.
"""

from .models import (
    # Enums
    Granularity,

    # Upstream data
    UsageBucket,
    Snapshot,
    CacheKey,
    CacheEntry,
    DailyRecord,

    # Outputs
    DetailedTokenUsage,
    RealTimeEstimates,
    TrendIndicator,
    TimeBasedStats,
    UsageTrends,
    UsageAnalytics,
)

from .errors import (
    ErrorType,
    ErrorDetails,
    TokenPulseException,
    InfraError,
    UpstreamUnavailableError,
    StorageError,
    SemanticError,
    UnauthorizedError,
    MalformedResponseError,
    TooManyPagesWarning,
    error_from_status,
    handle_http_error,
)

__all__ = [
    # Enums
    "Granularity",

    # Upstream data
    "UsageBucket",
    "Snapshot",
    "CacheKey",
    "CacheEntry",
    "DailyRecord",

    # Outputs
    "DetailedTokenUsage",
    "RealTimeEstimates",
    "TrendIndicator",
    "TimeBasedStats",
    "UsageTrends",
    "UsageAnalytics",

    # Errors
    "ErrorType",
    "ErrorDetails",
    "TokenPulseException",
    "InfraError",
    "UpstreamUnavailableError",
    "StorageError",
    "SemanticError",
    "UnauthorizedError",
    "MalformedResponseError",
    "TooManyPagesWarning",
    "error_from_status",
    "handle_http_error",
]
