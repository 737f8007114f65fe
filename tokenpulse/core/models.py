"""
tokenpulse - Core Data Models

Bucketed usage data and the consumer-facing output structures.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple


# ============================================================
# Enums
# ============================================================

class Granularity(str, Enum):
    """Bucket width accepted by the upstream usage API."""
    HOUR = "1h"
    DAY = "1d"


# ============================================================
# Upstream data
# ============================================================

@dataclass(frozen=True)
class UsageBucket:
    """Fixed-width accounting interval returned by the upstream."""
    start_time: int
    end_time: int
    token_count: int


@dataclass(frozen=True)
class Snapshot:
    """
    One poll cycle's hour-granularity buckets.

    Owned by the caller; the estimator keeps only the latest bucket reading.
    """
    captured_at: float
    buckets: Tuple[UsageBucket, ...] = ()

    @classmethod
    def of(cls, captured_at: float, buckets: Sequence[UsageBucket]) -> "Snapshot":
        return cls(captured_at=captured_at, buckets=tuple(buckets))


@dataclass(frozen=True)
class CacheKey:
    """Exact query identity used by the bucket cache."""
    start: int
    end: int
    granularity: Granularity

    def __str__(self) -> str:
        return f"{self.granularity.value}_{self.start}_{self.end}"


@dataclass
class CacheEntry:
    """Cached fetch result with its own time-to-live."""
    key: CacheKey
    buckets: List[UsageBucket]
    fetched_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) > self.ttl


@dataclass
class DailyRecord:
    """Stored total for one local calendar day."""
    date_key: str
    total_tokens: int
    recorded_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date_key": self.date_key,
            "total_tokens": self.total_tokens,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyRecord":
        return cls(
            date_key=str(data["date_key"]),
            total_tokens=int(data["total_tokens"]),
            recorded_at=float(data.get("recorded_at", 0.0)),
        )


# ============================================================
# Consumer-facing outputs
# ============================================================

@dataclass
class DetailedTokenUsage:
    """Calendar totals plus the last 24 hourly buckets."""
    today: int = 0
    this_week: int = 0
    this_month: int = 0
    hourly_breakdown: List[int] = field(default_factory=list)
    hourly_bucket_starts: List[int] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "today": self.today,
            "this_week": self.this_week,
            "this_month": self.this_month,
            "hourly_breakdown": list(self.hourly_breakdown),
            "hourly_bucket_starts": list(self.hourly_bucket_starts),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class RealTimeEstimates:
    """Smoothed rate and short-horizon counts between polls."""
    last_3min_tokens: int
    last_15min_tokens: int
    ema_rate_tokens_per_minute: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_3min_tokens": self.last_3min_tokens,
            "last_15min_tokens": self.last_15min_tokens,
            "ema_rate_tokens_per_minute": round(self.ema_rate_tokens_per_minute, 4),
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        return (
            f"RealTimeEstimates(last3min: {self.last_3min_tokens}, "
            f"last15min: {self.last_15min_tokens}, "
            f"emaRate: {self.ema_rate_tokens_per_minute:.2f} tpm)"
        )


@dataclass(frozen=True)
class TrendIndicator:
    """Current vs previous period change."""
    percentage_change: float
    is_increase: bool
    is_significant: bool

    @property
    def display_string(self) -> str:
        sign = "+" if self.is_increase else ""
        return f"{sign}{abs(self.percentage_change):.1f}%"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percentage_change": round(self.percentage_change, 2),
            "is_increase": self.is_increase,
            "is_significant": self.is_significant,
            "display": self.display_string,
        }


@dataclass(frozen=True)
class TimeBasedStats:
    """Totals and hourly rates derived from the hourly breakdown."""
    last_hour: int = 0
    today: int = 0
    this_week: int = 0
    this_month: int = 0
    peak_hourly_rate: int = 0
    average_hourly_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_hour": self.last_hour,
            "today": self.today,
            "this_week": self.this_week,
            "this_month": self.this_month,
            "peak_hourly_rate": self.peak_hourly_rate,
            "average_hourly_rate": round(self.average_hourly_rate, 2),
        }


@dataclass(frozen=True)
class UsageTrends:
    today_vs_yesterday: TrendIndicator
    this_week_vs_last: TrendIndicator
    this_month_vs_last: TrendIndicator

    def to_dict(self) -> Dict[str, Any]:
        return {
            "today_vs_yesterday": self.today_vs_yesterday.to_dict(),
            "this_week_vs_last": self.this_week_vs_last.to_dict(),
            "this_month_vs_last": self.this_month_vs_last.to_dict(),
        }


@dataclass(frozen=True)
class UsageAnalytics:
    """Today's total, time-based stats and historical trends."""
    total_tokens: int
    time_based_stats: TimeBasedStats
    trends: UsageTrends
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "time_based_stats": self.time_based_stats.to_dict(),
            "trends": self.trends.to_dict(),
            "timestamp": self.timestamp,
        }

