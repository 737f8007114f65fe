"""
tokenpulse - Period Aggregation

Turns usage buckets plus local-calendar boundaries into period totals.

Features:
- Half-open [start, end) bucket selection by bucket start time
- Local day / ISO week (Monday) / month boundaries, DST-correct
- Month totals that take completed days from day-granularity data and
  today's partial total from hour-granularity data, so no day is counted twice
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from ..core.models import DetailedTokenUsage, TimeBasedStats, UsageBucket
from ..observability.logging import get_logger


logger = get_logger(__name__)

HOURLY_BREAKDOWN_SIZE = 24
DAILY_LOOKBACK_DAYS = 10

TimeZoneLike = Union[str, tzinfo, None]


def resolve_timezone(tz: TimeZoneLike) -> Optional[tzinfo]:
    """None means the system local zone."""
    if tz is None or isinstance(tz, tzinfo):
        return tz
    return ZoneInfo(tz)


def local_datetime(epoch: float, tz: TimeZoneLike = None) -> datetime:
    """Aware datetime for ``epoch`` on the local (or given) calendar."""
    zone = resolve_timezone(tz)
    if zone is None:
        return datetime.fromtimestamp(epoch).astimezone()
    return datetime.fromtimestamp(epoch, tz=zone)


def local_midnight(day: date, tz: TimeZoneLike = None) -> int:
    """Epoch seconds of local midnight at the start of ``day``."""
    zone = resolve_timezone(tz)
    naive = datetime(day.year, day.month, day.day)
    if zone is None:
        # Naive datetimes are interpreted in the system zone, with the
        # UTC offset that applies on that date.
        return int(naive.astimezone().timestamp())
    return int(naive.replace(tzinfo=zone).timestamp())


def date_key(day: date) -> str:
    return day.strftime("%Y-%m-%d")


def start_of_week(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def start_of_month(day: date) -> date:
    return day.replace(day=1)


def previous_month_range(day: date) -> Tuple[date, date]:
    """First and last day of the calendar month before ``day``'s month."""
    last = start_of_month(day) - timedelta(days=1)
    return start_of_month(last), last


@dataclass(frozen=True)
class CalendarBoundaries:
    """Local calendar boundaries for one moment, as epoch seconds."""
    today: date
    day_start: int
    week_start: int
    month_start: int

    @classmethod
    def at(cls, now: float, tz: TimeZoneLike = None) -> "CalendarBoundaries":
        today = local_datetime(now, tz).date()
        return cls(
            today=today,
            day_start=local_midnight(today, tz),
            week_start=local_midnight(start_of_week(today), tz),
            month_start=local_midnight(start_of_month(today), tz),
        )


def period_total(
    buckets: Sequence[UsageBucket],
    start_boundary: int,
    end_boundary: Optional[int] = None,
) -> int:
    """
    Sum token counts of buckets whose start lies in [start, end).

    Args:
        buckets: Usage buckets (any order)
        start_boundary: Inclusive lower bound, epoch seconds
        end_boundary: Exclusive upper bound; None means unbounded
    """
    total = 0
    matched = 0
    for bucket in buckets:
        if bucket.start_time < start_boundary:
            continue
        if end_boundary is not None and bucket.start_time >= end_boundary:
            continue
        total += bucket.token_count
        matched += 1

    if matched:
        logger.debug(
            "Calculated period total",
            matched_buckets=matched,
            start_boundary=start_boundary,
            end_boundary=end_boundary,
            total_tokens=total,
        )
    return total


def hourly_range(boundaries: CalendarBoundaries, now: float) -> Tuple[int, int]:
    """Hour-granularity fetch range: start of week to now rounded up to the minute."""
    return boundaries.week_start, int(math.ceil(now / 60.0) * 60)


def daily_range(
    boundaries: CalendarBoundaries,
    lookback_days: int = DAILY_LOOKBACK_DAYS,
) -> Tuple[int, int]:
    """
    Day-granularity fetch range: a little before the month start up to today's
    local midnight. The end is stable for the whole day, which keeps the
    cache key stable too.
    """
    return boundaries.month_start - lookback_days * 86400, boundaries.day_start


def build_detailed_usage(
    hourly: Sequence[UsageBucket],
    daily: Sequence[UsageBucket],
    boundaries: CalendarBoundaries,
    now: float,
) -> DetailedTokenUsage:
    """Combine hour and day series into calendar totals and the 24h breakdown."""
    today = period_total(hourly, boundaries.day_start)
    this_week = period_total(hourly, boundaries.week_start)
    completed_days = period_total(daily, boundaries.month_start, boundaries.day_start)

    recent = sorted(hourly, key=lambda b: b.start_time)[-HOURLY_BREAKDOWN_SIZE:]

    return DetailedTokenUsage(
        today=today,
        this_week=this_week,
        this_month=completed_days + today,
        hourly_breakdown=[bucket.token_count for bucket in recent],
        hourly_bucket_starts=[bucket.start_time for bucket in recent],
        timestamp=now,
    )


def time_based_stats(usage: DetailedTokenUsage) -> TimeBasedStats:
    """Hourly peak/average/last-hour figures from the hourly breakdown."""
    breakdown = usage.hourly_breakdown
    if not breakdown:
        return TimeBasedStats(
            today=usage.today,
            this_week=usage.this_week,
            this_month=usage.this_month,
        )

    return TimeBasedStats(
        last_hour=breakdown[-1],
        today=usage.today,
        this_week=usage.this_week,
        this_month=usage.this_month,
        peak_hourly_rate=max(breakdown),
        average_hourly_rate=sum(breakdown) / len(breakdown),
    )
