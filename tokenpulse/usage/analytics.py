"""
tokenpulse - Historical Usage Analytics

Keeps one total per local calendar day and compares the current day, week and
month against the equivalent prior periods.

Persistence:
- History is loaded once from the KeyValueStore when the engine is created
- Every record_usage() call writes the whole history back
- Unreadable history starts the engine empty; failed writes are logged and
  the in-memory history stays authoritative
- Writes hold a lock, so the monitor can record from a worker thread
"""

import json
import threading
import time
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from ..core.errors import StorageError
from ..core.models import (
    DailyRecord,
    DetailedTokenUsage,
    TrendIndicator,
    UsageAnalytics,
    UsageTrends,
)
from ..observability.logging import get_logger
from .aggregator import (
    TimeZoneLike,
    date_key,
    local_datetime,
    previous_month_range,
    start_of_week,
    time_based_stats,
)
from .storage import KeyValueStore


logger = get_logger(__name__)

HISTORY_KEY = "usage_history"
RETENTION_DAYS = 90
SIGNIFICANT_CHANGE_PERCENT = 5.0


def trend(current: int, previous: int) -> TrendIndicator:
    """
    Percentage change of ``current`` against ``previous``.

    With no previous usage any current usage counts as a +100% increase.
    """
    if previous <= 0:
        return TrendIndicator(
            percentage_change=100.0 if current > 0 else 0.0,
            is_increase=current > 0,
            is_significant=current > 0,
        )

    change = (current - previous) / previous * 100.0
    return TrendIndicator(
        percentage_change=change,
        is_increase=change > 0,
        is_significant=abs(change) >= SIGNIFICANT_CHANGE_PERCENT,
    )


def _days(first: date, last: date) -> Iterable[date]:
    current = first
    while current <= last:
        yield current
        current += timedelta(days=1)


def _parse_date_key(key: str) -> Optional[date]:
    try:
        return datetime.strptime(key, "%Y-%m-%d").date()
    except ValueError:
        return None


class UsageAnalyticsEngine:
    """
    Daily usage history with trend comparisons.

    Example:
        engine = UsageAnalyticsEngine(JsonFileStore("~/.tokenpulse/history.json"))
        engine.record_usage("2025-03-14", usage.today)
        analytics = engine.evaluate(usage)
    """

    def __init__(
        self,
        store: KeyValueStore,
        tz: TimeZoneLike = None,
        clock: Callable[[], float] = time.time,
        retention_days: int = RETENTION_DAYS,
    ):
        self.store = store
        self.tz = tz
        self.retention_days = retention_days
        self._clock = clock
        self._history: Dict[str, DailyRecord] = {}
        self._last_purge: Optional[date] = None
        self._lock = threading.Lock()
        self._load()

    @property
    def history(self) -> Dict[str, DailyRecord]:
        """Copy of the stored records keyed by date."""
        return dict(self._history)

    def stored_total(self, key: str) -> int:
        record = self._history.get(key)
        return record.total_tokens if record else 0

    def today_key(self, now: Optional[float] = None) -> str:
        now = self._clock() if now is None else now
        return date_key(local_datetime(now, self.tz).date())

    def record_usage(self, key: str, total_tokens: int):
        """Upsert the total for one day. The latest observation wins."""
        with self._lock:
            self._history[key] = DailyRecord(
                date_key=key,
                total_tokens=max(0, int(total_tokens)),
                recorded_at=self._clock(),
            )
            logger.debug("Recorded daily usage", date_key=key, total_tokens=total_tokens)
            self._persist()

    def evaluate(
        self,
        usage: DetailedTokenUsage,
        now: Optional[float] = None,
    ) -> UsageAnalytics:
        """Stats and trends for ``usage`` against the stored history."""
        now = self._clock() if now is None else now
        today = local_datetime(now, self.tz).date()

        yesterday = today - timedelta(days=1)
        last_week_start = start_of_week(today) - timedelta(days=7)
        last_month_first, last_month_last = previous_month_range(today)

        trends = UsageTrends(
            today_vs_yesterday=trend(usage.today, self.stored_total(date_key(yesterday))),
            this_week_vs_last=trend(
                usage.this_week,
                self._sum_days(last_week_start, last_week_start + timedelta(days=6)),
            ),
            this_month_vs_last=trend(
                usage.this_month,
                self._sum_days(last_month_first, last_month_last),
            ),
        )

        return UsageAnalytics(
            total_tokens=usage.today,
            time_based_stats=time_based_stats(usage),
            trends=trends,
            timestamp=now,
        )

    def purge_expired(self, today: date) -> int:
        """
        Drop records more than ``retention_days`` before ``today``.

        Keys that are not dates are dropped too. Today's record is always kept.

        Returns:
            Number of removed records
        """
        cutoff = today - timedelta(days=self.retention_days)
        keep_key = date_key(today)
        with self._lock:
            expired = []
            for key in self._history:
                if key == keep_key:
                    continue
                day = _parse_date_key(key)
                if day is None or day < cutoff:
                    expired.append(key)

            for key in expired:
                del self._history[key]

            self._last_purge = today
            if expired:
                logger.info(
                    "Purged expired usage history",
                    removed=len(expired),
                    retained=len(self._history),
                    retention_days=self.retention_days,
                )
                self._persist()
        return len(expired)

    def maybe_purge(self, now: Optional[float] = None) -> int:
        """Run purge_expired() at most once per local day."""
        now = self._clock() if now is None else now
        today = local_datetime(now, self.tz).date()
        if self._last_purge == today:
            return 0
        return self.purge_expired(today)

    def _sum_days(self, first: date, last: date) -> int:
        return sum(self.stored_total(date_key(day)) for day in _days(first, last))

    def _load(self):
        try:
            raw = self.store.load(HISTORY_KEY)
        except StorageError as e:
            logger.warning("Could not load usage history; starting empty", error=str(e))
            return

        if raw is None:
            logger.info("No usage history found; starting empty")
            return

        try:
            payload = json.loads(raw)
            records = {
                key: DailyRecord.from_dict({**value, "date_key": key})
                for key, value in payload.items()
            }
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("Usage history is corrupt; starting empty", error=str(e))
            return

        self._history = records
        logger.info("Loaded usage history", days=len(records))

    def _persist(self):
        payload = {key: record.to_dict() for key, record in sorted(self._history.items())}
        try:
            self.store.save(HISTORY_KEY, json.dumps(payload))
        except StorageError as e:
            logger.error("Failed to persist usage history", error=str(e), code=e.code)
