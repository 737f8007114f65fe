"""
tokenpulse - Bucket Cache

TTL cache of fetched usage buckets keyed by exact query range and granularity.

- Hour-granularity ranges expire quickly (the current hour is still filling)
- Day-granularity ranges of completed days live longer
- Reads never block each other; writes and stale evictions share one lock
- Nothing is persisted: an empty cache is the normal cold-start state
"""

import time
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence

from ..core.models import CacheEntry, CacheKey, Granularity, UsageBucket
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector


logger = get_logger(__name__)

HOURLY_TTL_SECONDS = 150.0
DAILY_TTL_SECONDS = 1800.0


def ttl_for(granularity: Granularity) -> float:
    """Recommended TTL for a range fetched at the given granularity."""
    if granularity == Granularity.HOUR:
        return HOURLY_TTL_SECONDS
    return DAILY_TTL_SECONDS


class BucketCache:
    """
    Thread-safe TTL cache for usage buckets.

    An entry is valid while ``now - fetched_at <= ttl``. A stale read
    returns None and removes the entry.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._clock = clock
        self._metrics = metrics
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._write_lock = Lock()

    def get(self, key: CacheKey) -> Optional[List[UsageBucket]]:
        """Return cached buckets for ``key`` or None when absent or stale."""
        entry = self._entries.get(key)
        now = self._clock()

        if entry is None:
            self._record(key, "miss")
            logger.debug("Cache miss", cache_key=str(key))
            return None

        if entry.is_expired(now):
            with self._write_lock:
                # Only evict the entry we judged stale; a concurrent put may
                # already have replaced it.
                if self._entries.get(key) is entry:
                    del self._entries[key]
            self._record(key, "expired")
            logger.debug(
                "Cache expired",
                cache_key=str(key),
                ttl_seconds=entry.ttl,
                age_seconds=round(entry.age(now), 1),
            )
            return None

        self._record(key, "hit")
        logger.debug(
            "Cache hit",
            cache_key=str(key),
            ttl_seconds=entry.ttl,
            age_seconds=round(entry.age(now), 1),
        )
        return list(entry.buckets)

    def put(
        self,
        key: CacheKey,
        buckets: Sequence[UsageBucket],
        ttl: Optional[float] = None,
    ) -> None:
        """Store ``buckets`` under ``key``; ttl defaults to the granularity TTL."""
        entry = CacheEntry(
            key=key,
            buckets=list(buckets),
            fetched_at=self._clock(),
            ttl=ttl_for(key.granularity) if ttl is None else ttl,
        )
        with self._write_lock:
            self._entries[key] = entry

    def invalidate(self, key: CacheKey) -> bool:
        """Drop one entry. Returns True if something was removed."""
        with self._write_lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry and return how many were removed."""
        with self._write_lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Cleared bucket cache", entries=count)
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def _record(self, key: CacheKey, result: str):
        if self._metrics is not None:
            self._metrics.record_cache_lookup(key.granularity.value, result)
