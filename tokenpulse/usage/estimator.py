"""
tokenpulse - Real-Time Usage Estimator

Hour buckets from the upstream only tell us how much was used this hour.
Between polls we estimate the current consumption rate from successive
readings of the newest hour bucket.

Model:
- Token delta between two snapshots of the newest hour bucket
- Instantaneous rate capped at MAX_INSTANTANEOUS_RATE tokens/min
- Exponential moving average of the rate, decaying toward zero while idle
- 20 wall-clock aligned 3-minute bins for last-3min / last-15min counts

The estimator performs no I/O and never raises from ingest().
"""

import math
import random
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from ..core.models import RealTimeEstimates, Snapshot
from ..observability.logging import get_logger


logger = get_logger(__name__)

BIN_WIDTH_SECONDS = 180
TOTAL_BINS = 20
SMOOTHING_TAU_SECONDS = 180.0
DECAY_TAU_SECONDS = 480.0
MAX_INSTANTANEOUS_RATE = 500.0
CROSS_HOUR_DELTA_CAP = int(MAX_INSTANTANEOUS_RATE * 5)
LAST_15MIN_BINS = 5

MIN_POLLING_INTERVAL = 90.0

# (upper bound on tokens/min, base interval seconds)
POLLING_THRESHOLDS: List[Tuple[float, float]] = [
    (0.1, 15 * 60),
    (1.0, 7 * 60),
    (10.0, 3 * 60),
    (50.0, 2 * 60),
]


@dataclass(frozen=True)
class _Reading:
    """Newest hour bucket as seen by one snapshot (None fields: no bucket)."""
    captured_at: float
    bucket_start: Optional[int] = None
    value: Optional[int] = None

    @property
    def has_bucket(self) -> bool:
        return self.bucket_start is not None


def align_to_bin(epoch: float) -> int:
    """Start of the wall-clock aligned bin containing ``epoch``."""
    return int(math.floor(epoch / BIN_WIDTH_SECONDS) * BIN_WIDTH_SECONDS)


def _latest_reading(snapshot: Snapshot) -> _Reading:
    captured_at = float(snapshot.captured_at)
    if not math.isfinite(captured_at):
        raise ValueError(f"captured_at is not finite: {captured_at}")
    buckets = snapshot.buckets or ()
    if not buckets:
        return _Reading(captured_at)
    newest = max(buckets, key=lambda b: b.start_time)
    return _Reading(captured_at, int(newest.start_time), int(newest.token_count))


class RealTimeEstimator:
    """
    Smoothed token rate and short-horizon counts between polls.

    Example:
        estimator = RealTimeEstimator()
        estimator.ingest(Snapshot.of(time.time(), hourly_buckets))
        estimates = estimator.get_estimates()
        delay = estimator.get_recommended_polling_interval()
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self._clock = clock
        self._rng = rng or random.Random()

        self._last: Optional[_Reading] = None
        self._ema_rate = 0.0
        self._bins: List[int] = [0] * TOTAL_BINS
        self._current_index = 0
        self._current_bin_start: Optional[int] = None

    @property
    def ema_rate(self) -> float:
        """Stored EMA rate as of the last ingest, without idle decay."""
        return self._ema_rate

    @property
    def last_ingest_at(self) -> Optional[float]:
        return self._last.captured_at if self._last else None

    def ingest(self, snapshot: Snapshot) -> bool:
        """
        Fold one snapshot into the estimate.

        Returns:
            False when the snapshot is older than the last ingested one and
            was discarded, True otherwise.
        """
        try:
            reading = _latest_reading(snapshot)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Treating malformed snapshot as empty", error=str(e))
            reading = _Reading(self._clock())

        previous = self._last
        if previous is not None and reading.captured_at < previous.captured_at:
            logger.debug(
                "Discarding superseded snapshot",
                captured_at=reading.captured_at,
                last_ingest_at=previous.captured_at,
            )
            return False

        if previous is None:
            self._advance_bins(reading.captured_at)
            self._last = reading
            return True

        dt = reading.captured_at - previous.captured_at
        if dt > 0:
            self._ema_rate *= math.exp(-dt / DECAY_TAU_SECONDS)

        delta = self._token_delta(previous, reading)
        self._update_ema(delta, dt)
        self._advance_bins(reading.captured_at)
        self._bins[self._current_index] += delta
        if reading.has_bucket or not previous.has_bucket:
            self._last = reading
        else:
            # Empty snapshot: keep the bucket baseline, move only the clock
            self._last = _Reading(reading.captured_at, previous.bucket_start, previous.value)

        logger.debug(
            "Ingested snapshot",
            token_delta=delta,
            ema_rate=round(self._ema_rate, 4),
        )
        return True

    def get_estimates(self, now: Optional[float] = None) -> RealTimeEstimates:
        """Current estimates; reads state only, so repeated calls agree."""
        now = self._clock() if now is None else now

        rate = self._ema_rate
        if self._last is not None:
            elapsed = now - self._last.captured_at
            if elapsed > 0:
                rate *= math.exp(-elapsed / DECAY_TAU_SECONDS)

        stale = self._bins_elapsed(now)
        return RealTimeEstimates(
            last_3min_tokens=self._sum_recent_bins(1, stale),
            last_15min_tokens=self._sum_recent_bins(LAST_15MIN_BINS, stale),
            ema_rate_tokens_per_minute=rate,
            timestamp=now,
        )

    def get_recommended_polling_interval(self, now: Optional[float] = None) -> float:
        """Seconds until the next poll: short when busy, long when idle."""
        rate = self.get_estimates(now).ema_rate_tokens_per_minute
        return max(MIN_POLLING_INTERVAL, base_polling_interval(rate) * self._rng.uniform(0.9, 1.1))

    def _token_delta(self, previous: _Reading, current: _Reading) -> int:
        if not (previous.has_bucket and current.has_bucket):
            return 0
        if previous.bucket_start == current.bucket_start:
            return max(0, current.value - previous.value)
        # New hour bucket: its whole value is attributed to this interval,
        # capped to five minutes at the maximum rate.
        return min(max(0, current.value), CROSS_HOUR_DELTA_CAP)

    def _update_ema(self, delta: int, dt: float):
        if dt <= 0:
            return
        dt_minutes = max(0.1, dt / 60.0)
        instantaneous = min(MAX_INSTANTANEOUS_RATE, delta / dt_minutes)
        alpha = 1.0 - math.exp(-dt / SMOOTHING_TAU_SECONDS)
        self._ema_rate = alpha * instantaneous + (1.0 - alpha) * self._ema_rate

    def _advance_bins(self, at: float):
        aligned = align_to_bin(at)
        if self._current_bin_start is None:
            self._current_bin_start = aligned
            return

        passed = (aligned - self._current_bin_start) // BIN_WIDTH_SECONDS
        if passed <= 0:
            return
        for _ in range(min(passed, TOTAL_BINS)):
            self._current_index = (self._current_index + 1) % TOTAL_BINS
            self._bins[self._current_index] = 0
        self._current_bin_start = aligned

    def _bins_elapsed(self, now: float) -> int:
        if self._current_bin_start is None:
            return 0
        return max(0, (align_to_bin(now) - self._current_bin_start) // BIN_WIDTH_SECONDS)

    def _sum_recent_bins(self, count: int, stale: int) -> int:
        # The newest ``stale`` bins of the window have not been written yet.
        total = 0
        for offset in range(max(0, count - stale)):
            total += self._bins[(self._current_index - offset) % TOTAL_BINS]
        return total


def base_polling_interval(rate: float) -> float:
    """Un-jittered polling interval for a tokens/min rate."""
    for upper, interval in POLLING_THRESHOLDS:
        if rate < upper:
            return interval
    return MIN_POLLING_INTERVAL
