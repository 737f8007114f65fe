"""
tokenpulse - Real-Time Estimator Tests

Tests for:
- EMA updates, spike cap and idle decay
- Hour-boundary deltas
- Wall-clock aligned 3-minute bins
- Superseded and malformed snapshots
- Adaptive polling interval
"""

import math
import random

import pytest

from tokenpulse.core.models import Snapshot
from tokenpulse.usage.estimator import (
    BIN_WIDTH_SECONDS,
    CROSS_HOUR_DELTA_CAP,
    DECAY_TAU_SECONDS,
    MAX_INSTANTANEOUS_RATE,
    RealTimeEstimator,
    align_to_bin,
    base_polling_interval,
)

from conftest import BASE_TIME, bucket


HOUR = int(BASE_TIME)  # the 10:00 UTC hour bucket
ALPHA_3MIN = 1.0 - math.exp(-1.0)


def snap(at: float, value: int, hour_start: int = HOUR) -> Snapshot:
    return Snapshot.of(at, [bucket(hour_start - 3600, 999), bucket(hour_start, value)])


@pytest.fixture
def estimator(clock):
    return RealTimeEstimator(clock=clock, rng=random.Random(7))


class TestIngest:
    """Tests for RealTimeEstimator.ingest."""

    def test_first_snapshot_only_initializes(self, estimator):
        assert estimator.ingest(snap(BASE_TIME, 1000)) is True

        estimates = estimator.get_estimates(BASE_TIME)
        assert estimates.ema_rate_tokens_per_minute == 0.0
        assert estimates.last_3min_tokens == 0
        assert estimates.last_15min_tokens == 0

    def test_rate_rises_then_falls(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 1300))
        after_burst = estimator.get_estimates(BASE_TIME + 180)

        # 300 tokens over 3 minutes -> 100 tokens/min instantaneous
        assert after_burst.ema_rate_tokens_per_minute == pytest.approx(100 * ALPHA_3MIN)
        assert after_burst.last_3min_tokens == 300

        estimator.ingest(snap(BASE_TIME + 360, 1300))
        after_idle = estimator.get_estimates(BASE_TIME + 360)

        expected = (1 - ALPHA_3MIN) * 100 * ALPHA_3MIN * math.exp(-180 / DECAY_TAU_SECONDS)
        assert after_idle.ema_rate_tokens_per_minute == pytest.approx(expected)
        assert after_idle.ema_rate_tokens_per_minute < after_burst.ema_rate_tokens_per_minute
        assert after_idle.last_3min_tokens == 0
        assert after_idle.last_15min_tokens == 300

    def test_counter_reset_is_zero_delta(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 400))

        assert estimator.get_estimates(BASE_TIME + 180).last_3min_tokens == 0
        assert estimator.ema_rate == 0.0

    def test_rate_never_negative(self, estimator):
        value = 0
        for step in range(30):
            value += (step * 37) % 11
            estimator.ingest(snap(BASE_TIME + step * 90, value))
            assert estimator.get_estimates().ema_rate_tokens_per_minute >= 0.0

    def test_instantaneous_rate_is_capped(self, estimator):
        estimator.ingest(snap(BASE_TIME, 0))
        estimator.ingest(snap(BASE_TIME + 60, 1_000_000))

        alpha = 1.0 - math.exp(-60 / 180)
        assert estimator.ema_rate == pytest.approx(alpha * MAX_INSTANTANEOUS_RATE)

    def test_new_hour_bucket_delta_is_capped(self, estimator):
        estimator.ingest(snap(BASE_TIME, 50_000))
        estimator.ingest(snap(BASE_TIME + 180, 9_000, hour_start=HOUR + 3600))

        assert estimator.get_estimates(BASE_TIME + 180).last_3min_tokens == CROSS_HOUR_DELTA_CAP

    def test_new_hour_bucket_small_value(self, estimator):
        estimator.ingest(snap(BASE_TIME, 50_000))
        estimator.ingest(snap(BASE_TIME + 180, 120, hour_start=HOUR + 3600))

        assert estimator.get_estimates(BASE_TIME + 180).last_3min_tokens == 120

    def test_older_snapshot_rejected(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 1300))
        before = estimator.get_estimates(BASE_TIME + 180)

        assert estimator.ingest(snap(BASE_TIME + 90, 5000)) is False
        assert estimator.get_estimates(BASE_TIME + 180) == before
        assert estimator.last_ingest_at == BASE_TIME + 180

    def test_same_timestamp_adds_tokens_without_rate_change(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 1300))
        rate = estimator.ema_rate

        assert estimator.ingest(snap(BASE_TIME + 180, 1400)) is True
        assert estimator.ema_rate == rate
        assert estimator.get_estimates(BASE_TIME + 180).last_3min_tokens == 400

    def test_empty_snapshot_is_zero_delta(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        assert estimator.ingest(Snapshot.of(BASE_TIME + 180, [])) is True
        assert estimator.get_estimates(BASE_TIME + 180).last_3min_tokens == 0

    def test_malformed_snapshot_does_not_raise(self, estimator):
        assert estimator.ingest(object()) is True
        assert estimator.get_estimates().last_15min_tokens == 0

    @pytest.mark.parametrize("captured_at", [None, "soon", float("nan"), float("inf")])
    def test_bad_timestamp_does_not_raise(self, estimator, clock, captured_at):
        estimator.ingest(snap(BASE_TIME, 1000))
        clock.advance(180)

        assert estimator.ingest(Snapshot(captured_at=captured_at, buckets=())) is True

        estimates = estimator.get_estimates()
        assert estimator.last_ingest_at == BASE_TIME + 180
        assert estimates.last_3min_tokens == 0
        assert math.isfinite(estimates.ema_rate_tokens_per_minute)

    def test_empty_snapshot_keeps_bucket_baseline(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(Snapshot.of(BASE_TIME + 180, []))
        estimator.ingest(snap(BASE_TIME + 360, 1000))

        estimates = estimator.get_estimates(BASE_TIME + 360)
        assert estimates.last_15min_tokens == 0
        assert estimates.ema_rate_tokens_per_minute == 0.0

    def test_growth_across_empty_snapshot_is_counted_once(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(Snapshot.of(BASE_TIME + 180, []))
        estimator.ingest(snap(BASE_TIME + 360, 1200))

        assert estimator.get_estimates(BASE_TIME + 360).last_15min_tokens == 200

    def test_first_bucket_after_empty_start_only_initializes(self, estimator):
        estimator.ingest(Snapshot.of(BASE_TIME, []))
        estimator.ingest(snap(BASE_TIME + 180, 1000))

        assert estimator.get_estimates(BASE_TIME + 180).last_15min_tokens == 0


class TestBins:
    """Tests for the 3-minute bins."""

    def test_bins_are_wall_clock_aligned(self):
        assert align_to_bin(BASE_TIME) == BASE_TIME
        assert align_to_bin(BASE_TIME + 179.9) == BASE_TIME
        assert align_to_bin(BASE_TIME + BIN_WIDTH_SECONDS) == BASE_TIME + 180

    def test_independent_estimators_bin_alike(self, clock):
        a = RealTimeEstimator(clock=clock)
        b = RealTimeEstimator(clock=clock)
        a.ingest(snap(BASE_TIME + 10, 0))
        b.ingest(snap(BASE_TIME + 100, 0))
        a.ingest(snap(BASE_TIME + 200, 60))
        b.ingest(snap(BASE_TIME + 200, 60))

        assert a.get_estimates(BASE_TIME + 200).last_3min_tokens == 60
        assert b.get_estimates(BASE_TIME + 200).last_3min_tokens == 60

    def test_last_15min_sums_five_bins(self, estimator):
        estimator.ingest(snap(BASE_TIME, 0))
        total = 0
        for i in range(1, 8):
            total += 10 * i
            estimator.ingest(snap(BASE_TIME + i * 180, total))

        estimates = estimator.get_estimates(BASE_TIME + 7 * 180)
        assert estimates.last_3min_tokens == 70
        assert estimates.last_15min_tokens == 30 + 40 + 50 + 60 + 70

    def test_elapsed_bins_read_as_zero(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 1300))

        two_bins_later = estimator.get_estimates(BASE_TIME + 180 + 2 * 180)
        assert two_bins_later.last_3min_tokens == 0
        assert two_bins_later.last_15min_tokens == 300

        much_later = estimator.get_estimates(BASE_TIME + 180 + 5 * 180)
        assert much_later.last_15min_tokens == 0

        # Reading ahead does not change stored bins
        assert estimator.get_estimates(BASE_TIME + 180).last_3min_tokens == 300

    def test_long_gap_clears_all_bins(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 1300))
        estimator.ingest(snap(BASE_TIME + 180 + 25 * 180, 1300))

        assert estimator.get_estimates(BASE_TIME + 180 + 25 * 180).last_15min_tokens == 0


class TestEstimates:
    """Tests for get_estimates."""

    def test_idempotent(self, estimator, clock):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 1300))
        clock.advance(400)

        assert estimator.get_estimates() == estimator.get_estimates()

    def test_decays_between_ingests(self, estimator):
        estimator.ingest(snap(BASE_TIME, 1000))
        estimator.ingest(snap(BASE_TIME + 180, 1300))
        stored = estimator.ema_rate

        later = estimator.get_estimates(BASE_TIME + 180 + DECAY_TAU_SECONDS)

        assert later.ema_rate_tokens_per_minute == pytest.approx(stored * math.exp(-1))
        assert estimator.ema_rate == stored

    def test_before_any_ingest(self, estimator):
        estimates = estimator.get_estimates()
        assert estimates.ema_rate_tokens_per_minute == 0.0
        assert estimates.last_3min_tokens == 0

    def test_to_dict(self, estimator):
        data = estimator.get_estimates(BASE_TIME).to_dict()
        assert set(data) == {
            "last_3min_tokens",
            "last_15min_tokens",
            "ema_rate_tokens_per_minute",
            "timestamp",
        }


class TestPollingInterval:
    """Tests for the adaptive polling interval."""

    @pytest.mark.parametrize("rate, expected", [
        (0.0, 900),
        (0.09, 900),
        (0.1, 420),
        (0.99, 420),
        (1.0, 180),
        (9.9, 180),
        (10.0, 120),
        (49.9, 120),
        (50.0, 90),
        (1000.0, 90),
    ])
    def test_thresholds(self, rate, expected):
        assert base_polling_interval(rate) == expected

    def test_idle_interval_range(self, estimator):
        for _ in range(200):
            assert 810 <= estimator.get_recommended_polling_interval() <= 990

    def test_busy_interval_range(self, estimator):
        estimator.ingest(snap(BASE_TIME, 0))
        for i in range(1, 20):
            estimator.ingest(snap(BASE_TIME + i * 60, i * 100_000))

        assert estimator.get_estimates(BASE_TIME + 19 * 60).ema_rate_tokens_per_minute >= 50
        for _ in range(200):
            interval = estimator.get_recommended_polling_interval(BASE_TIME + 19 * 60)
            assert 90 <= interval <= 99

    def test_interval_lengthens_as_activity_decays(self, estimator):
        estimator.ingest(snap(BASE_TIME, 0))
        for i in range(1, 20):
            estimator.ingest(snap(BASE_TIME + i * 60, i * 100_000))

        busy = estimator.get_recommended_polling_interval(BASE_TIME + 19 * 60)
        idle = estimator.get_recommended_polling_interval(BASE_TIME + 19 * 60 + 6 * 3600)
        assert idle > busy
