"""
tokenpulse - Usage Monitor

Single polling loop that ties the components together.

One cycle:
1. Compute local calendar boundaries for "now"
2. Fetch the hour-granularity and day-granularity ranges concurrently
3. Build calendar totals, feed the estimator and evaluate trends
4. Record today's total (in a worker thread) and notify the on_update callback
5. Sleep for the estimator's recommended interval (or a backoff after errors)

A failed cycle never stops the loop: the callback still receives decayed
estimates and a fallback usage built from local history.
"""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from .config import MonitorSettings
from .core.errors import (
    MalformedResponseError,
    TokenPulseException,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from .core.http_client import calculate_backoff
from .core.models import (
    DetailedTokenUsage,
    Granularity,
    RealTimeEstimates,
    Snapshot,
    UsageAnalytics,
    UsageBucket,
)
from .observability.logging import LogContext, get_logger
from .observability.metrics import MetricsCollector
from .observability.tracing import record_exception, trace_poll_cycle
from .security.secrets import EnvSecretStore
from .usage.aggregator import (
    CalendarBoundaries,
    TimeZoneLike,
    build_detailed_usage,
    daily_range,
    date_key,
    hourly_range,
)
from .usage.analytics import UsageAnalyticsEngine
from .usage.cache import BucketCache
from .usage.client import OpenAIUsageClient, UsageSource
from .usage.estimator import RealTimeEstimator
from .usage.storage import InMemoryStore, JsonFileStore


logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 30 * 60.0
BACKOFF_JITTER = 0.1

UpdateCallback = Callable[
    [DetailedTokenUsage, RealTimeEstimates, UsageAnalytics],
    Union[None, Awaitable[None]],
]


class UsageMonitor:
    """
    Polls a usage source and keeps the latest usage, estimates and analytics.

    Example:
        monitor = UsageMonitor(client, on_update=render)
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        source: UsageSource,
        estimator: Optional[RealTimeEstimator] = None,
        analytics: Optional[UsageAnalyticsEngine] = None,
        on_update: Optional[UpdateCallback] = None,
        tz: TimeZoneLike = None,
        initial_interval: float = 15 * 60.0,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.estimator = estimator or RealTimeEstimator(clock=clock)
        self.analytics = analytics or UsageAnalyticsEngine(InMemoryStore(), tz=tz, clock=clock)
        self.on_update = on_update
        self.tz = tz
        self._clock = clock
        self._metrics = metrics

        self._current_interval = initial_interval
        self._consecutive_errors = 0
        self._cycle_id = 0
        self._applied_cycle_id = 0
        self._task: Optional[asyncio.Task] = None

        self._latest_usage: Optional[DetailedTokenUsage] = None
        self._latest_estimates: Optional[RealTimeEstimates] = None
        self._latest_analytics: Optional[UsageAnalytics] = None
        self._last_error: Optional[TokenPulseException] = None

    # ----------------------------------------------------------------
    # State
    # ----------------------------------------------------------------

    @property
    def latest_usage(self) -> Optional[DetailedTokenUsage]:
        """Usage from the most recent successful cycle."""
        return self._latest_usage

    @property
    def latest_estimates(self) -> Optional[RealTimeEstimates]:
        return self._latest_estimates

    @property
    def latest_analytics(self) -> Optional[UsageAnalytics]:
        return self._latest_analytics

    @property
    def current_interval(self) -> float:
        """Delay before the next scheduled cycle, seconds."""
        return self._current_interval

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def degraded(self) -> bool:
        """True while the last cycle failed and only local data is served."""
        return self._last_error is not None

    @property
    def last_error(self) -> Optional[TokenPulseException]:
        return self._last_error

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    async def start(self):
        """Start the polling loop. The first cycle runs immediately."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="tokenpulse-poll-loop")
        logger.info("Usage monitor started", initial_interval=self._current_interval)

    async def stop(self):
        """Cancel the polling loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Usage monitor stopped")

    async def aclose(self):
        """Stop polling and release the usage source."""
        await self.stop()
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()

    async def _run(self):
        while True:
            try:
                await self.check_usage()
            except Exception:
                # Callback or programming errors: keep polling on backoff.
                logger.exception("Poll cycle raised unexpectedly")
                self._schedule_backoff()
            await asyncio.sleep(self._current_interval)

    # ----------------------------------------------------------------
    # Poll cycle
    # ----------------------------------------------------------------

    async def check_usage(self) -> bool:
        """
        Run one poll cycle.

        Returns:
            True when fresh usage was applied, False when the cycle failed or
            was superseded by a newer one.
        """
        self._cycle_id += 1
        cycle_id = self._cycle_id
        captured_at = self._clock()

        LogContext.set_current(LogContext(poll_id=cycle_id))
        try:
            with trace_poll_cycle(cycle_id) as span:
                boundaries = CalendarBoundaries.at(captured_at, self.tz)
                try:
                    hourly, daily = await self._fetch(boundaries, captured_at)
                except TokenPulseException as e:
                    record_exception(span, e)
                    if self._superseded(cycle_id):
                        return False
                    await self._handle_failure(e, boundaries)
                    return False

                if self._superseded(cycle_id):
                    return False

                span.set_attribute("usage.hourly_buckets", len(hourly))
                span.set_attribute("usage.daily_buckets", len(daily))
                await self._apply(cycle_id, captured_at, boundaries, hourly, daily)
                return True
        finally:
            LogContext.clear()

    def _superseded(self, cycle_id: int) -> bool:
        """True (and logged) when a newer cycle has already been applied."""
        if cycle_id >= self._applied_cycle_id:
            return False
        logger.info(
            "Discarding superseded poll result",
            applied_cycle=self._applied_cycle_id,
        )
        self._record_poll("superseded")
        return True

    async def _fetch(
        self,
        boundaries: CalendarBoundaries,
        now: float,
    ) -> Tuple[List[UsageBucket], List[UsageBucket]]:
        hourly_start, hourly_end = hourly_range(boundaries, now)
        daily_start, daily_end = daily_range(boundaries)
        hourly, daily = await asyncio.gather(
            self.source.fetch_usage(hourly_start, hourly_end, Granularity.HOUR),
            self.source.fetch_usage(daily_start, daily_end, Granularity.DAY),
        )
        return hourly, daily

    async def _apply(
        self,
        cycle_id: int,
        captured_at: float,
        boundaries: CalendarBoundaries,
        hourly: List[UsageBucket],
        daily: List[UsageBucket],
    ):
        usage = build_detailed_usage(hourly, daily, boundaries, captured_at)

        self.estimator.ingest(Snapshot.of(captured_at, hourly))

        now = self._clock()
        estimates = self.estimator.get_estimates(now)
        # Trends compare against prior days; today's record is written below
        analytics = self.analytics.evaluate(usage, now)

        self._applied_cycle_id = cycle_id
        self._latest_usage = usage
        self._latest_estimates = estimates
        self._latest_analytics = analytics
        self._consecutive_errors = 0
        self._last_error = None
        self._current_interval = self.estimator.get_recommended_polling_interval(now)

        logger.info(
            "Usage updated",
            today=usage.today,
            this_week=usage.this_week,
            this_month=usage.this_month,
            ema_rate=round(estimates.ema_rate_tokens_per_minute, 2),
            next_poll_seconds=round(self._current_interval, 1),
        )
        self._record_poll("success")
        if self._metrics is not None:
            self._metrics.set_period_totals(usage.today, usage.this_week, usage.this_month)
            self._metrics.set_rate(estimates.ema_rate_tokens_per_minute)
            self._metrics.set_polling_interval(self._current_interval)

        # History writes touch the disk; keep them off the event loop
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            self._record_history,
            cycle_id,
            date_key(boundaries.today),
            usage.today,
            captured_at,
        )
        if cycle_id < self._applied_cycle_id:
            return
        await self._notify(usage, estimates, analytics)

    def _record_history(self, cycle_id: int, key: str, total_tokens: int, now: float):
        if cycle_id < self._applied_cycle_id:
            return
        self.analytics.record_usage(key, total_tokens)
        self.analytics.maybe_purge(now)

    async def _handle_failure(
        self,
        error: TokenPulseException,
        boundaries: CalendarBoundaries,
    ):
        self._last_error = error
        self._schedule_backoff()

        if isinstance(error, UnauthorizedError):
            if error.credential_missing:
                logger.info("No credential configured; serving local data only")
            else:
                logger.info("Credential rejected by upstream", code=error.code)
            outcome = "unauthorized"
        elif isinstance(error, MalformedResponseError):
            logger.error("Usage response was malformed", code=error.code, error=str(error))
            outcome = "malformed_response"
        elif isinstance(error, UpstreamUnavailableError):
            logger.warning("Usage API unavailable", code=error.code, error=str(error))
            outcome = "upstream_unavailable"
        else:
            logger.warning("Poll cycle failed", code=error.code, error=str(error))
            outcome = "error"

        logger.warning(
            "Backing off after failed poll",
            consecutive_errors=self._consecutive_errors,
            next_poll_seconds=round(self._current_interval, 1),
        )
        self._record_poll(outcome)

        now = self._clock()
        fallback = DetailedTokenUsage(
            today=self.analytics.stored_total(date_key(boundaries.today)),
            timestamp=now,
        )
        estimates = self.estimator.get_estimates(now)
        self._latest_estimates = estimates
        if self._metrics is not None:
            self._metrics.set_rate(estimates.ema_rate_tokens_per_minute)
            self._metrics.set_polling_interval(self._current_interval)

        await self._notify(fallback, estimates, self.analytics.evaluate(fallback, now))

    def _schedule_backoff(self):
        self._consecutive_errors += 1
        self._current_interval = calculate_backoff(
            self._consecutive_errors,
            base_delay=self._current_interval,
            max_delay=MAX_BACKOFF_SECONDS,
            exponential_base=2.0,
            jitter_factor=BACKOFF_JITTER,
        )

    async def _notify(
        self,
        usage: DetailedTokenUsage,
        estimates: RealTimeEstimates,
        analytics: UsageAnalytics,
    ):
        if self.on_update is None:
            return
        result: Any = self.on_update(usage, estimates, analytics)
        if inspect.isawaitable(result):
            await result

    def _record_poll(self, outcome: str):
        if self._metrics is not None:
            self._metrics.record_poll(outcome)


def build_monitor(
    settings: MonitorSettings,
    on_update: Optional[UpdateCallback] = None,
    metrics: Optional[MetricsCollector] = None,
) -> UsageMonitor:
    """Wire a monitor for the OpenAI usage API from settings."""
    cache = BucketCache(metrics=metrics)
    client = OpenAIUsageClient(
        EnvSecretStore(settings.credential_env),
        cache=cache,
        base_url=settings.api_base,
        max_pages=settings.max_pages,
        timeout=settings.http_timeout,
        metrics=metrics,
    )
    analytics = UsageAnalyticsEngine(JsonFileStore(settings.history_path), tz=settings.timezone)
    return UsageMonitor(
        client,
        analytics=analytics,
        on_update=on_update,
        tz=settings.timezone,
        initial_interval=settings.initial_interval,
        metrics=metrics,
    )
