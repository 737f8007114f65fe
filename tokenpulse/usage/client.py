"""
tokenpulse - Usage Source Client

Fetches bucketed token counters from the upstream usage API.

Flow for one fetch_usage() call:
1. Serve from the bucket cache when the exact (start, end, granularity) range
   is cached and fresh
2. Otherwise request pages sequentially, following the ``next_page`` cursor
   until the upstream reports no more pages or the page ceiling is reached
3. Validate every page, collapse per-model rows into one token count per
   bucket, sort by start time
4. Cache complete results; truncated results are returned but not cached
"""

import time
import warnings
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from pydantic import ValidationError

from ..core.errors import (
    MalformedResponseError,
    TokenPulseException,
    TooManyPagesWarning,
    UnauthorizedError,
)
from ..core.http_client import RobustHttpClient
from ..core.models import CacheKey, Granularity, UsageBucket
from ..observability.logging import TimedOperation, get_logger
from ..observability.metrics import MetricsCollector
from ..observability.tracing import trace_upstream_fetch
from ..security.secrets import SecretStore
from .cache import BucketCache, ttl_for
from .schemas import UsagePage


logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_MAX_PAGES = 10


class UsageSource(Protocol):
    """Anything that can produce ordered usage buckets for a time range."""

    async def fetch_usage(
        self,
        start: int,
        end: int,
        granularity: Granularity,
    ) -> List[UsageBucket]:
        ...


class OpenAIUsageClient:
    """
    Usage source backed by the OpenAI organization usage API.

    Raises:
        UnauthorizedError: no credential configured, or 401/403 from upstream
        UpstreamUnavailableError: 429/5xx/timeout/connection failure
        MalformedResponseError: 200 with a body that fails schema validation
    """

    PROVIDER = "openai"
    USAGE_PATH = "/v1/organization/usage/completions"

    def __init__(
        self,
        secret_store: SecretStore,
        cache: Optional[BucketCache] = None,
        base_url: str = DEFAULT_BASE_URL,
        max_pages: int = DEFAULT_MAX_PAGES,
        page_limit: Optional[int] = None,
        timeout: float = 30.0,
        http_client: Optional[RobustHttpClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")

        self.secret_store = secret_store
        self.cache = cache if cache is not None else BucketCache(metrics=metrics)
        self.max_pages = max_pages
        self.page_limit = page_limit
        self._metrics = metrics
        self._http = http_client or RobustHttpClient(
            base_url=base_url,
            provider=self.PROVIDER,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "OpenAIUsageClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self._http.close()

    async def fetch_usage(
        self,
        start: int,
        end: int,
        granularity: Granularity,
    ) -> List[UsageBucket]:
        """
        Return usage buckets for ``[start, end)`` sorted by start time.

        Args:
            start: Range start, epoch seconds
            end: Range end, epoch seconds
            granularity: Bucket width (hour or day)
        """
        key = CacheKey(start=int(start), end=int(end), granularity=granularity)
        if key.end <= key.start:
            return []

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Using cached usage", cache_key=str(key), buckets=len(cached))
            return cached

        credential = self.secret_store.get_credential()
        if not credential:
            raise UnauthorizedError(self.PROVIDER)

        started = time.monotonic()
        with trace_upstream_fetch(self.PROVIDER, granularity.value) as span:
            async with TimedOperation(
                "usage_fetch",
                logger,
                extra={"granularity": granularity.value, "cache_key": str(key)},
            ):
                buckets, complete = await self._fetch_pages(key, credential)
            span.set_attribute("usage.buckets", len(buckets))
            span.set_attribute("usage.complete", complete)

        if self._metrics is not None:
            self._metrics.observe_fetch_duration(granularity.value, time.monotonic() - started)

        if complete:
            self.cache.put(key, buckets, ttl_for(granularity))
            logger.debug(
                "Cached usage",
                cache_key=str(key),
                buckets=len(buckets),
                ttl_seconds=ttl_for(granularity),
            )

        return buckets

    async def _fetch_pages(
        self,
        key: CacheKey,
        credential: str,
    ) -> Tuple[List[UsageBucket], bool]:
        """Walk the page cursor. Returns (buckets, complete)."""
        by_start: Dict[int, UsageBucket] = {}
        cursor: Optional[str] = None
        page_count = 0

        while True:
            page_count += 1
            page = await self._fetch_page(key, credential, cursor, page_count)

            for remote in page.data:
                bucket = remote.normalize()
                # Pages never overlap in practice; keep the first copy if they do.
                by_start.setdefault(bucket.start_time, bucket)

            logger.debug(
                "Decoded usage page",
                page=page_count,
                page_buckets=len(page.data),
                total_buckets=len(by_start),
            )

            cursor = page.next_cursor
            if cursor is None:
                break

            if page_count >= self.max_pages:
                buckets = sorted(by_start.values(), key=lambda b: b.start_time)
                warning = TooManyPagesWarning(self.max_pages, len(buckets))
                logger.warning(str(warning), cache_key=str(key), pages=page_count)
                warnings.warn(warning, stacklevel=3)
                return buckets, False

        buckets = sorted(by_start.values(), key=lambda b: b.start_time)
        logger.info(
            "Fetched usage",
            granularity=key.granularity.value,
            pages=page_count,
            buckets=len(buckets),
        )
        return buckets, True

    async def _fetch_page(
        self,
        key: CacheKey,
        credential: str,
        cursor: Optional[str],
        page_number: int,
    ) -> UsagePage:
        params: Dict[str, Any] = {
            "start_time": key.start,
            "end_time": key.end,
            "bucket_width": key.granularity.value,
        }
        if self.page_limit is not None:
            params["limit"] = self.page_limit
        if cursor is not None:
            params["page"] = cursor

        try:
            response = await self._http.get_json(
                self.USAGE_PATH,
                params=params,
                headers={"Authorization": f"Bearer {credential}"},
                step_name=f"usage_{key.granularity.value}_page_{page_number}",
            )
        except TokenPulseException as e:
            self._record_request(key.granularity, e.code)
            raise

        try:
            page = UsagePage.model_validate(response.data)
        except ValidationError as e:
            self._record_request(key.granularity, "malformed_response")
            raise MalformedResponseError(
                self.PROVIDER,
                reason=str(e),
                request_id=response.request_id,
                body_preview=str(response.data)[:200],
            ) from e

        self._record_request(key.granularity, str(response.status_code))
        return page

    def _record_request(self, granularity: Granularity, status: str):
        if self._metrics is not None:
            self._metrics.record_upstream_request(granularity.value, status)
