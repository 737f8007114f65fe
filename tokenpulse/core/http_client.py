"""
tokenpulse - Upstream HTTP Client

HTTP client wrapper with:
- Request correlation (request_id logging)
- Step-based logging for debugging
- Status/transport error mapping onto the tokenpulse taxonomy
- Optional bounded retry with exponential backoff (off by default; the poll
  loop owns recovery and waits for its next cycle instead)
"""

import asyncio
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..observability.logging import get_logger
from .errors import (
    MalformedResponseError,
    UpstreamUnavailableError,
    error_from_status,
    handle_http_error,
)


logger = get_logger("tokenpulse.http")


@dataclass
class RetryConfig:
    """Configuration for in-call retry behavior."""
    max_retries: int = 0
    base_delay: float = 1.0  # seconds
    max_delay: float = 16.0  # seconds
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # 25% jitter
    retryable_status_codes: List[int] = field(
        default_factory=lambda: [500, 502, 503, 504, 429]
    )


@dataclass
class RequestContext:
    """Context for tracking a request through the system."""
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")
    step_name: str = ""
    provider: str = ""

    def to_log_extra(self) -> Dict[str, str]:
        return {"request_id": self.request_id, "step": self.step_name}


@dataclass
class HttpResponse:
    """Decoded HTTP response with metadata."""
    status_code: int
    data: Any
    headers: Dict[str, str]
    request_id: str
    latency_ms: float
    retries_attempted: int = 0


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 16.0,
    exponential_base: float = 2.0,
    jitter_factor: float = 0.25
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Sequence for the defaults: 1s, 2s, 4s, 8s, 16s (with +/-25% jitter)
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    jitter_range = delay * jitter_factor
    delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0.1, delay)  # Minimum 100ms


class RobustHttpClient:
    """
    Async JSON GET client for the upstream usage API.

    Every failure leaves as a TokenPulseException:
    - 401/403 -> UnauthorizedError
    - 429/5xx/timeout/connection -> UpstreamUnavailableError
    - 200 with a non-JSON body -> MalformedResponseError
    """

    def __init__(
        self,
        base_url: str = "",
        provider: str = "openai",
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _log_request_start(self, ctx: RequestContext, url: str, params: Dict[str, Any]):
        logger.info(
            f"STEP [{ctx.step_name}] Starting GET {url}",
            extra={**ctx.to_log_extra(), "params": self._summarize_params(params)},
        )

    def _log_retry(self, ctx: RequestContext, attempt: int, delay: float, error: str):
        logger.warning(
            f"STEP [{ctx.step_name}] Retry {attempt}/{self.retry_config.max_retries} "
            f"after {delay:.2f}s - Error: {error}",
            extra=ctx.to_log_extra(),
        )

    def _log_response(self, ctx: RequestContext, status: int, latency_ms: float, size: int):
        message = (
            f"STEP [{ctx.step_name}] Response: status={status}, "
            f"latency={latency_ms:.0f}ms, bytes={size}"
        )
        if status < 400:
            logger.info(message, extra=ctx.to_log_extra())
        else:
            logger.warning(message, extra=ctx.to_log_extra())

    def _summarize_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Create safe query summary (no secrets)."""
        summary = {}
        for key, value in params.items():
            if key in ("api_key", "key", "token", "secret", "authorization"):
                summary[key] = "***REDACTED***"
            else:
                summary[key] = value
        return summary

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        step_name: str = "http_request",
        request_id: Optional[str] = None,
    ) -> HttpResponse:
        """
        GET a JSON document.

        Args:
            path: URL path (appended to base_url)
            params: Query parameters
            headers: Additional headers (e.g. Authorization)
            step_name: Name of current step for logging
            request_id: Request ID for correlation (auto-generated if not provided)

        Returns:
            HttpResponse with decoded JSON data

        Raises:
            UnauthorizedError, UpstreamUnavailableError, MalformedResponseError
        """
        ctx = RequestContext(
            request_id=request_id or f"req_{uuid.uuid4().hex[:12]}",
            step_name=step_name,
            provider=self.provider,
        )
        url = f"{self.base_url}{path}"
        params = params or {}
        merged_headers = {**self.default_headers, **(headers or {})}
        merged_headers["X-Request-ID"] = ctx.request_id

        self._log_request_start(ctx, url, params)

        client = await self._get_client()

        for attempt in range(self.retry_config.max_retries + 1):
            start_time = time.monotonic()
            try:
                response = await client.get(url, params=params, headers=merged_headers)
            except httpx.HTTPError as e:
                if attempt < self.retry_config.max_retries:
                    delay = self._backoff(attempt)
                    self._log_retry(ctx, attempt + 1, delay, f"{type(e).__name__}: {e}")
                    await asyncio.sleep(delay)
                    continue
                raise handle_http_error(e, self.provider, ctx.request_id) from e

            latency_ms = (time.monotonic() - start_time) * 1000
            self._log_response(ctx, response.status_code, latency_ms, len(response.content))

            if response.status_code in self.retry_config.retryable_status_codes:
                if attempt < self.retry_config.max_retries:
                    delay = self._backoff(attempt)
                    self._log_retry(ctx, attempt + 1, delay, f"Status {response.status_code}")
                    await asyncio.sleep(delay)
                    continue

            if response.status_code != 200:
                raise error_from_status(
                    self.provider,
                    response.status_code,
                    self._decode_error_body(response),
                    dict(response.headers),
                    ctx.request_id,
                )

            try:
                data = response.json()
            except ValueError as e:
                raise MalformedResponseError(
                    self.provider,
                    reason=f"body is not valid JSON: {e}",
                    request_id=ctx.request_id,
                    body_preview=response.text[:200],
                ) from e

            return HttpResponse(
                status_code=response.status_code,
                data=data,
                headers=dict(response.headers),
                request_id=ctx.request_id,
                latency_ms=latency_ms,
                retries_attempted=attempt,
            )

        # Should not reach here
        raise UpstreamUnavailableError(
            self.provider,
            message="Unexpected retry loop exit",
            request_id=ctx.request_id,
        )

    def _backoff(self, attempt: int) -> float:
        return calculate_backoff(
            attempt,
            self.retry_config.base_delay,
            self.retry_config.max_delay,
            self.retry_config.exponential_base,
            self.retry_config.jitter_factor,
        )

    @staticmethod
    def _decode_error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text[:500] if response.text else None
