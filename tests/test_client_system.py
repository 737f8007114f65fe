"""
tokenpulse - Usage Client Tests

Tests for OpenAIUsageClient against an in-process usage API:
- Bucket normalization and ordering
- Cursor pagination and the page ceiling
- Cache-first behavior
- Error mapping (credential, rate limit, 5xx, timeout, malformed body)
"""

import httpx
import pytest

from tokenpulse.core.errors import (
    MalformedResponseError,
    TooManyPagesWarning,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from tokenpulse.core.models import Granularity
from tokenpulse.security.secrets import StaticSecretStore
from tokenpulse.usage.cache import BucketCache
from tokenpulse.usage.client import OpenAIUsageClient

from conftest import sample_value, wire_bucket, wire_page


START = 1741737600  # 2025-03-12 00:00 UTC
END = START + 4 * 3600


@pytest.fixture
def cache(clock):
    return BucketCache(clock=clock)


@pytest.fixture
def client(fake_api, cache, metrics):
    return OpenAIUsageClient(
        StaticSecretStore("sk-admin-test"),
        cache=cache,
        base_url="https://api.test",
        transport=fake_api.transport,
        metrics=metrics,
    )


class TestFetchUsage:
    """Tests for successful fetches."""

    @pytest.mark.asyncio
    async def test_collapses_results_and_sorts(self, client, fake_api):
        fake_api.add_pages("1h", wire_page([
            wire_bucket(START + 3600, 3600, (10, 5)),
            wire_bucket(START, 3600, (100, 20), (30, 0)),
            wire_bucket(START + 7200, 3600),
        ]))

        buckets = await client.fetch_usage(START, END, Granularity.HOUR)

        assert [b.start_time for b in buckets] == [START, START + 3600, START + 7200]
        assert [b.token_count for b in buckets] == [150, 15, 0]
        assert buckets[0].end_time == START + 3600

    @pytest.mark.asyncio
    async def test_request_shape(self, client, fake_api):
        fake_api.add_pages("1d", wire_page([]))

        await client.fetch_usage(START, START + 86400, Granularity.DAY)

        request = fake_api.requests[0]
        assert request.url.path == "/v1/organization/usage/completions"
        assert request.url.params["start_time"] == str(START)
        assert request.url.params["end_time"] == str(START + 86400)
        assert request.url.params["bucket_width"] == "1d"
        assert "page" not in request.url.params
        assert request.headers["Authorization"] == "Bearer sk-admin-test"

    @pytest.mark.asyncio
    async def test_follows_page_cursor(self, client, fake_api):
        fake_api.add_pages(
            "1h",
            wire_page([wire_bucket(START, 3600, (1, 1))], next_page="cursor-1"),
            wire_page([wire_bucket(START + 3600, 3600, (2, 2))]),
        )

        buckets = await client.fetch_usage(START, END, Granularity.HOUR)

        assert [b.token_count for b in buckets] == [2, 4]
        assert len(fake_api.requests) == 2
        assert fake_api.requests[1].url.params["page"] == "cursor-1"

    @pytest.mark.asyncio
    async def test_duplicate_buckets_across_pages(self, client, fake_api):
        fake_api.add_pages(
            "1h",
            wire_page([wire_bucket(START, 3600, (5, 0))], next_page="cursor-1"),
            wire_page([wire_bucket(START, 3600, (5, 0)), wire_bucket(START + 3600, 3600, (1, 0))]),
        )

        buckets = await client.fetch_usage(START, END, Granularity.HOUR)

        assert [b.start_time for b in buckets] == [START, START + 3600]

    @pytest.mark.asyncio
    async def test_empty_range_skips_upstream(self, client, fake_api):
        assert await client.fetch_usage(START, START, Granularity.HOUR) == []
        assert fake_api.requests == []

    def test_rejects_zero_max_pages(self):
        with pytest.raises(ValueError):
            OpenAIUsageClient(StaticSecretStore("sk"), max_pages=0)


class TestCaching:
    """Tests for cache interaction."""

    @pytest.mark.asyncio
    async def test_second_fetch_served_from_cache(self, client, fake_api):
        fake_api.add_pages("1h", wire_page([wire_bucket(START, 3600, (7, 3))]))

        first = await client.fetch_usage(START, END, Granularity.HOUR)
        second = await client.fetch_usage(START, END, Granularity.HOUR)

        assert first == second
        assert len(fake_api.requests) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_refetches(self, client, fake_api, clock):
        fake_api.add_pages("1h", wire_page([wire_bucket(START, 3600, (7, 3))]))

        await client.fetch_usage(START, END, Granularity.HOUR)
        clock.advance(151)
        await client.fetch_usage(START, END, Granularity.HOUR)

        assert len(fake_api.requests) == 2

    @pytest.mark.asyncio
    async def test_cache_works_without_credential(self, fake_api, cache):
        fake_api.add_pages("1h", wire_page([wire_bucket(START, 3600, (1, 0))]))
        warm = OpenAIUsageClient(
            StaticSecretStore("sk"), cache=cache, transport=fake_api.transport
        )
        await warm.fetch_usage(START, END, Granularity.HOUR)

        cold = OpenAIUsageClient(
            StaticSecretStore(None), cache=cache, transport=fake_api.transport
        )
        buckets = await cold.fetch_usage(START, END, Granularity.HOUR)

        assert buckets[0].token_count == 1
        assert len(fake_api.requests) == 1

    @pytest.mark.asyncio
    async def test_page_ceiling_returns_partial_uncached(self, fake_api, cache):
        fake_api.add_pages(
            "1h",
            wire_page([wire_bucket(START, 3600, (1, 0))], next_page="cursor-1"),
            wire_page([wire_bucket(START + 3600, 3600, (1, 0))], next_page="cursor-2"),
            wire_page([wire_bucket(START + 7200, 3600, (1, 0))]),
        )
        client = OpenAIUsageClient(
            StaticSecretStore("sk"),
            cache=cache,
            transport=fake_api.transport,
            max_pages=2,
        )

        with pytest.warns(TooManyPagesWarning):
            buckets = await client.fetch_usage(START, END, Granularity.HOUR)

        assert len(buckets) == 2
        assert len(fake_api.requests) == 2
        assert len(cache) == 0


class TestErrors:
    """Tests for upstream error mapping."""

    @pytest.mark.asyncio
    async def test_missing_credential(self, fake_api, cache):
        client = OpenAIUsageClient(
            StaticSecretStore(""), cache=cache, transport=fake_api.transport
        )

        with pytest.raises(UnauthorizedError) as exc_info:
            await client.fetch_usage(START, END, Granularity.HOUR)

        assert exc_info.value.credential_missing
        assert exc_info.value.code == "missing_credential"
        assert fake_api.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_credential(self, client, fake_api, status):
        fake_api.handler = lambda request: httpx.Response(
            status, json={"error": {"message": "Incorrect API key provided"}}
        )

        with pytest.raises(UnauthorizedError) as exc_info:
            await client.fetch_usage(START, END, Granularity.HOUR)

        assert exc_info.value.code == "invalid_credential"
        assert exc_info.value.error.status_code == status
        assert not exc_info.value.credential_missing

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, fake_api, registry):
        fake_api.handler = lambda request: httpx.Response(
            429,
            json={"error": {"message": "Rate limit exceeded"}},
            headers={"Retry-After": "20"},
        )

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.fetch_usage(START, END, Granularity.HOUR)

        error = exc_info.value.error
        assert error.code == "upstream_rate_limited"
        assert error.retry_after == 20
        assert error.retryable
        assert len(fake_api.requests) == 1
        assert sample_value(
            registry,
            "tokenpulse_upstream_requests_total",
            {"granularity": "1h", "status": "upstream_rate_limited"},
        ) == 1

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, client, fake_api):
        fake_api.handler = lambda request: httpx.Response(503, text="unavailable")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.fetch_usage(START, END, Granularity.HOUR)

        assert exc_info.value.error.status_code == 503
        assert len(fake_api.requests) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, client, fake_api):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        fake_api.handler = handler

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.fetch_usage(START, END, Granularity.HOUR)

        assert exc_info.value.code == "upstream_unreachable"

    @pytest.mark.asyncio
    async def test_connection_refused(self, client, fake_api):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        fake_api.handler = handler

        with pytest.raises(UpstreamUnavailableError):
            await client.fetch_usage(START, END, Granularity.HOUR)

    @pytest.mark.asyncio
    async def test_schema_violation(self, client, fake_api, cache):
        fake_api.handler = lambda request: httpx.Response(200, json={"data": "nope"})

        with pytest.raises(MalformedResponseError) as exc_info:
            await client.fetch_usage(START, END, Granularity.HOUR)

        assert exc_info.value.code == "malformed_response"
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_inverted_bucket_window(self, client, fake_api):
        bad = wire_bucket(START, 3600, (1, 1))
        bad["end_time"] = START - 1
        fake_api.add_pages("1h", wire_page([bad]))

        with pytest.raises(MalformedResponseError):
            await client.fetch_usage(START, END, Granularity.HOUR)

    @pytest.mark.asyncio
    async def test_negative_token_count(self, client, fake_api):
        fake_api.add_pages("1h", wire_page([wire_bucket(START, 3600, (-5, 1))]))

        with pytest.raises(MalformedResponseError):
            await client.fetch_usage(START, END, Granularity.HOUR)

    @pytest.mark.asyncio
    async def test_non_json_body(self, client, fake_api):
        fake_api.handler = lambda request: httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(MalformedResponseError):
            await client.fetch_usage(START, END, Granularity.HOUR)

    @pytest.mark.asyncio
    async def test_error_is_not_cached(self, client, fake_api):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(500, json={"error": {"message": "boom"}})
            return httpx.Response(200, json=wire_page([wire_bucket(START, 3600, (4, 4))]))

        fake_api.handler = handler

        with pytest.raises(UpstreamUnavailableError):
            await client.fetch_usage(START, END, Granularity.HOUR)
        buckets = await client.fetch_usage(START, END, Granularity.HOUR)

        assert buckets[0].token_count == 8
