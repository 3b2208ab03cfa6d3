"""
tests/test_feed_fetcher.py

HttpFeedFetcher のテスト（httpx.MockTransport で上流APIを置き換え）

参照: https://www.python-httpx.org/advanced/transports/#mock-transports
"""
import httpx
import pytest

from app.services.errors import FeedParseError, RateLimitedError, UpstreamHTTPError
from app.services.feed_fetcher import HttpFeedFetcher, VELIB_REFERENCE_URL


def make_fetcher(handler) -> HttpFeedFetcher:
    return HttpFeedFetcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestFetchPage:
    """1ページ取得のテスト"""

    async def test_returns_results(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"total_count": 1, "results": [{"stationcode": "16107"}]})

        async with make_fetcher(handler) as fetcher:
            records = await fetcher.fetch_page(VELIB_REFERENCE_URL, offset=200, limit=100)

        assert records == [{"stationcode": "16107"}]
        assert seen["params"] == {"limit": "100", "offset": "200"}

    async def test_rate_limited_with_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"})

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(RateLimitedError) as exc_info:
                await fetcher.fetch_page(VELIB_REFERENCE_URL, 0, 100)

        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.retryable

    async def test_rate_limited_with_http_date_ignored(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(RateLimitedError) as exc_info:
                await fetcher.fetch_page(VELIB_REFERENCE_URL, 0, 100)

        assert exc_info.value.retry_after is None

    async def test_server_error_is_retryable(self):
        def handler(request):
            return httpx.Response(503, text="maintenance")

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(UpstreamHTTPError) as exc_info:
                await fetcher.fetch_page(VELIB_REFERENCE_URL, 0, 100)

        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable

    async def test_client_error_is_terminal(self):
        def handler(request):
            return httpx.Response(404, text="unknown dataset")

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(UpstreamHTTPError) as exc_info:
                await fetcher.fetch_page(VELIB_REFERENCE_URL, 0, 100)

        assert exc_info.value.status_code == 404
        assert not exc_info.value.retryable

    async def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(UpstreamHTTPError) as exc_info:
                await fetcher.fetch_page(VELIB_REFERENCE_URL, 0, 100)

        assert exc_info.value.status_code is None
        assert exc_info.value.retryable

    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(FeedParseError):
                await fetcher.fetch_page(VELIB_REFERENCE_URL, 0, 100)

    @pytest.mark.parametrize("payload", [
        {"total_count": 0},
        {"results": "nope"},
        [1, 2, 3],
    ])
    async def test_missing_results_array(self, payload):
        def handler(request):
            return httpx.Response(200, json=payload)

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(FeedParseError):
                await fetcher.fetch_page(VELIB_REFERENCE_URL, 0, 100)
