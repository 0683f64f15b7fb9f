"""Tests for the retrying HTTP client."""

import httpx
import pytest
import respx

from src.ingestion.errors import TransientSourceError
from src.ingestion.http_client import (
    HTTPClient,
    HTTPClientError,
    RateLimitError,
    RetryConfig,
)

FAST_RETRY = RetryConfig(max_retries=2, base_delay=0.01, jitter_factor=0.0)


class TestRetryConfig:
    """Tests for backoff calculation."""

    def test_exponential_growth(self):
        config = RetryConfig(base_delay=1.0, jitter_factor=0.0)

        assert config.calculate_backoff(0) == 1.0
        assert config.calculate_backoff(1) == 2.0
        assert config.calculate_backoff(3) == 8.0

    def test_capped_at_max_backoff(self):
        config = RetryConfig(base_delay=1.0, max_backoff_seconds=10.0, jitter_factor=0.0)
        assert config.calculate_backoff(10) == 10.0

    def test_retry_after_is_honoured_when_larger(self):
        config = RetryConfig(base_delay=1.0, jitter_factor=0.0)

        assert config.calculate_backoff(0, retry_after=30.0) == 30.0
        assert config.calculate_backoff(3, retry_after=2.0) == 8.0

    def test_jitter_stays_within_factor(self):
        config = RetryConfig(base_delay=1.0, jitter_factor=0.5)
        for _ in range(20):
            assert 2.0 <= config.calculate_backoff(1) <= 3.0

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert RetryConfig().is_retryable_status(status)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410])
    def test_non_retryable_statuses(self, status):
        assert not RetryConfig().is_retryable_status(status)


class TestHTTPClient:
    """Tests for HTTPClient requests and retries."""

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        client = HTTPClient()
        with pytest.raises(RuntimeError):
            await client.get("https://slack.com/api/auth.test")

    @pytest.mark.asyncio
    @respx.mock
    async def test_get_passes_params_and_headers(self):
        route = respx.get("https://slack.com/api/conversations.history").mock(
            return_value=httpx.Response(200, json={"ok": True})
        )

        async with HTTPClient() as client:
            response = await client.get(
                "https://slack.com/api/conversations.history",
                params={"channel": "C123"},
                headers={"Authorization": "Bearer xoxb-1"},
            )

        assert response.json() == {"ok": True}
        request = route.calls.last.request
        assert "channel=C123" in str(request.url)
        assert request.headers["Authorization"] == "Bearer xoxb-1"

    @pytest.mark.asyncio
    @respx.mock
    async def test_post_form_data(self):
        route = respx.post("https://login.example.com/token").mock(
            return_value=httpx.Response(200, json={"access_token": "t"})
        )

        async with HTTPClient() as client:
            await client.post(
                "https://login.example.com/token",
                data={"grant_type": "client_credentials"},
            )

        assert b"grant_type=client_credentials" in route.calls.last.request.content

    @pytest.mark.asyncio
    @respx.mock
    async def test_retries_503_then_succeeds(self):
        responses = iter(
            [
                httpx.Response(503, text="unavailable"),
                httpx.Response(200, json={"ok": True}),
            ]
        )
        route = respx.get("https://api.example.com/feed").mock(
            side_effect=lambda request: next(responses)
        )

        async with HTTPClient(retry_config=FAST_RETRY) as client:
            response = await client.get("https://api.example.com/feed")

        assert response.status_code == 200
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_exhausted(self):
        respx.get("https://api.example.com/feed").mock(
            return_value=httpx.Response(429, headers={"Retry-After": "0"}, text="slow down")
        )

        async with HTTPClient(retry_config=FAST_RETRY) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.get("https://api.example.com/feed")

        assert exc_info.value.status_code == 429
        assert exc_info.value.response_body == "slow down"

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_is_not_retried(self):
        route = respx.get("https://api.example.com/missing").mock(
            return_value=httpx.Response(404, text="not found")
        )

        async with HTTPClient(retry_config=FAST_RETRY) as client:
            with pytest.raises(HTTPClientError) as exc_info:
                await client.get("https://api.example.com/missing")

        assert exc_info.value.status_code == 404
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_errors_are_retried(self):
        route = respx.get("https://api.example.com/feed").mock(
            side_effect=httpx.ConnectError("refused")
        )

        async with HTTPClient(retry_config=FAST_RETRY) as client:
            with pytest.raises(HTTPClientError, match="after 3 attempts"):
                await client.get("https://api.example.com/feed")

        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_protocol_errors_become_client_errors(self):
        route = respx.get("https://api.example.com/feed").mock(
            side_effect=httpx.RemoteProtocolError("peer closed connection")
        )

        async with HTTPClient(retry_config=FAST_RETRY) as client:
            with pytest.raises(TransientSourceError, match="peer closed connection"):
                await client.get("https://api.example.com/feed")

        assert route.call_count == 1

    def test_http_errors_are_transient(self):
        assert issubclass(HTTPClientError, TransientSourceError)
        assert issubclass(RateLimitError, HTTPClientError)
