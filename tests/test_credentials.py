"""Tests for bearer credential providers, error redaction and rate-limit detection."""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from ledgersync.credentials import (
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleOAuthCredentials,
    GoogleOAuthTokenProvider,
    StaticTokenProvider,
)
from ledgersync.errors import AuthError, describe_error, redact_credentials
from ledgersync.http import RetryPolicy, is_rate_limited, retry_delay

pytestmark = pytest.mark.unit

CREDENTIALS = GoogleOAuthCredentials(
    client_id="client-id",
    client_secret="super-secret",
    refresh_token="refresh-me",
)


def _provider(handler) -> GoogleOAuthTokenProvider:
    return GoogleOAuthTokenProvider(
        CREDENTIALS,
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# ---------------------------------------------------------------------------
# Static tokens
# ---------------------------------------------------------------------------


async def test_static_token_is_returned_as_is() -> None:
    provider = StaticTokenProvider(" pat-token ")
    assert await provider.current_token() == "pat-token"
    assert await provider.current_token(force_refresh=True) == "pat-token"


@pytest.mark.parametrize("token", [None, "", "   "])
async def test_blank_static_token_means_no_credential(token: str | None) -> None:
    assert await StaticTokenProvider(token).current_token() is None


def test_oauth_credentials_require_all_fields() -> None:
    with pytest.raises(ValueError, match="client_secret, refresh_token"):
        GoogleOAuthCredentials(client_id="id", client_secret=" ", refresh_token="")


# ---------------------------------------------------------------------------
# OAuth refresh
# ---------------------------------------------------------------------------


class TestGoogleOAuthTokenProvider:
    async def test_refresh_posts_refresh_token_grant(self) -> None:
        forms: list[dict[str, list[str]]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GOOGLE_OAUTH_TOKEN_URL
            forms.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": "access-1", "expires_in": 3600})

        token = await _provider(handler).current_token()

        assert token == "access-1"
        assert forms[0]["grant_type"] == ["refresh_token"]
        assert forms[0]["refresh_token"] == ["refresh-me"]
        assert forms[0]["client_id"] == ["client-id"]

    async def test_token_is_cached_until_forced(self) -> None:
        issued = iter(["access-1", "access-2"])
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"access_token": next(issued), "expires_in": 3600})

        provider = _provider(handler)
        assert await provider.current_token() == "access-1"
        assert await provider.current_token() == "access-1"
        assert calls == 1
        assert await provider.current_token(force_refresh=True) == "access-2"
        assert calls == 2

    async def test_short_lived_token_is_still_cached_briefly(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"access_token": "access", "expires_in": 10})

        provider = _provider(handler)
        await provider.current_token()
        await provider.current_token()
        assert calls == 1

    async def test_refresh_failure_raises_redacted_auth_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": {"message": "invalid_grant refresh_token=refresh-me"}},
            )

        with pytest.raises(AuthError) as exc_info:
            await _provider(handler).current_token()
        message = str(exc_info.value)
        assert "400" in message
        assert "refresh-me" not in message

    async def test_missing_access_token_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token_type": "Bearer"})

        with pytest.raises(AuthError, match="access_token"):
            await _provider(handler).current_token()

    async def test_transport_failure_raises_auth_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(AuthError):
            await _provider(handler).current_token()

    async def test_shutdown_leaves_injected_client_open(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200))
        )
        provider = GoogleOAuthTokenProvider(CREDENTIALS, client)
        await provider.shutdown()
        assert not client.is_closed
        await client.aclose()


# ---------------------------------------------------------------------------
# Redaction and error descriptions
# ---------------------------------------------------------------------------


class TestRedaction:
    @pytest.mark.parametrize(
        "message",
        [
            "Authorization: Bearer ya29.abc-DEF_123",
            "client_secret=hunter2 in form",
            '{"refresh_token": "hunter2"}',
            "access_token = hunter2; retry",
        ],
    )
    def test_secrets_are_removed(self, message: str) -> None:
        redacted = redact_credentials(message)
        assert "hunter2" not in redacted
        assert "ya29" not in redacted
        assert "REDACTED" in redacted

    def test_describe_error_is_single_line_and_bounded(self) -> None:
        description = describe_error(RuntimeError("line one\nline two " + "x" * 500))
        assert description.startswith("RuntimeError: line one line two")
        assert "\n" not in description
        assert len(description) <= len("RuntimeError: ") + 200


# ---------------------------------------------------------------------------
# Rate-limit detection
# ---------------------------------------------------------------------------


class TestRateLimit:
    def test_429_is_rate_limited(self) -> None:
        assert is_rate_limited(httpx.Response(429))

    @pytest.mark.parametrize("reason", ["rateLimitExceeded", "userRateLimitExceeded"])
    def test_403_with_quota_reason(self, reason: str) -> None:
        response = httpx.Response(403, json={"error": {"errors": [{"reason": reason}]}})
        assert is_rate_limited(response)

    def test_403_with_quota_message(self) -> None:
        response = httpx.Response(403, json={"error": {"message": "Calendar usage Quota Exceeded"}})
        assert is_rate_limited(response)

    def test_plain_403_is_not_rate_limited(self) -> None:
        response = httpx.Response(403, json={"error": {"errors": [{"reason": "forbidden"}]}})
        assert not is_rate_limited(response)
        assert not is_rate_limited(httpx.Response(403, text="<html>nope</html>"))

    def test_retry_after_header_wins_over_backoff(self) -> None:
        policy = RetryPolicy(backoff_seconds=10)
        assert retry_delay(httpx.Response(429, headers={"Retry-After": "3"}), policy) == 3.0
        assert retry_delay(httpx.Response(429, headers={"Retry-After": "soon"}), policy) == 10.0
        assert retry_delay(None, policy) == 10.0

    def test_policy_rejects_negative_values(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(backoff_seconds=-1)
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
