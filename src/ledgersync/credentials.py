"""Bearer credential providers injected into the ledger and calendar clients."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from ledgersync.errors import AuthError, redact_credentials, safe_error_message

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"


class CredentialProvider(abc.ABC):
    """Supplies a currently-valid bearer token.

    ``None`` means no credential is available; callers treat that as fatal.
    """

    @abc.abstractmethod
    async def current_token(self, *, force_refresh: bool = False) -> str | None: ...


class StaticTokenProvider(CredentialProvider):
    """Fixed token, e.g. an Airtable personal access token or a pre-minted Google token."""

    def __init__(self, token: str | None) -> None:
        normalized = token.strip() if token else ""
        self._token = normalized or None

    async def current_token(self, *, force_refresh: bool = False) -> str | None:
        return self._token


@dataclass(frozen=True)
class GoogleOAuthCredentials:
    client_id: str
    client_secret: str
    refresh_token: str

    def __post_init__(self) -> None:
        missing = sorted(
            name
            for name in ("client_id", "client_secret", "refresh_token")
            if not getattr(self, name).strip()
        )
        if missing:
            raise ValueError(f"Google OAuth credentials missing field(s): {', '.join(missing)}")


@dataclass(frozen=True)
class _CachedToken:
    value: str
    refresh_after: datetime

    def usable(self) -> bool:
        return datetime.now(UTC) < self.refresh_after


class GoogleOAuthTokenProvider(CredentialProvider):
    """Exchanges a refresh token for access tokens and caches each until shortly before expiry.

    Concurrent callers share one exchange through a lock.
    """

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
        *,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._credentials = credentials
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._token_url = token_url
        self._cached: _CachedToken | None = None
        self._lock = asyncio.Lock()

    async def current_token(self, *, force_refresh: bool = False) -> str | None:
        cached = self._cached
        if not force_refresh and cached is not None and cached.usable():
            return cached.value
        async with self._lock:
            # Another caller may have refreshed while we waited.
            if self._cached is not cached and self._cached is not None:
                return self._cached.value
            self._cached = await self._exchange()
            return self._cached.value

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _exchange(self) -> _CachedToken:
        form = {
            "grant_type": "refresh_token",
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "refresh_token": self._credentials.refresh_token,
        }
        try:
            response = await self._http_client.post(
                self._token_url, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise AuthError(redact_credentials(f"Google token exchange failed: {exc}")) from exc

        if not response.is_success:
            detail = redact_credentials(safe_error_message(response))
            raise AuthError(f"Google token exchange rejected ({response.status_code}): {detail}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Google token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise AuthError("Google token endpoint returned an unexpected payload")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError("Google token response has no access_token")

        # Treat the token as expired a minute early, but keep it at least 30s.
        ttl = max(_expires_in_seconds(payload.get("expires_in")) - 60, 30)
        logger.debug("Obtained Google access token valid for %ds", ttl)
        return _CachedToken(
            value=access_token.strip(),
            refresh_after=datetime.now(UTC) + timedelta(seconds=ttl),
        )


def _expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return 3600
    return int(value)
