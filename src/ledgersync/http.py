"""Authenticated request helper with rate-limit and transient-failure retries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ledgersync.cancellation import CancellationToken, ensure_token
from ledgersync.credentials import CredentialProvider
from ledgersync.errors import (
    AuthError,
    RateLimitedError,
    TransientNetworkError,
    redact_credentials,
    safe_error_message,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})
GOOGLE_RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
)


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-backoff retry ceiling applied to rate limits and transient failures."""

    backoff_seconds: float = 10.0
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be non-negative")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")


def is_rate_limited(response: httpx.Response) -> bool:
    """True for 429, or a 403 whose payload carries a Google quota reason."""
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return False
    details = error.get("errors")
    if isinstance(details, list):
        for detail in details:
            if isinstance(detail, dict) and detail.get("reason") in GOOGLE_RATE_LIMIT_REASONS:
                return True
    message = error.get("message")
    return isinstance(message, str) and "quota exceeded" in message.lower()


def retry_delay(response: httpx.Response | None, policy: RetryPolicy) -> float:
    if response is not None:
        header = response.headers.get("Retry-After")
        if header is not None:
            try:
                return max(float(header), 0.0)
            except ValueError:
                pass
    return policy.backoff_seconds


async def send_with_retry(
    http_client: httpx.AsyncClient,
    credentials: CredentialProvider,
    *,
    service: str,
    method: str,
    url: str,
    params: dict[str, Any] | list[tuple[str, Any]] | None = None,
    json_body: dict[str, Any] | None = None,
    policy: RetryPolicy | None = None,
    cancel: CancellationToken | None = None,
) -> httpx.Response:
    """Send one authenticated request, retrying what is safe to retry.

    A 401 forces a single credential refresh. Rate limits, 5xx responses and
    transport failures are retried up to ``policy.max_retries`` times. Any other
    response is returned to the caller untouched.
    """
    policy = policy or RetryPolicy()
    token = ensure_token(cancel)
    refreshed = False
    retries = 0

    while True:
        token.raise_if_cancelled()
        access_token = await credentials.current_token(force_refresh=refreshed)
        if access_token is None:
            raise AuthError(f"No credential available for {service}")

        response: httpx.Response | None
        try:
            response = await http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TransportError as exc:
            if retries >= policy.max_retries:
                raise TransientNetworkError(
                    redact_credentials(f"{service} request failed: {exc}")
                ) from exc
            response = None
            reason = type(exc).__name__
        else:
            if response.status_code == 401:
                if refreshed:
                    raise AuthError(
                        f"{service} rejected the credential: {safe_error_message(response)}"
                    )
                refreshed = True
                logger.info("%s returned 401, refreshing credential", service)
                continue
            if is_rate_limited(response):
                if retries >= policy.max_retries:
                    raise RateLimitedError(
                        f"{service} still rate-limited after {retries} retries: "
                        f"{safe_error_message(response)}"
                    )
                reason = f"status={response.status_code}"
            elif response.status_code in TRANSIENT_STATUS_CODES:
                if retries >= policy.max_retries:
                    raise TransientNetworkError(
                        f"{service} request failed ({response.status_code}) after "
                        f"{retries} retries: {safe_error_message(response)}"
                    )
                reason = f"status={response.status_code}"
            else:
                return response

        backoff = retry_delay(response, policy)
        retries += 1
        logger.warning(
            "%s request %s %s failed (%s), retrying in %.1fs (attempt %d/%d)",
            service,
            method,
            url,
            reason,
            backoff,
            retries,
            policy.max_retries,
        )
        if await token.sleep(backoff):
            token.raise_if_cancelled()
