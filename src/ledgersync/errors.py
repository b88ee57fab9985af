"""Error taxonomy shared by the ledger client, calendar client and engine.

Per-record errors are caught by the engine and turned into ``failed`` outcome
entries. ``AuthError`` terminates the run and propagates to the caller;
``SyncCancelledError`` terminates the run, which then reports itself as
cancelled.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

import httpx

_MAX_MESSAGE_LENGTH = 200


class SyncError(RuntimeError):
    """Base error for everything raised by ledgersync."""


class TransientNetworkError(SyncError):
    """Raised when a request keeps failing at the transport level (timeouts, resets, 5xx)."""


class RateLimitedError(SyncError):
    """Raised when an upstream service keeps rate-limiting after the retry ceiling."""


class NotFoundError(SyncError):
    """Raised when a referenced object does not exist upstream."""


class RecordValidationError(SyncError):
    """Raised when a ledger record is missing fields required to schedule it."""

    def __init__(self, record_id: str, problems: Sequence[str]) -> None:
        self.record_id = record_id
        self.problems = list(problems)
        super().__init__(f"Ledger record {record_id} is not schedulable: {', '.join(problems)}")


class AuthError(SyncError):
    """Raised when a credential is unavailable or rejected."""


class ConflictError(SyncError):
    """Raised when a ledger record and its calendar event disagree.

    Not a failure: the engine answers it with the delete-then-recreate protocol.
    """

    def __init__(self, record_id: str, event_id: str, fields: Sequence[str]) -> None:
        self.record_id = record_id
        self.event_id = event_id
        self.fields = list(fields)
        super().__init__(
            f"Record {record_id} differs from event {event_id} in: {', '.join(self.fields)}"
        )


class LeaseHeldError(SyncError):
    """Raised when another owner holds a live lease on a ledger record."""

    def __init__(self, record_id: str, owner: str) -> None:
        self.record_id = record_id
        self.owner = owner
        super().__init__(f"Ledger record {record_id} is leased by {owner}")


class StaleRecordError(SyncError):
    """Raised when a ledger record was processed or relinked after the caller read it."""

    def __init__(self, record_id: str, reason: str) -> None:
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Ledger record {record_id} {reason}")


class MalformedResponseError(SyncError):
    """Raised when an upstream service returns an unparseable payload."""


class RequestError(SyncError):
    """Raised when an upstream request fails with a non-retryable status."""

    service = "upstream"

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"{self.service} request failed ({status_code}): {message}")


class CalendarRequestError(RequestError):
    """Raised when a Google Calendar API request fails."""

    service = "Google Calendar API"


class LedgerRequestError(RequestError):
    """Raised when an Airtable API request fails."""

    service = "Airtable API"


class SyncCancelledError(SyncError):
    """Raised when a run observes its cancellation token."""


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from an API error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return _squash(message)
            error_type = error_payload.get("type")
            if isinstance(error_type, str) and error_type.strip():
                return _squash(error_type)
        if isinstance(error_payload, str) and error_payload.strip():
            return _squash(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return _squash(raw_text)
    return "Request failed without an error payload"


def redact_credentials(message: str) -> str:
    """Redact bearer tokens and credential values from an error message."""
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", message)
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def describe_error(exc: BaseException) -> str:
    """Sanitized one-line description used in logs and outcome reports."""
    return f"{type(exc).__name__}: {_squash(redact_credentials(str(exc)))}"


def _squash(message: str) -> str:
    return " ".join(message.split())[:_MAX_MESSAGE_LENGTH]
