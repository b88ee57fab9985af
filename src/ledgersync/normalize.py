"""Normalization helpers shared by duplicate detection and difference detection."""

from __future__ import annotations

from datetime import UTC, date, datetime, tzinfo

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def normalize_text(value: str | None) -> str:
    """Trim, collapse internal whitespace and lower-case."""
    if not value:
        return ""
    return " ".join(value.split()).lower()


def normalize_key(value: str | None) -> str:
    """Lower-case with all whitespace removed, used for calendar keys."""
    if not value:
        return ""
    return "".join(value.split()).lower()


def to_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def date_to_utc_midnight(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def floor_to_minute(value: datetime) -> datetime:
    return to_utc(value).replace(second=0, microsecond=0)


def truncate_to_millis(value: datetime) -> datetime:
    utc = to_utc(value)
    return utc.replace(microsecond=(utc.microsecond // 1000) * 1000)


def iso_instant(value: datetime | None) -> str:
    """ISO-8601 UTC instant with millisecond precision, or "" when absent."""
    if value is None:
        return ""
    utc = truncate_to_millis(value)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def rfc3339(value: datetime) -> str:
    """RFC 3339 UTC timestamp in the form the Google Calendar API expects."""
    return to_utc(value).isoformat().replace("+00:00", "Z")


def parse_instant(value: str, *, zone: tzinfo | None = None) -> datetime:
    """Parse an ISO-8601 timestamp or bare date into an aware UTC datetime.

    Timestamps without an offset are local to *zone* (UTC when omitted). Bare
    dates always land on UTC midnight.
    """
    normalized = value.strip()
    if not normalized:
        raise ValueError("empty timestamp")
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    if len(normalized) == 10:
        return date_to_utc_midnight(date.fromisoformat(normalized))
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None and zone is not None:
        parsed = parsed.replace(tzinfo=zone)
    return to_utc(parsed)
