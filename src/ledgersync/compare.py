"""Cross-source difference detection between a ledger record and a calendar event."""

from __future__ import annotations

from ledgersync.errors import ConflictError
from ledgersync.models import CalendarEvent, LedgerRecord
from ledgersync.normalize import iso_instant, normalize_text


def diff_fields(
    record: LedgerRecord,
    event: CalendarEvent,
    *,
    track_description: bool = True,
) -> list[str]:
    """Names of the fields on which *record* and *event* disagree, in a stable order."""
    differing: list[str] = []
    if normalize_text(record.title) != normalize_text(event.title):
        differing.append("title")
    if normalize_text(record.location) != normalize_text(event.location):
        differing.append("location")
    if track_description and normalize_text(record.composed_description()) != normalize_text(
        event.description
    ):
        differing.append("description")
    if iso_instant(record.start) != iso_instant(event.start):
        differing.append("start")
    if iso_instant(record.end) != iso_instant(event.end):
        differing.append("end")
    if record.attendee_email:
        wanted = record.attendee_email.strip().lower()
        if wanted not in {email.strip().lower() for email in event.attendees}:
            differing.append("attendees")
    return differing


def is_different(
    record: LedgerRecord,
    event: CalendarEvent,
    *,
    track_description: bool = True,
) -> bool:
    return bool(diff_fields(record, event, track_description=track_description))


def ensure_in_sync(
    record: LedgerRecord,
    event: CalendarEvent,
    *,
    track_description: bool = True,
) -> None:
    """Raise :class:`ConflictError` naming the differing fields, if any."""
    differing = diff_fields(record, event, track_description=track_description)
    if differing:
        raise ConflictError(record.record_id, event.event_id, differing)
