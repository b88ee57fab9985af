"""In-memory ledger and calendar clients for exercising the engine without a network.

Both doubles record every mutation in ``writes`` so tests can assert on exactly
what the engine changed, and both accept one-shot failures through
``fail_next``.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from ledgersync.calendar import CalendarClient
from ledgersync.cancellation import CancellationToken, ensure_token
from ledgersync.errors import LeaseHeldError, NotFoundError
from ledgersync.ledger import (
    UNSET,
    LedgerClient,
    _Unset,
    ensure_not_stale,
    matches_calendar_key,
)
from ledgersync.models import (
    CalendarEvent,
    EventDraft,
    EventPage,
    EventPatch,
    Lease,
    LedgerRecord,
)
from ledgersync.normalize import to_utc


class InMemoryCalendarClient(CalendarClient):
    """Calendar double holding events per calendar id, paginated like the real API."""

    def __init__(self, *, page_size: int = 50) -> None:
        self.page_size = page_size
        self.events: dict[str, dict[str, CalendarEvent]] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.fail_next: dict[str, Exception] = {}
        self.list_calls = 0
        self._ids = itertools.count(1)

    def seed(self, calendar_id: str, *events: CalendarEvent) -> None:
        bucket = self.events.setdefault(calendar_id, {})
        for event in events:
            bucket[event.event_id] = event

    def all_events(self, calendar_id: str) -> list[CalendarEvent]:
        return sorted(
            self.events.get(calendar_id, {}).values(),
            key=lambda event: (event.start or datetime.min.replace(tzinfo=UTC), event.event_id),
        )

    def _maybe_fail(self, operation: str, cancel: CancellationToken | None) -> None:
        ensure_token(cancel).raise_if_cancelled()
        error = self.fail_next.pop(operation, None)
        if error is not None:
            raise error

    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime,
        time_max: datetime | None = None,
        page_token: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> EventPage:
        self._maybe_fail("list_events", cancel)
        self.list_calls += 1
        matching = [
            event
            for event in self.all_events(calendar_id)
            if _overlaps(event, to_utc(time_min), to_utc(time_max) if time_max else None)
        ]
        offset = int(page_token) if page_token else 0
        page = matching[offset : offset + self.page_size]
        next_offset = offset + self.page_size
        return EventPage(
            items=page,
            next_page_token=str(next_offset) if next_offset < len(matching) else None,
        )

    async def get_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent | None:
        self._maybe_fail("get_event", cancel)
        return self.events.get(calendar_id, {}).get(event_id)

    async def create_event(
        self,
        calendar_id: str,
        draft: EventDraft,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent:
        self._maybe_fail("create_event", cancel)
        event_id = f"evt-{next(self._ids)}"
        event = CalendarEvent(
            event_id=event_id,
            title=draft.title,
            start=to_utc(draft.start),
            end=to_utc(draft.end),
            description=draft.description,
            location=draft.location,
            attendees=list(draft.attendees),
            ledger_record_id=draft.ledger_record_id,
            html_link=f"https://calendar.example/{event_id}",
        )
        self.seed(calendar_id, event)
        self.writes.append(("create", calendar_id, event_id))
        return event

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent:
        self._maybe_fail("update_event", cancel)
        current = self.events.get(calendar_id, {}).get(event_id)
        if current is None:
            raise NotFoundError(f"Event {event_id} not found")
        changes = patch.model_dump(exclude_none=True, exclude={"timezone"})
        if "start" in changes:
            changes["start"] = to_utc(changes["start"])
        if "end" in changes:
            changes["end"] = to_utc(changes["end"])
        updated = current.model_copy(update=changes)
        self.seed(calendar_id, updated)
        self.writes.append(("update", calendar_id, event_id))
        return updated

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._maybe_fail("delete_event", cancel)
        self.events.get(calendar_id, {}).pop(event_id, None)
        self.writes.append(("delete", calendar_id, event_id))


def _overlaps(event: CalendarEvent, time_min: datetime, time_max: datetime | None) -> bool:
    if event.start is None:
        return False
    end = to_utc(event.end or event.start)
    if end < time_min:
        return False
    return time_max is None or to_utc(event.start) < time_max


class InMemoryLedgerClient(LedgerClient):
    """Ledger double with lease semantics matching the Airtable client."""

    def __init__(
        self,
        records: Iterable[LedgerRecord] = (),
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.records: dict[str, LedgerRecord] = {record.record_id: record for record in records}
        self.writes: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_next: dict[str, Exception] = {}
        self._clock = clock or (lambda: datetime.now(UTC))

    def _maybe_fail(self, operation: str, cancel: CancellationToken | None) -> None:
        ensure_token(cancel).raise_if_cancelled()
        error = self.fail_next.pop(operation, None)
        if error is not None:
            raise error

    def _require(self, record_id: str) -> LedgerRecord:
        record = self.records.get(record_id)
        if record is None:
            raise NotFoundError(f"Ledger record {record_id} not found")
        return record

    def data_writes(self) -> list[tuple[str, str, dict[str, Any]]]:
        """Writes other than lease acquisition and release."""
        return [write for write in self.writes if write[0] == "update"]

    async def fetch_unprocessed(
        self,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[LedgerRecord]:
        self._maybe_fail("fetch_unprocessed", cancel)
        return [
            record
            for record in self.records.values()
            if not record.processed and matches_calendar_key(record, calendar_key)
        ]

    async def fetch_all(
        self,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[LedgerRecord]:
        self._maybe_fail("fetch_all", cancel)
        return [
            record
            for record in self.records.values()
            if matches_calendar_key(record, calendar_key)
        ]

    async def get_record(
        self,
        record_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> LedgerRecord | None:
        self._maybe_fail("get_record", cancel)
        return self.records.get(record_id)

    async def update_record(
        self,
        record_id: str,
        *,
        google_event_id: str | None | _Unset = UNSET,
        processed: bool | None = None,
        calendar_link: str | None | _Unset = UNSET,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._maybe_fail("update_record", cancel)
        record = self._require(record_id)
        changes: dict[str, Any] = {}
        if google_event_id is not UNSET:
            changes["google_event_id"] = google_event_id
        if processed is not None:
            changes["processed"] = processed
        self.records[record_id] = record.model_copy(update=changes)
        logged = dict(changes)
        if calendar_link is not UNSET:
            logged["calendar_link"] = calendar_link
        self.writes.append(("update", record_id, logged))

    async def lock(
        self,
        record_id: str,
        *,
        owner: str,
        ttl: timedelta,
        expected: LedgerRecord | None = None,
        cancel: CancellationToken | None = None,
    ) -> Lease:
        self._maybe_fail("lock", cancel)
        record = self._require(record_id)
        now = self._clock()
        if record.lease_is_live(now=now) and record.lease_owner != owner:
            raise LeaseHeldError(record_id, record.lease_owner or "unknown")
        ensure_not_stale(record, expected)
        lease = Lease(record_id=record_id, owner=owner, acquired_at=now, expires_at=now + ttl)
        self.records[record_id] = record.model_copy(
            update={"processed": True, "lease_owner": owner, "lease_expires_at": lease.expires_at}
        )
        self.writes.append(("lock", record_id, {"owner": owner}))
        return lease

    async def unlock(
        self,
        record_id: str,
        lease: Lease,
        *,
        clear_processed: bool = False,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._maybe_fail("unlock", cancel)
        record = self._require(record_id)
        if record.lease_owner not in (None, lease.owner):
            return
        changes: dict[str, Any] = {"lease_owner": None, "lease_expires_at": None}
        if clear_processed:
            changes["processed"] = False
        self.records[record_id] = record.model_copy(update=changes)
        self.writes.append(("unlock", record_id, {"clear_processed": clear_processed}))
