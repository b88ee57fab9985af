"""Duplicate detection within one source and record-to-event matching."""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar

from ledgersync.models import CalendarEvent, LedgerRecord
from ledgersync.normalize import floor_to_minute, normalize_key, normalize_text, to_utc

T = TypeVar("T")

DEFAULT_MATCH_WINDOW = timedelta(minutes=5)


@dataclass
class _Group:
    canonical: str | None = None
    plain: str | None = None


def _keep_lowest(current: str | None, item_id: str, duplicates: set[str]) -> str:
    if current is None or current == item_id:
        return item_id
    keep, drop = sorted((current, item_id))
    duplicates.add(drop)
    return keep


def find_duplicates(
    items: Iterable[T],
    *,
    key_fn: Callable[[T], Hashable | None],
    id_fn: Callable[[T], str],
    is_canonical: Callable[[T], bool] | None = None,
) -> set[str]:
    """Return the ids of every item that duplicates another item's key.

    Within each key the survivor is a canonical item (``is_canonical`` true)
    when one exists, and among equals the lowest id. The result therefore does
    not depend on input order. A lone canonical item is never flagged. Items
    whose key is ``None`` are ignored.
    """
    groups: dict[Hashable, _Group] = {}
    duplicates: set[str] = set()

    for item in items:
        key = key_fn(item)
        if key is None:
            continue
        item_id = id_fn(item)
        group = groups.setdefault(key, _Group())

        if is_canonical is not None and is_canonical(item):
            group.canonical = _keep_lowest(group.canonical, item_id, duplicates)
            if group.plain is not None:
                duplicates.add(group.plain)
                group.plain = None
        elif group.canonical is not None:
            duplicates.add(item_id)
        else:
            group.plain = _keep_lowest(group.plain, item_id, duplicates)

    return duplicates


def calendar_event_key(event: CalendarEvent) -> tuple[str, datetime] | None:
    """Normalized title plus UTC start rounded down to the minute."""
    if event.start is None:
        return None
    return normalize_text(event.title), floor_to_minute(event.start)


def ledger_record_key(record: LedgerRecord) -> tuple[str, datetime, str] | None:
    """Normalized title, exact start instant and normalized calendar key."""
    if record.start is None:
        return None
    return normalize_text(record.title), to_utc(record.start), normalize_key(record.calendar_key)


def find_calendar_duplicates(
    events: Iterable[CalendarEvent],
    *,
    referenced_ids: set[str] | frozenset[str] = frozenset(),
) -> set[str]:
    return find_duplicates(
        events,
        key_fn=calendar_event_key,
        id_fn=lambda event: event.event_id,
        is_canonical=lambda event: event.event_id in referenced_ids,
    )


def find_ledger_duplicates(records: Iterable[LedgerRecord]) -> set[str]:
    return find_duplicates(
        records,
        key_fn=ledger_record_key,
        id_fn=lambda record: record.record_id,
        is_canonical=lambda record: record.google_event_id is not None,
    )


class EventIndex:
    """Snapshot of a calendar indexed by event id and normalized title."""

    def __init__(self, events: Iterable[CalendarEvent] = ()) -> None:
        self._by_id: dict[str, CalendarEvent] = {}
        self._by_title: dict[str, dict[str, CalendarEvent]] = {}
        self._claimed: set[str] = set()
        for event in events:
            self.add(event)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._by_id

    def get(self, event_id: str | None) -> CalendarEvent | None:
        if event_id is None:
            return None
        return self._by_id.get(event_id)

    def add(self, event: CalendarEvent) -> None:
        self.remove(event.event_id)
        self._by_id[event.event_id] = event
        self._by_title.setdefault(normalize_text(event.title), {})[event.event_id] = event

    def remove(self, event_id: str) -> None:
        event = self._by_id.pop(event_id, None)
        self._claimed.discard(event_id)
        if event is None:
            return
        bucket = self._by_title.get(normalize_text(event.title))
        if bucket is not None:
            bucket.pop(event_id, None)

    def claim(self, event_id: str) -> None:
        """Mark an event as belonging to a record so no other record matches it."""
        self._claimed.add(event_id)

    def match(
        self,
        record: LedgerRecord,
        *,
        window: timedelta = DEFAULT_MATCH_WINDOW,
    ) -> CalendarEvent | None:
        """Find the event a record corresponds to.

        The record's linked event wins when present in the snapshot. Otherwise
        the unclaimed event with the same normalized title whose start is
        nearest to the record's start, within *window*, is returned.
        """
        linked = self.get(record.google_event_id)
        if linked is not None:
            return linked
        if record.start is None:
            return None

        target = to_utc(record.start)
        best: tuple[timedelta, str] | None = None
        for event in self._by_title.get(normalize_text(record.title), {}).values():
            if event.start is None or event.event_id in self._claimed:
                continue
            if event.ledger_record_id not in (None, record.record_id):
                continue
            distance = abs(to_utc(event.start) - target)
            if distance > window:
                continue
            candidate = (distance, event.event_id)
            if best is None or candidate < best:
                best = candidate
        return self._by_id[best[1]] if best is not None else None
