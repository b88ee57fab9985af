"""Unit tests for duplicate detection and record-to-event matching."""

from __future__ import annotations

import itertools
from datetime import UTC, date, datetime, timedelta

import pytest

from ledgersync.dedup import (
    EventIndex,
    calendar_event_key,
    find_calendar_duplicates,
    find_duplicates,
    find_ledger_duplicates,
    ledger_record_key,
)
from ledgersync.normalize import date_to_utc_midnight

pytestmark = pytest.mark.unit

START = datetime(2030, 1, 10, 14, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# find_duplicates
# ---------------------------------------------------------------------------


class TestFindDuplicates:
    def test_empty_input(self) -> None:
        assert find_duplicates([], key_fn=lambda x: x, id_fn=str) == set()

    def test_distinct_keys_are_not_flagged(self) -> None:
        items = [("a", 1), ("b", 2), ("c", 3)]
        result = find_duplicates(items, key_fn=lambda x: x[1], id_fn=lambda x: x[0])
        assert result == set()

    def test_lowest_id_survives(self) -> None:
        items = [("b", 1), ("a", 1), ("c", 1)]
        result = find_duplicates(items, key_fn=lambda x: x[1], id_fn=lambda x: x[0])
        assert result == {"b", "c"}

    def test_result_is_order_independent(self) -> None:
        items = [("a", 1), ("b", 1), ("c", 2), ("d", 2), ("e", 3)]
        expected = {"b", "d"}
        for permutation in itertools.permutations(items):
            result = find_duplicates(permutation, key_fn=lambda x: x[1], id_fn=lambda x: x[0])
            assert result == expected

    def test_canonical_item_is_never_flagged(self) -> None:
        items = [("a", 1), ("z", 1), ("m", 1)]
        for permutation in itertools.permutations(items):
            result = find_duplicates(
                permutation,
                key_fn=lambda x: x[1],
                id_fn=lambda x: x[0],
                is_canonical=lambda x: x[0] == "z",
            )
            assert result == {"a", "m"}

    def test_colliding_canonical_items_keep_lowest(self) -> None:
        items = [("b", 1), ("a", 1), ("c", 1)]
        for permutation in itertools.permutations(items):
            result = find_duplicates(
                permutation,
                key_fn=lambda x: x[1],
                id_fn=lambda x: x[0],
                is_canonical=lambda x: x[0] in {"b", "c"},
            )
            assert result == {"a", "c"}

    def test_items_without_key_are_ignored(self) -> None:
        items = [("a", None), ("b", None)]
        assert find_duplicates(items, key_fn=lambda x: x[1], id_fn=lambda x: x[0]) == set()


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestKeys:
    def test_calendar_key_normalizes_title_and_floors_minute(self, make_event) -> None:
        event = make_event(
            title="  Lot 12   MAPLE Ridge ",
            start=START + timedelta(seconds=42, microseconds=5),
        )
        assert calendar_event_key(event) == ("lot 12 maple ridge", START)

    def test_calendar_key_for_all_day_event_is_utc_midnight(self, make_event) -> None:
        midnight = date_to_utc_midnight(date(2030, 1, 10))
        event = make_event(start=midnight, all_day=True)
        assert calendar_event_key(event) == ("install", midnight)

    def test_calendar_key_without_start(self, make_event) -> None:
        assert calendar_event_key(make_event(start=None)) is None

    def test_ledger_key_includes_normalized_calendar_key(self, make_record) -> None:
        record = make_record(title="Install ", calendar_key=" Ser vice")
        assert ledger_record_key(record) == ("install", START, "service")

    def test_ledger_key_keeps_exact_start(self, make_record) -> None:
        first = make_record("rec1", start=START)
        second = make_record("rec2", start=START + timedelta(seconds=30))
        assert ledger_record_key(first) != ledger_record_key(second)


class TestSourceDuplicates:
    def test_calendar_duplicates_within_same_minute(self, make_event) -> None:
        events = [
            make_event("evt-1"),
            make_event("evt-2", title="INSTALL", start=START + timedelta(seconds=20)),
            make_event("evt-3", start=START + timedelta(minutes=1)),
        ]
        assert find_calendar_duplicates(events) == {"evt-2"}

    def test_calendar_duplicates_prefer_referenced_event(self, make_event) -> None:
        events = [make_event("evt-1"), make_event("evt-2")]
        assert find_calendar_duplicates(events, referenced_ids={"evt-2"}) == {"evt-1"}

    def test_ledger_duplicates_second_record_flagged(self, make_record) -> None:
        records = [make_record("rec2"), make_record("rec1")]
        assert find_ledger_duplicates(records) == {"rec2"}

    def test_ledger_duplicates_keep_linked_record(self, make_record) -> None:
        records = [make_record("rec1"), make_record("rec2", google_event_id="evt-9")]
        assert find_ledger_duplicates(records) == {"rec1"}

    def test_ledger_records_on_different_calendars_are_distinct(self, make_record) -> None:
        records = [make_record("rec1"), make_record("rec2", calendar_key="warranty")]
        assert find_ledger_duplicates(records) == set()


# ---------------------------------------------------------------------------
# EventIndex
# ---------------------------------------------------------------------------


class TestEventIndex:
    def test_linked_event_wins(self, make_record, make_event) -> None:
        index = EventIndex(
            [make_event("evt-near"), make_event("evt-linked", title="Other", start=None)]
        )
        record = make_record(google_event_id="evt-linked")
        match = index.match(record)
        assert match is not None
        assert match.event_id == "evt-linked"

    def test_nearest_start_within_window(self, make_record, make_event) -> None:
        index = EventIndex(
            [
                make_event("evt-far", start=START + timedelta(minutes=4)),
                make_event("evt-near", start=START - timedelta(minutes=1)),
                make_event("evt-out", start=START + timedelta(minutes=6)),
            ]
        )
        match = index.match(make_record())
        assert match is not None
        assert match.event_id == "evt-near"

    def test_no_match_outside_window(self, make_record, make_event) -> None:
        index = EventIndex([make_event(start=START + timedelta(minutes=6))])
        assert index.match(make_record()) is None

    def test_title_must_match_after_normalization(self, make_record, make_event) -> None:
        index = EventIndex([make_event(title=" install  ")])
        assert index.match(make_record(title="INSTALL")) is not None
        assert index.match(make_record(title="Inspect")) is None

    def test_claimed_events_are_not_matched_again(self, make_record, make_event) -> None:
        index = EventIndex([make_event("evt-1")])
        index.claim("evt-1")
        assert index.match(make_record()) is None

    def test_event_owned_by_other_record_is_skipped(self, make_record, make_event) -> None:
        index = EventIndex([make_event("evt-1", ledger_record_id="rec-other")])
        assert index.match(make_record("rec1")) is None
        assert index.match(make_record("rec-other")) is not None

    def test_remove_drops_event(self, make_record, make_event) -> None:
        index = EventIndex([make_event("evt-1")])
        index.remove("evt-1")
        assert "evt-1" not in index
        assert len(index) == 0
        assert index.match(make_record()) is None
