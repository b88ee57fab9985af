"""Tests for the record/event models, outcome reporting and cancellation tokens."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from ledgersync.cancellation import CancellationToken, ensure_token
from ledgersync.errors import RecordValidationError, SyncCancelledError
from ledgersync.models import (
    EventDraft,
    EventPage,
    LedgerRecord,
    ReconciliationOutcome,
    RecordStatus,
)

pytestmark = pytest.mark.unit

START = datetime(2030, 1, 10, 14, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# LedgerRecord
# ---------------------------------------------------------------------------


class TestLedgerRecord:
    def test_blank_values_are_normalized(self):
        record = LedgerRecord(
            record_id="rec1",
            title="  Install ",
            google_event_id="  ",
            attendee_email="",
        )
        assert record.title == "Install"
        assert record.google_event_id is None
        assert record.attendee_email is None

    def test_empty_record_id_is_rejected(self):
        with pytest.raises(ValueError):
            LedgerRecord(record_id="")

    def test_validation_problems(self):
        record = LedgerRecord(record_id="rec1", start=START, end=START - timedelta(minutes=1))
        assert record.validation_problems() == ["missing title", "end before start"]
        with pytest.raises(RecordValidationError, match="rec1 is not schedulable"):
            record.require_schedulable()

    def test_composed_description(self):
        record = LedgerRecord(
            record_id="rec1",
            description="Replace trim",
            annotations={"Billing": "Warranty", "Gate": ""},
        )
        assert record.composed_description() == "Billing: Warranty\n\nReplace trim"
        assert LedgerRecord(record_id="r", annotations={"A": "b"}).composed_description() == "A: b"

    def test_lease_liveness(self):
        record = LedgerRecord(
            record_id="rec1", lease_owner="me", lease_expires_at=START + timedelta(minutes=5)
        )
        assert record.lease_is_live(now=START)
        assert not record.lease_is_live(now=START + timedelta(minutes=5))
        assert not LedgerRecord(record_id="rec1", lease_owner="me").lease_is_live(now=START)


class TestEventDraft:
    def test_from_record(self):
        record = LedgerRecord(
            record_id="rec1",
            title="Install",
            start=START,
            end=START + timedelta(hours=1),
            location="12 Maple Ridge",
            attendee_email="crew@example.com",
        )
        draft = EventDraft.from_record(record, timezone="America/Toronto")
        assert draft.timezone == "America/Toronto"
        assert draft.attendees == ["crew@example.com"]
        assert draft.ledger_record_id == "rec1"

    def test_from_unschedulable_record_raises(self):
        with pytest.raises(RecordValidationError):
            EventDraft.from_record(LedgerRecord(record_id="rec1", title="Install"))


def test_blank_page_token_means_last_page():
    assert EventPage(next_page_token="  ").next_page_token is None


# ---------------------------------------------------------------------------
# ReconciliationOutcome
# ---------------------------------------------------------------------------


class TestOutcome:
    def test_record_routes_status_to_list(self):
        outcome = ReconciliationOutcome(mode="incremental", calendar_id="cal")
        for record_id, status in [
            ("a", RecordStatus.created),
            ("b", RecordStatus.updated),
            ("c", RecordStatus.unchanged),
            ("d", RecordStatus.failed),
            ("e", RecordStatus.skipped),
        ]:
            outcome.record(record_id, status)
        assert (outcome.added, outcome.updated, outcome.unchanged) == (["a"], ["b"], ["c"])
        assert (outcome.failed, outcome.skipped) == (["d"], ["e"])
        assert outcome.mutated

    def test_summary(self):
        outcome = ReconciliationOutcome(mode="full", calendar_id="cal")
        assert outcome.summary() == "No changes"
        assert not outcome.mutated
        outcome.unchanged.extend(["a", "b"])
        outcome.reset.append("c")
        outcome.cancelled = True
        assert outcome.summary() == "2 unchanged, 1 reset, cancelled"

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(ValueError):
            ReconciliationOutcome(mode="partial", calendar_id="cal")


# ---------------------------------------------------------------------------
# CancellationToken
# ---------------------------------------------------------------------------


class TestCancellationToken:
    def test_cancel_is_one_shot(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"
        with pytest.raises(SyncCancelledError, match="first"):
            token.raise_if_cancelled()

    async def test_sleep_returns_early_when_cancelled(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        assert await asyncio.wait_for(token.sleep(30), timeout=5) is True

    async def test_sleep_runs_to_completion(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is False
        assert await token.sleep(0) is False

    def test_ensure_token(self):
        token = CancellationToken()
        assert ensure_token(token) is token
        assert not ensure_token(None).cancelled
