"""Shared fixtures: record/event factories and engine wiring over in-memory doubles."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from ledgersync.engine import EngineSettings, ReconciliationEngine
from ledgersync.models import CalendarEvent, LedgerRecord
from ledgersync.testing import InMemoryCalendarClient, InMemoryLedgerClient

CALENDAR_ID = "service@group.calendar.google.com"
CALENDAR_KEY = "service"
BASE_START = datetime(2030, 1, 10, 14, 0, tzinfo=UTC)


@pytest.fixture
def make_record() -> Callable[..., LedgerRecord]:
    def _make(
        record_id: str = "rec1",
        *,
        title: str = "Install",
        start: datetime | None = BASE_START,
        duration: timedelta = timedelta(hours=1),
        **overrides: Any,
    ) -> LedgerRecord:
        values: dict[str, Any] = {
            "record_id": record_id,
            "title": title,
            "start": start,
            "end": start + duration if start is not None else None,
            "description": "Replace damaged trim",
            "location": "12 Maple Ridge, Ottawa, ON, K1A 0B1",
            "calendar_key": CALENDAR_KEY,
        }
        values.update(overrides)
        return LedgerRecord(**values)

    return _make


@pytest.fixture
def make_event() -> Callable[..., CalendarEvent]:
    def _make(
        event_id: str = "evt-a",
        *,
        title: str = "Install",
        start: datetime | None = BASE_START,
        duration: timedelta = timedelta(hours=1),
        **overrides: Any,
    ) -> CalendarEvent:
        values: dict[str, Any] = {
            "event_id": event_id,
            "title": title,
            "start": start,
            "end": start + duration if start is not None else None,
            "description": "Replace damaged trim",
            "location": "12 Maple Ridge, Ottawa, ON, K1A 0B1",
        }
        values.update(overrides)
        return CalendarEvent(**values)

    return _make


@pytest.fixture
def calendar() -> InMemoryCalendarClient:
    return InMemoryCalendarClient(page_size=2)


@pytest.fixture
def ledger() -> InMemoryLedgerClient:
    return InMemoryLedgerClient()


@pytest.fixture
def fast_settings() -> EngineSettings:
    return EngineSettings(settle_delay=0, record_delay=0)


@pytest.fixture
def engine(
    ledger: InMemoryLedgerClient,
    calendar: InMemoryCalendarClient,
    fast_settings: EngineSettings,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        ledger=ledger,
        calendar=calendar,
        settings=fast_settings,
        owner="test-owner",
    )
