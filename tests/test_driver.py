"""Tests for the periodic sync driver: tick schedule, active hours and trigger gating."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from ledgersync.cancellation import CancellationToken
from ledgersync.config import CalendarTarget, ScheduleConfig
from ledgersync.driver import SyncDriver
from ledgersync.errors import AuthError, TransientNetworkError

pytestmark = pytest.mark.unit

SERVICE = CalendarTarget(
    name="Service", calendar_id="service@group.calendar.google.com", key="service"
)
WARRANTY = CalendarTarget(
    name="Warranty", calendar_id="warranty@group.calendar.google.com", key="warranty"
)


def _at(day: int, hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2030, 1, day, hour, minute, second, tzinfo=UTC)


class _StubEngine:
    """Stands in for ReconciliationEngine.run_cycle with scripted behaviour."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None, bool, bool]] = []
        self.errors: dict[str, Exception] = {}
        self.gate: asyncio.Event | None = None

    async def run_cycle(
        self, calendar_id, calendar_key=None, *, full=False, dedupe=True, cancel=None
    ):
        self.calls.append((calendar_id, calendar_key, full, dedupe))
        if self.gate is not None:
            await self.gate.wait()
        error = self.errors.get(calendar_id)
        if error is not None:
            raise error
        return []


def _driver(engine, **kwargs) -> SyncDriver:
    kwargs.setdefault("calendars", [SERVICE, WARRANTY])
    kwargs.setdefault("timezone", "UTC")
    return SyncDriver(engine=engine, **kwargs)


# ---------------------------------------------------------------------------
# Schedule arithmetic
# ---------------------------------------------------------------------------


class TestSchedule:
    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            (_at(10, 9, 3, 12), _at(10, 9, 5)),
            (_at(10, 9, 5, 0), _at(10, 9, 10)),
            (_at(10, 9, 5, 1), _at(10, 9, 10)),
            (_at(10, 9, 58), _at(10, 10, 0)),
            (_at(10, 23, 59), _at(11, 0, 0)),
        ],
    )
    def test_next_tick_is_next_boundary(self, now: datetime, expected: datetime) -> None:
        assert _driver(_StubEngine()).next_tick(now) == expected

    def test_next_tick_with_custom_interval(self) -> None:
        driver = _driver(_StubEngine(), schedule=ScheduleConfig(interval_minutes=15))
        now = datetime(2030, 1, 10, 9, 16, tzinfo=UTC)
        assert driver.next_tick(now) == datetime(2030, 1, 10, 9, 30, tzinfo=UTC)

    @pytest.mark.parametrize(
        ("hour", "active"),
        [(6, False), (7, True), (12, True), (17, True), (18, False)],
    )
    def test_active_hours_are_inclusive(self, hour: int, active: bool) -> None:
        driver = _driver(_StubEngine())
        assert driver.is_active(datetime(2030, 1, 10, hour, 30, tzinfo=UTC)) is active

    def test_active_hours_use_local_time(self) -> None:
        driver = _driver(_StubEngine(), timezone="America/Toronto")
        # 12:30 UTC is 07:30 in Toronto during standard time.
        assert driver.is_active(datetime(2030, 1, 10, 12, 30, tzinfo=UTC))
        assert not driver.is_active(datetime(2030, 1, 10, 11, 30, tzinfo=UTC))


# ---------------------------------------------------------------------------
# Triggers and ticks
# ---------------------------------------------------------------------------


class TestTrigger:
    async def test_trigger_uses_schedule_defaults(self) -> None:
        engine = _StubEngine()
        driver = _driver(engine, schedule=ScheduleConfig(full_sync=True, dedupe=False))

        assert await driver.trigger(SERVICE) == []
        await driver.trigger(SERVICE, full=False, dedupe=True)

        assert engine.calls == [
            (SERVICE.calendar_id, "service", True, False),
            (SERVICE.calendar_id, "service", False, True),
        ]

    async def test_concurrent_trigger_is_dropped(self) -> None:
        engine = _StubEngine()
        engine.gate = asyncio.Event()
        driver = _driver(engine)

        first = asyncio.create_task(driver.trigger(SERVICE))
        await asyncio.sleep(0)
        assert driver.is_running(SERVICE.calendar_id)

        assert await driver.trigger(SERVICE) is None

        engine.gate.set()
        assert await first == []
        assert not driver.is_running(SERVICE.calendar_id)
        assert len(engine.calls) == 1

    async def test_in_progress_flag_cleared_after_failure(self) -> None:
        engine = _StubEngine()
        engine.errors[SERVICE.calendar_id] = TransientNetworkError("down")
        driver = _driver(engine)

        with pytest.raises(TransientNetworkError):
            await driver.trigger(SERVICE)
        assert not driver.is_running(SERVICE.calendar_id)


class TestTick:
    async def test_tick_runs_each_calendar_in_order(self) -> None:
        engine = _StubEngine()
        results = await _driver(engine).tick()

        assert [call[0] for call in engine.calls] == [SERVICE.calendar_id, WARRANTY.calendar_id]
        assert set(results) == {"Service", "Warranty"}

    async def test_failing_calendar_does_not_stop_tick(self) -> None:
        engine = _StubEngine()
        engine.errors[SERVICE.calendar_id] = TransientNetworkError("down")

        results = await _driver(engine).tick()

        assert len(engine.calls) == 2
        assert set(results) == {"Warranty"}

    async def test_auth_error_stops_tick(self) -> None:
        engine = _StubEngine()
        engine.errors[SERVICE.calendar_id] = AuthError("revoked")

        with pytest.raises(AuthError):
            await _driver(engine).tick()
        assert len(engine.calls) == 1

    async def test_cancelled_tick_runs_nothing(self) -> None:
        engine = _StubEngine()
        token = CancellationToken()
        token.cancel("shutdown")

        assert await _driver(engine).tick(cancel=token) == {}
        assert engine.calls == []


class TestServe:
    async def test_serve_runs_immediately_then_stops_on_cancel(self) -> None:
        engine = _StubEngine()
        token = CancellationToken()
        clock_now = datetime(2030, 1, 10, 12, 0, 1, tzinfo=UTC)
        driver = _driver(engine, clock=lambda: clock_now)

        task = asyncio.create_task(driver.serve(token))
        for _ in range(5):
            await asyncio.sleep(0)
        token.cancel("shutdown")
        await asyncio.wait_for(task, timeout=1)

        assert len(engine.calls) == 2

    async def test_serve_skips_initial_run_outside_active_hours(self) -> None:
        engine = _StubEngine()
        token = CancellationToken()
        driver = _driver(engine, clock=lambda: datetime(2030, 1, 10, 3, 0, 1, tzinfo=UTC))

        task = asyncio.create_task(driver.serve(token))
        await asyncio.sleep(0)
        token.cancel()
        await asyncio.wait_for(task, timeout=1)

        assert engine.calls == []

    async def test_serve_honours_no_initial_run(self) -> None:
        engine = _StubEngine()
        token = CancellationToken()
        driver = _driver(engine, clock=lambda: datetime(2030, 1, 10, 12, 0, 1, tzinfo=UTC))

        task = asyncio.create_task(driver.serve(token, run_immediately=False))
        await asyncio.sleep(0)
        token.cancel()
        await asyncio.wait_for(task, timeout=1)

        assert engine.calls == []
