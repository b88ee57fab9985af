"""Decides when the reconciliation engine runs: periodic ticks and manual triggers."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from ledgersync.cancellation import CancellationToken, ensure_token
from ledgersync.config import CalendarTarget, ScheduleConfig
from ledgersync.engine import ReconciliationEngine
from ledgersync.errors import AuthError, SyncError, describe_error
from ledgersync.logging import calendar_context
from ledgersync.models import ReconciliationOutcome

logger = logging.getLogger(__name__)


class SyncDriver:
    """Runs reconciliation cycles for a set of calendars.

    At most one cycle per calendar is in flight; a trigger arriving while one
    is running is dropped rather than queued.
    """

    def __init__(
        self,
        *,
        engine: ReconciliationEngine,
        calendars: Sequence[CalendarTarget],
        schedule: ScheduleConfig | None = None,
        timezone: str = "America/Toronto",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._calendars = list(calendars)
        self._schedule = schedule or ScheduleConfig()
        self._zone = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._in_progress: set[str] = set()

    @property
    def calendars(self) -> list[CalendarTarget]:
        return list(self._calendars)

    def is_running(self, calendar_id: str) -> bool:
        return calendar_id in self._in_progress

    def is_active(self, now: datetime | None = None) -> bool:
        """True when the local hour is inside the configured active window."""
        local = (now or self._clock()).astimezone(self._zone)
        return self._schedule.active_start_hour <= local.hour <= self._schedule.active_end_hour

    def next_tick(self, now: datetime | None = None) -> datetime:
        """The first interval boundary strictly after *now*, counted from the top of the hour."""
        current = now or self._clock()
        interval = self._schedule.interval_minutes
        hour = current.replace(minute=0, second=0, microsecond=0)
        boundary = hour + timedelta(minutes=-(-current.minute // interval) * interval)
        if boundary <= current:
            boundary += timedelta(minutes=interval)
        return boundary

    async def trigger(
        self,
        target: CalendarTarget,
        *,
        full: bool | None = None,
        dedupe: bool | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[ReconciliationOutcome] | None:
        """Run one cycle for *target*; returns ``None`` if one is already running."""
        if target.calendar_id in self._in_progress:
            logger.info("Sync already in progress for calendar %s; ignoring trigger", target.name)
            return None

        self._in_progress.add(target.calendar_id)
        try:
            with calendar_context(target.name):
                return await self._engine.run_cycle(
                    target.calendar_id,
                    target.key,
                    full=self._schedule.full_sync if full is None else full,
                    dedupe=self._schedule.dedupe if dedupe is None else dedupe,
                    cancel=cancel,
                )
        finally:
            self._in_progress.discard(target.calendar_id)

    async def tick(
        self,
        *,
        cancel: CancellationToken | None = None,
    ) -> dict[str, list[ReconciliationOutcome]]:
        """Run one cycle per calendar, sequentially.

        A failing calendar is logged and the remaining calendars still run;
        credential failures stop the tick since every calendar would fail alike.
        """
        token = ensure_token(cancel)
        results: dict[str, list[ReconciliationOutcome]] = {}
        for target in self._calendars:
            if token.cancelled:
                break
            logger.info("Processing calendar %s", target.name)
            try:
                outcomes = await self.trigger(target, cancel=token)
            except AuthError:
                raise
            except SyncError as exc:
                logger.error("Sync of calendar %s failed: %s", target.name, describe_error(exc))
                continue
            if outcomes is not None:
                results[target.name] = outcomes
        return results

    async def serve(
        self,
        cancel: CancellationToken,
        *,
        run_immediately: bool = True,
    ) -> None:
        """Tick on every interval boundary inside active hours until *cancel* fires."""
        token = ensure_token(cancel)
        if run_immediately and self.is_active():
            await self.tick(cancel=token)

        while not token.cancelled:
            now = self._clock()
            wake_at = self.next_tick(now)
            logger.debug("Next sync tick at %s", wake_at.isoformat())
            if await token.sleep((wake_at - now).total_seconds()):
                break
            if not self.is_active():
                logger.debug("Outside active hours; skipping tick")
                continue
            await self.tick(cancel=token)
        logger.info("Sync driver stopped: %s", token.reason or "cancelled")
