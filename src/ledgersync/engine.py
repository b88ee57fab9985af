"""Reconciliation engine: keeps a calendar in step with the ledger records keyed to it.

Each ledger record moves through ``pending -> locked -> {created, updated,
unchanged, failed} -> unlocked``. The lease is always released, after a short
settling delay, even when the record fails or the run is cancelled. A changed
event is replaced (deleted, then recreated) rather than patched in place.
"""

from __future__ import annotations

import logging
import socket
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta

from opentelemetry import trace

from ledgersync.calendar import CalendarClient, fetch_all_events
from ledgersync.cancellation import CancellationToken, ensure_token
from ledgersync.compare import ensure_in_sync, is_different
from ledgersync.dedup import (
    DEFAULT_MATCH_WINDOW,
    EventIndex,
    find_calendar_duplicates,
    find_ledger_duplicates,
)
from ledgersync.errors import (
    AuthError,
    ConflictError,
    LeaseHeldError,
    NotFoundError,
    RecordValidationError,
    StaleRecordError,
    SyncCancelledError,
    SyncError,
    describe_error,
)
from ledgersync.ledger import LedgerClient
from ledgersync.logging import calendar_context
from ledgersync.models import (
    CalendarEvent,
    EventDraft,
    Lease,
    LedgerRecord,
    ReconciliationMode,
    ReconciliationOutcome,
    RecordStatus,
)
from ledgersync.normalize import EPOCH, to_utc

logger = logging.getLogger(__name__)

_FATAL_ERRORS = (AuthError, SyncCancelledError)


@dataclass(frozen=True)
class EngineSettings:
    """Timing and comparison knobs for the reconciliation engine."""

    settle_delay: float = 6.0
    record_delay: float = 12.0
    match_window: timedelta = DEFAULT_MATCH_WINDOW
    timezone: str = "America/Toronto"
    track_description: bool = True
    lease_ttl: timedelta = timedelta(minutes=10)

    def __post_init__(self) -> None:
        if self.settle_delay < 0 or self.record_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.match_window < timedelta(0):
            raise ValueError("match_window must be non-negative")
        if self.lease_ttl <= timedelta(0):
            raise ValueError("lease_ttl must be positive")


def default_owner() -> str:
    """Lease owner token unique to this process and engine instance."""
    return f"{socket.gethostname()}:{uuid.uuid4().hex}"


@dataclass
class _Run:
    """Mutable state threaded through one engine run."""

    calendar_id: str
    outcome: ReconciliationOutcome
    cancel: CancellationToken
    index: EventIndex = field(default_factory=EventIndex)


class ReconciliationEngine:
    """Computes and applies the corrective plan for one calendar at a time."""

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        calendar: CalendarClient,
        settings: EngineSettings | None = None,
        owner: str | None = None,
    ) -> None:
        self._ledger = ledger
        self._calendar = calendar
        self._settings = settings or EngineSettings()
        self._owner = owner or default_owner()
        self._tracer = trace.get_tracer("ledgersync")

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Incremental mode
    # ------------------------------------------------------------------

    async def run(
        self,
        calendar_id: str,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> ReconciliationOutcome:
        """Sync every unprocessed ledger record for *calendar_key* onto *calendar_id*.

        Errors fetching the ledger or the calendar abort the run before any
        mutation. Errors on a single record mark it failed and the run moves on.
        """
        run = self._start("incremental", calendar_id, cancel)
        with (
            calendar_context(calendar_id),
            self._tracer.start_as_current_span("ledgersync.reconcile.incremental") as span,
        ):
            span.set_attribute("ledgersync.calendar_id", calendar_id)
            try:
                run.cancel.raise_if_cancelled()
                records = await self._ledger.fetch_unprocessed(calendar_key, cancel=run.cancel)
                pending = await self._set_aside(run, records)
                if not pending:
                    logger.info("No unprocessed ledger records for calendar %s", calendar_id)
                    return self._finish(run, span)

                starts = [to_utc(record.start) for record in pending if record.start]
                time_min = min(starts) - self._settings.match_window if starts else EPOCH
                run.index = EventIndex(
                    await fetch_all_events(
                        self._calendar, calendar_id, time_min=time_min, cancel=run.cancel
                    )
                )
                logger.info(
                    "Reconciling %d ledger record(s) against %d calendar event(s)",
                    len(pending),
                    len(run.index),
                )

                for position, record in enumerate(pending):
                    if position and await run.cancel.sleep(self._settings.record_delay):
                        run.cancel.raise_if_cancelled()
                    await self._sync_one(run, record)
            except SyncCancelledError as exc:
                self._mark_cancelled(run, exc)
            return self._finish(run, span)

    async def sync_record(
        self,
        calendar_id: str,
        record_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> ReconciliationOutcome:
        """Run the per-record protocol for a single record, without inter-record delay."""
        run = self._start("incremental", calendar_id, cancel)
        with (
            calendar_context(calendar_id),
            self._tracer.start_as_current_span("ledgersync.reconcile.record") as span,
        ):
            span.set_attribute("ledgersync.calendar_id", calendar_id)
            span.set_attribute("ledgersync.record_id", record_id)
            try:
                run.cancel.raise_if_cancelled()
                record = await self._ledger.get_record(record_id, cancel=run.cancel)
                if record is None:
                    raise NotFoundError(f"Ledger record {record_id} does not exist")
                if record.start is not None:
                    window = self._settings.match_window
                    start = to_utc(record.start)
                    run.index = EventIndex(
                        await fetch_all_events(
                            self._calendar,
                            calendar_id,
                            time_min=start - window,
                            time_max=start + window + timedelta(minutes=1),
                            cancel=run.cancel,
                        )
                    )
                await self._sync_one(run, record)
            except SyncCancelledError as exc:
                self._mark_cancelled(run, exc)
            return self._finish(run, span)

    async def _set_aside(
        self,
        run: _Run,
        records: Iterable[LedgerRecord],
    ) -> list[LedgerRecord]:
        """Drop already-processed records and ledger duplicates from the work list.

        A duplicate that still links to an event has the link cleared so the
        orphaned event is picked up by the duplicate cleanup pass.
        """
        candidates: list[LedgerRecord] = []
        for record in records:
            if record.processed:
                run.outcome.record(record.record_id, RecordStatus.unchanged)
            else:
                candidates.append(record)

        duplicates = find_ledger_duplicates(candidates)
        pending: list[LedgerRecord] = []
        for record in candidates:
            if record.record_id not in duplicates:
                pending.append(record)
                continue
            logger.warning(
                "Ledger record %s duplicates another record (%s); not syncing it",
                record.record_id,
                record.title,
            )
            run.outcome.duplicates.append(record.record_id)
            if record.google_event_id is not None:
                run.cancel.raise_if_cancelled()
                try:
                    await self._ledger.mark_unprocessed(record.record_id, cancel=run.cancel)
                except _FATAL_ERRORS:
                    raise
                except SyncError as exc:
                    logger.error(
                        "Could not mark duplicate ledger record %s unprocessed: %s",
                        record.record_id,
                        exc,
                    )
                    run.outcome.errors[record.record_id] = describe_error(exc)
        return pending

    async def _sync_one(self, run: _Run, record: LedgerRecord) -> RecordStatus:
        outcome = run.outcome
        try:
            record.require_schedulable()
        except RecordValidationError as exc:
            logger.warning("Skipping invalid ledger record %s: %s", record.record_id, exc)
            return self._fail(outcome, record.record_id, exc)

        try:
            lease = await self._ledger.lock(
                record.record_id,
                owner=self._owner,
                ttl=self._settings.lease_ttl,
                expected=record,
                cancel=run.cancel,
            )
        except LeaseHeldError as exc:
            logger.info("Ledger record %s is leased by %s; skipping", record.record_id, exc.owner)
            outcome.record(record.record_id, RecordStatus.skipped)
            return RecordStatus.skipped
        except StaleRecordError as exc:
            logger.info("%s; skipping", exc)
            outcome.record(record.record_id, RecordStatus.skipped)
            return RecordStatus.skipped
        except _FATAL_ERRORS:
            raise
        except SyncError as exc:
            logger.error("Could not lease ledger record %s: %s", record.record_id, exc)
            return self._fail(outcome, record.record_id, exc)

        status = RecordStatus.failed
        try:
            status = await self._apply(run, record)
            outcome.record(record.record_id, status)
        except _FATAL_ERRORS:
            raise
        except SyncError as exc:
            logger.error(
                "Failed to sync ledger record %s (%s): %s",
                record.record_id,
                record.title,
                describe_error(exc),
            )
            status = self._fail(outcome, record.record_id, exc)
        finally:
            await self._release(run, record.record_id, lease, failed=status is RecordStatus.failed)
        return status

    async def _apply(self, run: _Run, record: LedgerRecord) -> RecordStatus:
        event = await self._locate(run, record)
        if event is None:
            created = await self._create(run, record)
            logger.info("Created event %s for ledger record %s", created.event_id, record.record_id)
            return RecordStatus.created

        try:
            ensure_in_sync(record, event, track_description=self._settings.track_description)
        except ConflictError as conflict:
            logger.info(
                "Event %s differs from ledger record %s in %s; replacing it",
                event.event_id,
                record.record_id,
                ", ".join(conflict.fields),
            )
            run.cancel.raise_if_cancelled()
            await self._calendar.delete_event(run.calendar_id, event.event_id, cancel=run.cancel)
            run.index.remove(event.event_id)
            await self._create(run, record)
            return RecordStatus.updated

        run.index.claim(event.event_id)
        if record.google_event_id != event.event_id:
            run.cancel.raise_if_cancelled()
            await self._ledger.update_record(
                record.record_id,
                google_event_id=event.event_id,
                processed=True,
                calendar_link=event.html_link,
                cancel=run.cancel,
            )
        return RecordStatus.unchanged

    async def _locate(self, run: _Run, record: LedgerRecord) -> CalendarEvent | None:
        """Find the record's event and re-read it; events that vanished are skipped over."""
        window = self._settings.match_window
        match = run.index.match(record, window=window)
        candidate = match.event_id if match is not None else record.google_event_id
        tried: set[str] = set()

        while candidate is not None and candidate not in tried:
            tried.add(candidate)
            run.cancel.raise_if_cancelled()
            fresh = await self._calendar.get_event(run.calendar_id, candidate, cancel=run.cancel)
            if fresh is not None:
                return fresh
            logger.info("Event %s is gone from calendar %s", candidate, run.calendar_id)
            run.index.remove(candidate)
            match = run.index.match(record, window=window)
            candidate = match.event_id if match is not None else None
        return None

    async def _create(self, run: _Run, record: LedgerRecord) -> CalendarEvent:
        draft = EventDraft.from_record(record, timezone=self._settings.timezone)
        run.cancel.raise_if_cancelled()
        created = await self._calendar.create_event(run.calendar_id, draft, cancel=run.cancel)
        run.index.add(created)
        run.index.claim(created.event_id)
        run.cancel.raise_if_cancelled()
        await self._ledger.update_record(
            record.record_id,
            google_event_id=created.event_id,
            processed=True,
            calendar_link=created.html_link,
            cancel=run.cancel,
        )
        return created

    async def _release(self, run: _Run, record_id: str, lease: Lease, *, failed: bool) -> None:
        # Runs even after cancellation; only the settling wait is cut short.
        await run.cancel.sleep(self._settings.settle_delay)
        try:
            await self._ledger.unlock(record_id, lease, clear_processed=failed)
        except SyncError as exc:
            logger.error("Failed to release lease on ledger record %s: %s", record_id, exc)
            run.outcome.errors.setdefault(record_id, describe_error(exc))

    # ------------------------------------------------------------------
    # Full-sync mode
    # ------------------------------------------------------------------

    async def reconcile_all(
        self,
        calendar_id: str,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> ReconciliationOutcome:
        """Reset every linked record whose event is missing or stale.

        Stale events are deleted. Reset records are recreated by the next
        incremental run, so this mode itself never adds or updates.
        """
        run = self._start("full", calendar_id, cancel)
        with (
            calendar_context(calendar_id),
            self._tracer.start_as_current_span("ledgersync.reconcile.full") as span,
        ):
            span.set_attribute("ledgersync.calendar_id", calendar_id)
            try:
                events = await fetch_all_events(
                    self._calendar, calendar_id, time_min=EPOCH, cancel=run.cancel
                )
                by_id = {event.event_id: event for event in events}
                records = await self._ledger.fetch_all(calendar_key, cancel=run.cancel)
                logger.info(
                    "Full sync: %d ledger record(s), %d calendar event(s)",
                    len(records),
                    len(by_id),
                )
                for record in records:
                    run.cancel.raise_if_cancelled()
                    if record.google_event_id is None:
                        continue
                    await self._reconcile_linked(run, record, by_id.get(record.google_event_id))
            except SyncCancelledError as exc:
                self._mark_cancelled(run, exc)
            return self._finish(run, span)

    async def _reconcile_linked(
        self,
        run: _Run,
        record: LedgerRecord,
        event: CalendarEvent | None,
    ) -> None:
        outcome = run.outcome
        if record.lease_is_live() and record.lease_owner != self._owner:
            outcome.record(record.record_id, RecordStatus.skipped)
            return
        try:
            if event is None:
                logger.info(
                    "Event %s for ledger record %s is missing; marking unprocessed",
                    record.google_event_id,
                    record.record_id,
                )
                await self._ledger.mark_unprocessed(record.record_id, cancel=run.cancel)
                outcome.reset.append(record.record_id)
            elif is_different(record, event, track_description=self._settings.track_description):
                logger.info(
                    "Event %s is stale for ledger record %s; deleting and marking unprocessed",
                    event.event_id,
                    record.record_id,
                )
                await self._calendar.delete_event(
                    run.calendar_id, event.event_id, cancel=run.cancel
                )
                outcome.deleted_events.append(event.event_id)
                await self._ledger.mark_unprocessed(record.record_id, cancel=run.cancel)
                outcome.reset.append(record.record_id)
            else:
                outcome.record(record.record_id, RecordStatus.unchanged)
        except _FATAL_ERRORS:
            raise
        except SyncError as exc:
            logger.error("Full sync failed for ledger record %s: %s", record.record_id, exc)
            self._fail(outcome, record.record_id, exc)

    # ------------------------------------------------------------------
    # Duplicate cleanup
    # ------------------------------------------------------------------

    async def remove_duplicates(
        self,
        calendar_id: str,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> ReconciliationOutcome:
        """Delete calendar events that share a title and start minute with another event.

        Events referenced by a ledger record are preferred as survivors. When
        several referenced events collide, the records whose events were
        deleted are marked unprocessed.
        """
        run = self._start("dedupe", calendar_id, cancel)
        with (
            calendar_context(calendar_id),
            self._tracer.start_as_current_span("ledgersync.reconcile.dedupe") as span,
        ):
            span.set_attribute("ledgersync.calendar_id", calendar_id)
            try:
                events = await fetch_all_events(
                    self._calendar, calendar_id, time_min=EPOCH, cancel=run.cancel
                )
                records = await self._ledger.fetch_all(calendar_key, cancel=run.cancel)
                referencing = {
                    record.google_event_id: record
                    for record in records
                    if record.google_event_id is not None
                }
                duplicates = find_calendar_duplicates(events, referenced_ids=set(referencing))
                if duplicates:
                    logger.info("Found %d duplicate calendar event(s)", len(duplicates))

                for event_id in sorted(duplicates):
                    run.cancel.raise_if_cancelled()
                    try:
                        await self._calendar.delete_event(
                            calendar_id, event_id, cancel=run.cancel
                        )
                        run.outcome.deleted_events.append(event_id)
                        record = referencing.get(event_id)
                        if record is not None:
                            await self._ledger.mark_unprocessed(
                                record.record_id, cancel=run.cancel
                            )
                            run.outcome.reset.append(record.record_id)
                    except _FATAL_ERRORS:
                        raise
                    except SyncError as exc:
                        logger.error("Could not delete duplicate event %s: %s", event_id, exc)
                        run.outcome.errors[event_id] = describe_error(exc)
            except SyncCancelledError as exc:
                self._mark_cancelled(run, exc)
            return self._finish(run, span)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(
        self,
        calendar_id: str,
        calendar_key: str | None = None,
        *,
        full: bool = False,
        dedupe: bool = True,
        cancel: CancellationToken | None = None,
    ) -> list[ReconciliationOutcome]:
        """Incremental run, then optionally a full sync, then duplicate cleanup."""
        token = ensure_token(cancel)
        outcomes = [await self.run(calendar_id, calendar_key, cancel=token)]
        if full and not token.cancelled:
            outcomes.append(await self.reconcile_all(calendar_id, calendar_key, cancel=token))
        if dedupe and not token.cancelled:
            outcomes.append(await self.remove_duplicates(calendar_id, calendar_key, cancel=token))
        return outcomes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _start(
        mode: ReconciliationMode,
        calendar_id: str,
        cancel: CancellationToken | None,
    ) -> _Run:
        return _Run(
            calendar_id=calendar_id,
            outcome=ReconciliationOutcome(mode=mode, calendar_id=calendar_id),
            cancel=ensure_token(cancel),
        )

    @staticmethod
    def _fail(outcome: ReconciliationOutcome, record_id: str, exc: Exception) -> RecordStatus:
        outcome.record(record_id, RecordStatus.failed)
        outcome.errors[record_id] = describe_error(exc)
        return RecordStatus.failed

    @staticmethod
    def _mark_cancelled(run: _Run, exc: SyncCancelledError) -> None:
        logger.warning("Reconciliation of calendar %s cancelled: %s", run.calendar_id, exc)
        run.outcome.cancelled = True

    @staticmethod
    def _finish(run: _Run, span: trace.Span) -> ReconciliationOutcome:
        outcome = run.outcome
        span.set_attribute("ledgersync.added", len(outcome.added))
        span.set_attribute("ledgersync.updated", len(outcome.updated))
        span.set_attribute("ledgersync.failed", len(outcome.failed))
        span.set_attribute("ledgersync.cancelled", outcome.cancelled)
        logger.info("Calendar %s %s run: %s", run.calendar_id, outcome.mode, outcome.summary())
        return outcome
