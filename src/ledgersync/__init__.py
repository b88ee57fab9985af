"""Reconcile Airtable ledger records with Google Calendar events."""

from ledgersync.cancellation import CancellationToken
from ledgersync.engine import EngineSettings, ReconciliationEngine
from ledgersync.models import (
    CalendarEvent,
    EventPage,
    Lease,
    LedgerRecord,
    ReconciliationOutcome,
)

__version__ = "0.1.0"

__all__ = [
    "CalendarEvent",
    "CancellationToken",
    "EngineSettings",
    "EventPage",
    "Lease",
    "LedgerRecord",
    "ReconciliationEngine",
    "ReconciliationOutcome",
    "__version__",
]
