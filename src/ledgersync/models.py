"""Canonical shapes exchanged between the clients and the reconciliation engine."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledgersync.errors import RecordValidationError

ReconciliationMode = Literal["incremental", "full", "dedupe"]


class RecordStatus(StrEnum):
    """Terminal state of one ledger record within a run."""

    created = "created"
    updated = "updated"
    unchanged = "unchanged"
    failed = "failed"
    skipped = "skipped"


class LedgerRecord(BaseModel):
    """One row of the ledger describing an event that should exist on a calendar."""

    model_config = ConfigDict(extra="forbid")

    record_id: str = Field(min_length=1)
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    description: str = ""
    location: str = ""
    attendee_email: str | None = None
    calendar_key: str = ""
    google_event_id: str | None = None
    processed: bool = False
    annotations: dict[str, str] = Field(default_factory=dict)
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None

    @field_validator("title", "description", "location", "calendar_key")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("attendee_email", "google_event_id", "lease_owner")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def composed_description(self) -> str:
        """Description prefixed with one ``Label: value`` line per annotation."""
        lines = [f"{label}: {value}" for label, value in self.annotations.items() if value]
        if not lines:
            return self.description
        prefix = "\n".join(lines)
        return f"{prefix}\n\n{self.description}" if self.description else prefix

    def validation_problems(self) -> list[str]:
        problems: list[str] = []
        if not self.title:
            problems.append("missing title")
        if self.start is None:
            problems.append("missing start")
        if self.end is None:
            problems.append("missing end")
        if self.start is not None and self.end is not None and self.end < self.start:
            problems.append("end before start")
        return problems

    def require_schedulable(self) -> None:
        problems = self.validation_problems()
        if problems:
            raise RecordValidationError(self.record_id, problems)

    def lease_is_live(self, *, now: datetime | None = None) -> bool:
        if self.lease_owner is None or self.lease_expires_at is None:
            return False
        return (now or datetime.now(UTC)) < self.lease_expires_at


class CalendarEvent(BaseModel):
    """Provider-neutral calendar event shape."""

    model_config = ConfigDict(extra="forbid")

    event_id: str = Field(min_length=1)
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    description: str = ""
    location: str = ""
    attendees: list[str] = Field(default_factory=list)
    ledger_record_id: str | None = None
    html_link: str | None = None


class EventDraft(BaseModel):
    """Payload for creating a calendar event from a ledger record."""

    model_config = ConfigDict(extra="forbid")

    title: str
    start: datetime
    end: datetime
    timezone: str = "UTC"
    description: str = ""
    location: str = ""
    attendees: list[str] = Field(default_factory=list)
    ledger_record_id: str | None = None

    @classmethod
    def from_record(cls, record: LedgerRecord, *, timezone: str = "UTC") -> EventDraft:
        record.require_schedulable()
        assert record.start is not None and record.end is not None
        return cls(
            title=record.title,
            start=record.start,
            end=record.end,
            timezone=timezone,
            description=record.composed_description(),
            location=record.location,
            attendees=[record.attendee_email] if record.attendee_email else [],
            ledger_record_id=record.record_id,
        )


class EventPatch(BaseModel):
    """Partial update for an existing calendar event; ``None`` fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None


class EventPage(BaseModel):
    """One page of a calendar listing."""

    model_config = ConfigDict(extra="forbid")

    items: list[CalendarEvent] = Field(default_factory=list)
    next_page_token: str | None = None

    @field_validator("next_page_token")
    @classmethod
    def _normalize_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class Lease(BaseModel):
    """A time-bounded claim on one ledger record held by one run."""

    model_config = ConfigDict(extra="forbid")

    record_id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime


class ReconciliationOutcome(BaseModel):
    """Per-run report; every list holds ledger record ids except ``deleted_events``."""

    model_config = ConfigDict(extra="forbid")

    mode: ReconciliationMode
    calendar_id: str
    added: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    duplicates: list[str] = Field(default_factory=list)
    reset: list[str] = Field(default_factory=list)
    deleted_events: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    cancelled: bool = False

    def record(self, record_id: str, status: RecordStatus) -> None:
        target = {
            RecordStatus.created: self.added,
            RecordStatus.updated: self.updated,
            RecordStatus.unchanged: self.unchanged,
            RecordStatus.failed: self.failed,
            RecordStatus.skipped: self.skipped,
        }[status]
        target.append(record_id)

    @property
    def mutated(self) -> bool:
        return bool(self.added or self.updated or self.reset or self.deleted_events)

    def summary(self) -> str:
        counts = [
            ("added", self.added),
            ("updated", self.updated),
            ("unchanged", self.unchanged),
            ("failed", self.failed),
            ("skipped", self.skipped),
            ("duplicates", self.duplicates),
            ("reset", self.reset),
            ("deleted events", self.deleted_events),
        ]
        parts = [f"{len(items)} {label}" for label, items in counts if items]
        if self.cancelled:
            parts.append("cancelled")
        return ", ".join(parts) if parts else "No changes"
