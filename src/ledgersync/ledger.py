"""Ledger client interface and the Airtable implementation.

All Airtable URLs and formulas are built here. Records are leased rather than
flagged: ``lock`` writes ``processed=true`` together with an owner token and an
expiry, then reads the record back to confirm that the write it sees is its
own. Airtable offers no conditional update, so the read-back is the
compare-and-set.
"""

from __future__ import annotations

import abc
import enum
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from ledgersync.cancellation import CancellationToken, ensure_token
from ledgersync.credentials import CredentialProvider
from ledgersync.errors import (
    LeaseHeldError,
    LedgerRequestError,
    MalformedResponseError,
    NotFoundError,
    StaleRecordError,
    safe_error_message,
)
from ledgersync.http import RetryPolicy, send_with_retry
from ledgersync.models import Lease, LedgerRecord
from ledgersync.normalize import iso_instant, normalize_key, parse_instant

logger = logging.getLogger(__name__)

AIRTABLE_API_BASE_URL = "https://api.airtable.com/v0"
AIRTABLE_SERVICE_NAME = "Airtable API"
AIRTABLE_PAGE_SIZE = 100

# Formula escapes for the whitespace normalize_key strips from calendar keys.
_FORMULA_WHITESPACE = (" ", "\\n", "\\t", "\\r")


class _Unset(enum.Enum):
    UNSET = "UNSET"


UNSET = _Unset.UNSET
"""Marker for "leave this field alone" where ``None`` means "clear it"."""


class LedgerClient(abc.ABC):
    """Minimal ledger surface required by the reconciliation engine."""

    @abc.abstractmethod
    async def fetch_unprocessed(
        self,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[LedgerRecord]: ...

    @abc.abstractmethod
    async def fetch_all(
        self,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[LedgerRecord]: ...

    @abc.abstractmethod
    async def get_record(
        self,
        record_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> LedgerRecord | None: ...

    @abc.abstractmethod
    async def update_record(
        self,
        record_id: str,
        *,
        google_event_id: str | None | _Unset = UNSET,
        processed: bool | None = None,
        calendar_link: str | None | _Unset = UNSET,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Partially update a record; omitted fields are left untouched."""

    @abc.abstractmethod
    async def lock(
        self,
        record_id: str,
        *,
        owner: str,
        ttl: timedelta,
        expected: LedgerRecord | None = None,
        cancel: CancellationToken | None = None,
    ) -> Lease:
        """Acquire a lease, raising :class:`LeaseHeldError` if another owner holds one.

        When *expected* is the copy the caller is working from, a record that
        has since been processed or linked to another event raises
        :class:`StaleRecordError` instead of being leased.
        """

    @abc.abstractmethod
    async def unlock(
        self,
        record_id: str,
        lease: Lease,
        *,
        clear_processed: bool = False,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Release *lease* if it is still ours; optionally clear ``processed`` too."""

    async def mark_unprocessed(
        self,
        record_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Clear the event link and processed flag so the next run recreates the event."""
        await self.update_record(
            record_id,
            google_event_id=None,
            processed=False,
            calendar_link=None,
            cancel=cancel,
        )

    async def shutdown(self) -> None:
        return None


def matches_calendar_key(record: LedgerRecord, calendar_key: str | None) -> bool:
    if calendar_key is None:
        return True
    return normalize_key(record.calendar_key) == normalize_key(calendar_key)


def ensure_not_stale(current: LedgerRecord, expected: LedgerRecord | None) -> None:
    """Raise :class:`StaleRecordError` if *current* moved on from the caller's copy."""
    if expected is None:
        return
    if current.processed and not expected.processed:
        raise StaleRecordError(current.record_id, "was processed after it was read")
    if current.google_event_id != expected.google_event_id:
        raise StaleRecordError(
            current.record_id,
            f"was linked to event {current.google_event_id or 'none'} after it was read",
        )


@dataclass(frozen=True)
class AirtableFieldMap:
    """Airtable column names backing each ledger record attribute.

    Optional columns set to ``None`` are neither read nor written. Without
    lease columns the lock degrades to the bare ``processed`` flag.
    """

    title: str = "Lot Number and Community/Neighborhood"
    start: str = "FormattedStartDate"
    end: str = "FormattedEndDate"
    description: str = "Description of Issue"
    address: tuple[str, ...] = ("Street Address", "City", "State", "Zip Code")
    calendar_key: str = "b"
    google_event_id: str = "GoogleEventId"
    processed: str = "Processed"
    attendee_email: str | None = None
    calendar_link: str | None = "CalendarLink"
    last_updated: str | None = "LastUpdated"
    lease_owner: str | None = "LockOwner"
    lease_expires_at: str | None = "LockExpiresAt"
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def has_lease_fields(self) -> bool:
        return self.lease_owner is not None and self.lease_expires_at is not None


class AirtableLedgerClient(LedgerClient):
    """Airtable REST client for one table of ledger records."""

    def __init__(
        self,
        *,
        base_id: str,
        table: str,
        credentials: CredentialProvider,
        fields: AirtableFieldMap | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        upcoming_only: bool = True,
        timezone: str = "UTC",
        base_url: str = AIRTABLE_API_BASE_URL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not base_id.strip() or not table.strip():
            raise ValueError("base_id and table must be non-empty")
        self._base_id = base_id.strip()
        self._table = table.strip()
        self._credentials = credentials
        self._fields = fields or AirtableFieldMap()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._retry_policy = retry_policy or RetryPolicy()
        self._upcoming_only = upcoming_only
        self._zone = ZoneInfo(timezone)
        self._base_url = base_url.rstrip("/")
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def fields(self) -> AirtableFieldMap:
        return self._fields

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_unprocessed(
        self,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[LedgerRecord]:
        clauses = [f"NOT({{{self._fields.processed}}})"]
        if self._upcoming_only:
            clauses.append(f"NOT(IS_BEFORE({{{self._fields.start}}}, TODAY()))")
        records = await self._fetch(self._formula(clauses, calendar_key), cancel=cancel)
        return [
            record
            for record in records
            if not record.processed and matches_calendar_key(record, calendar_key)
        ]

    async def fetch_all(
        self,
        calendar_key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[LedgerRecord]:
        records = await self._fetch(self._formula([], calendar_key), cancel=cancel)
        return [record for record in records if matches_calendar_key(record, calendar_key)]

    async def get_record(
        self,
        record_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> LedgerRecord | None:
        response = await self._send("GET", self._record_url(record_id), cancel=cancel)
        if response.status_code == 404:
            return None
        return self._parse_record(self._decode(response))

    def _formula(self, clauses: list[str], calendar_key: str | None) -> str | None:
        clauses = list(clauses)
        if calendar_key is not None:
            key_expr = f"{{{self._fields.calendar_key}}}"
            for whitespace in _FORMULA_WHITESPACE:
                key_expr = f"SUBSTITUTE({key_expr}, '{whitespace}', '')"
            clauses.append(f"LOWER({key_expr})={_formula_string(normalize_key(calendar_key))}")
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return f"AND({', '.join(clauses)})"

    async def _fetch(
        self,
        formula: str | None,
        *,
        cancel: CancellationToken | None,
    ) -> list[LedgerRecord]:
        token = ensure_token(cancel)
        records: list[LedgerRecord] = []
        seen_offsets: set[str] = set()
        offset: str | None = None

        while True:
            token.raise_if_cancelled()
            params: dict[str, Any] = {"pageSize": AIRTABLE_PAGE_SIZE}
            if formula:
                params["filterByFormula"] = formula
            if offset:
                params["offset"] = offset

            payload = self._decode(
                await self._send("GET", self._table_url(), params=params, cancel=token)
            )
            items = payload.get("records", [])
            if not isinstance(items, list):
                raise MalformedResponseError("Airtable list response has a non-list records field")
            for item in items:
                if isinstance(item, dict):
                    record = self._parse_record(item)
                    if record is not None:
                        records.append(record)

            next_offset = payload.get("offset")
            if not isinstance(next_offset, str) or not next_offset:
                logger.debug("Fetched %d ledger records", len(records))
                return records
            if next_offset in seen_offsets:
                raise MalformedResponseError(f"Airtable repeated offset {next_offset!r}")
            seen_offsets.add(next_offset)
            offset = next_offset

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def update_record(
        self,
        record_id: str,
        *,
        google_event_id: str | None | _Unset = UNSET,
        processed: bool | None = None,
        calendar_link: str | None | _Unset = UNSET,
        cancel: CancellationToken | None = None,
    ) -> None:
        fields: dict[str, Any] = {}
        if google_event_id is not UNSET:
            fields[self._fields.google_event_id] = google_event_id
        if processed is not None:
            fields[self._fields.processed] = processed
        if calendar_link is not UNSET and self._fields.calendar_link is not None:
            fields[self._fields.calendar_link] = calendar_link
        await self._patch(record_id, fields, cancel=cancel)

    async def lock(
        self,
        record_id: str,
        *,
        owner: str,
        ttl: timedelta,
        expected: LedgerRecord | None = None,
        cancel: CancellationToken | None = None,
    ) -> Lease:
        now = self._clock()
        lease = Lease(record_id=record_id, owner=owner, acquired_at=now, expires_at=now + ttl)
        fields: dict[str, Any] = {self._fields.processed: True}

        if self._fields.has_lease_fields or expected is not None:
            current = await self.get_record(record_id, cancel=cancel)
            if current is None:
                raise NotFoundError(f"Ledger record {record_id} no longer exists")
            if current.lease_is_live(now=now) and current.lease_owner != owner:
                raise LeaseHeldError(record_id, current.lease_owner or "unknown")
            ensure_not_stale(current, expected)

        if self._fields.has_lease_fields:
            assert self._fields.lease_owner is not None
            assert self._fields.lease_expires_at is not None
            fields[self._fields.lease_owner] = owner
            fields[self._fields.lease_expires_at] = iso_instant(lease.expires_at)

        await self._patch(record_id, fields, cancel=cancel)

        if self._fields.has_lease_fields:
            confirmed = await self.get_record(record_id, cancel=cancel)
            if confirmed is None:
                raise NotFoundError(f"Ledger record {record_id} disappeared while locking")
            if confirmed.lease_owner != owner:
                raise LeaseHeldError(record_id, confirmed.lease_owner or "unknown")

        logger.debug("Leased ledger record %s until %s", record_id, iso_instant(lease.expires_at))
        return lease

    async def unlock(
        self,
        record_id: str,
        lease: Lease,
        *,
        clear_processed: bool = False,
        cancel: CancellationToken | None = None,
    ) -> None:
        fields: dict[str, Any] = {}
        if self._fields.has_lease_fields:
            current = await self.get_record(record_id, cancel=cancel)
            if current is None:
                logger.warning("Ledger record %s vanished before unlock", record_id)
                return
            if current.lease_owner not in (None, lease.owner):
                logger.warning(
                    "Lease on ledger record %s was taken over by %s; leaving it in place",
                    record_id,
                    current.lease_owner,
                )
                return
            assert self._fields.lease_owner is not None
            assert self._fields.lease_expires_at is not None
            fields[self._fields.lease_owner] = None
            fields[self._fields.lease_expires_at] = None
        if clear_processed:
            fields[self._fields.processed] = False
        if fields:
            await self._patch(record_id, fields, cancel=cancel)

    async def _patch(
        self,
        record_id: str,
        fields: dict[str, Any],
        *,
        cancel: CancellationToken | None,
    ) -> None:
        if not fields:
            return
        if self._fields.last_updated is not None:
            fields[self._fields.last_updated] = iso_instant(self._clock())
        response = await self._send(
            "PATCH", self._record_url(record_id), json_body={"fields": fields}, cancel=cancel
        )
        self._decode(response)

    # ------------------------------------------------------------------
    # Transport and parsing
    # ------------------------------------------------------------------

    def _table_url(self) -> str:
        return f"{self._base_url}/{quote(self._base_id, safe='')}/{quote(self._table, safe='')}"

    def _record_url(self, record_id: str) -> str:
        normalized = record_id.strip()
        if not normalized:
            raise ValueError("record_id must be a non-empty string")
        return f"{self._table_url()}/{quote(normalized, safe='')}"

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        cancel: CancellationToken | None = None,
    ) -> httpx.Response:
        return await send_with_retry(
            self._http_client,
            self._credentials,
            service=AIRTABLE_SERVICE_NAME,
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            policy=self._retry_policy,
            cancel=cancel,
        )

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise LedgerRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Airtable API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError("Airtable API returned an unexpected JSON payload shape")
        return payload

    def _parse_record(self, payload: dict[str, Any]) -> LedgerRecord | None:
        record_id = payload.get("id")
        if not isinstance(record_id, str) or not record_id.strip():
            logger.debug("Skipping Airtable record without an id")
            return None
        raw = payload.get("fields")
        values: dict[str, Any] = raw if isinstance(raw, dict) else {}
        mapping = self._fields

        address_parts = [_text(values.get(name)) for name in mapping.address]
        annotations = {
            label: _text(values.get(column)) for label, column in mapping.annotations.items()
        }

        return LedgerRecord(
            record_id=record_id.strip(),
            title=_text(values.get(mapping.title)),
            start=_instant(values.get(mapping.start), self._zone),
            end=_instant(values.get(mapping.end), self._zone),
            description=_text(values.get(mapping.description)),
            location=", ".join(part for part in address_parts if part),
            attendee_email=(
                _text(values.get(mapping.attendee_email)) or None
                if mapping.attendee_email
                else None
            ),
            calendar_key=_text(values.get(mapping.calendar_key)),
            google_event_id=_text(values.get(mapping.google_event_id)) or None,
            processed=values.get(mapping.processed) is True,
            annotations={label: value for label, value in annotations.items() if value},
            lease_owner=(
                _text(values.get(mapping.lease_owner)) or None if mapping.lease_owner else None
            ),
            lease_expires_at=(
                _instant(values.get(mapping.lease_expires_at), self._zone)
                if mapping.lease_expires_at
                else None
            ),
        )


def _formula_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, list):
        # Lookup and multi-select columns arrive as lists.
        return ", ".join(_text(item) for item in value if _text(item))
    return ""


def _instant(value: Any, zone: tzinfo) -> datetime | None:
    text = _text(value)
    if not text:
        return None
    try:
        return parse_instant(text, zone=zone)
    except ValueError:
        logger.debug("Ignoring unparseable Airtable timestamp %r", text)
        return None
