"""Calendar client interface and the Google Calendar implementation.

All Google Calendar URLs are built here; the reconciliation engine only ever
talks to :class:`CalendarClient`.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from ledgersync.cancellation import CancellationToken, ensure_token
from ledgersync.credentials import CredentialProvider
from ledgersync.errors import (
    CalendarRequestError,
    MalformedResponseError,
    safe_error_message,
)
from ledgersync.http import RetryPolicy, send_with_retry
from ledgersync.models import CalendarEvent, EventDraft, EventPage, EventPatch
from ledgersync.normalize import EPOCH, parse_instant, rfc3339

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_SERVICE_NAME = "Google Calendar API"
LEDGER_RECORD_PROPERTY = "ledger_record_id"
MAX_PAGE_SIZE = 2500
_GONE_STATUS_CODES = frozenset({404, 410})


class CalendarClient(abc.ABC):
    """Minimal calendar surface required by the reconciliation engine."""

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime,
        time_max: datetime | None = None,
        page_token: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> EventPage: ...

    @abc.abstractmethod
    async def get_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent | None:
        """Return the event, or ``None`` when it does not exist (404/410)."""

    @abc.abstractmethod
    async def create_event(
        self,
        calendar_id: str,
        draft: EventDraft,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent: ...

    @abc.abstractmethod
    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent: ...

    @abc.abstractmethod
    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Delete an event. Deleting an event that is already gone succeeds."""

    async def shutdown(self) -> None:
        return None


async def fetch_all_events(
    client: CalendarClient,
    calendar_id: str,
    *,
    time_min: datetime = EPOCH,
    time_max: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> list[CalendarEvent]:
    """Follow page tokens until the listing is exhausted."""
    token = ensure_token(cancel)
    events: list[CalendarEvent] = []
    seen_tokens: set[str] = set()
    page_token: str | None = None

    while True:
        token.raise_if_cancelled()
        page = await client.list_events(
            calendar_id,
            time_min=time_min,
            time_max=time_max,
            page_token=page_token,
            cancel=token,
        )
        events.extend(page.items)
        if page.next_page_token is None:
            return events
        if page.next_page_token in seen_tokens:
            raise MalformedResponseError(
                f"Calendar {calendar_id} repeated page token {page.next_page_token!r}"
            )
        seen_tokens.add(page.next_page_token)
        page_token = page.next_page_token


class GoogleCalendarClient(CalendarClient):
    """Google Calendar v3 client with bearer auth, retries and lenient event parsing."""

    def __init__(
        self,
        credentials: CredentialProvider,
        http_client: httpx.AsyncClient | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._credentials = credentials
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._retry_policy = retry_policy or RetryPolicy()
        self._base_url = base_url.rstrip("/")
        self._page_size = min(page_size, MAX_PAGE_SIZE)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime,
        time_max: datetime | None = None,
        page_token: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": self._page_size,
            "timeMin": rfc3339(time_min),
        }
        if time_max is not None:
            params["timeMax"] = rfc3339(time_max)
        if page_token:
            params["pageToken"] = page_token

        payload = await self._request_json(
            "GET", self._events_path(calendar_id), params=params, cancel=cancel
        )
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise MalformedResponseError("Google Calendar list response has a non-list items field")

        events: list[CalendarEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            event = google_event_to_calendar_event(item)
            if event is not None:
                events.append(event)

        next_page_token = payload.get("nextPageToken")
        return EventPage(
            items=events,
            next_page_token=next_page_token if isinstance(next_page_token, str) else None,
        )

    async def get_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent | None:
        response = await self._send(
            "GET", self._event_path(calendar_id, event_id), cancel=cancel
        )
        if response.status_code in _GONE_STATUS_CODES:
            return None
        payload = self._decode(response)
        return google_event_to_calendar_event(payload)

    async def create_event(
        self,
        calendar_id: str,
        draft: EventDraft,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent:
        payload = await self._request_json(
            "POST",
            self._events_path(calendar_id),
            json_body=build_event_body(draft),
            cancel=cancel,
        )
        event = google_event_to_calendar_event(payload)
        if event is None:
            raise MalformedResponseError("Google Calendar returned an unusable created event")
        logger.info("Created calendar event %s (%s)", event.event_id, draft.title)
        return event

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
        *,
        cancel: CancellationToken | None = None,
    ) -> CalendarEvent:
        payload = await self._request_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            json_body=build_event_patch_body(patch),
            cancel=cancel,
        )
        event = google_event_to_calendar_event(payload)
        if event is None:
            raise MalformedResponseError("Google Calendar returned an unusable updated event")
        return event

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        response = await self._send(
            "DELETE", self._event_path(calendar_id, event_id), cancel=cancel
        )
        if response.status_code in _GONE_STATUS_CODES:
            logger.debug("Calendar event %s already gone", event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        logger.info("Deleted calendar event %s", event_id)

    def _events_path(self, calendar_id: str) -> str:
        normalized = calendar_id.strip()
        if not normalized:
            raise ValueError("calendar_id must be a non-empty string")
        return f"{self._base_url}/calendars/{quote(normalized, safe='')}/events"

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{self._events_path(calendar_id)}/{quote(normalized_event_id, safe='')}"

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
            service=GOOGLE_SERVICE_NAME,
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            policy=self._retry_policy,
            cancel=cancel,
        )

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        cancel: CancellationToken | None = None,
    ) -> dict[str, Any]:
        response = await self._send(
            method, url, params=params, json_body=json_body, cancel=cancel
        )
        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                "Google Calendar API returned an unexpected JSON payload shape"
            )
        return payload


def build_event_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": draft.title,
        "description": draft.description,
        "location": draft.location,
        "start": {"dateTime": rfc3339(draft.start), "timeZone": draft.timezone},
        "end": {"dateTime": rfc3339(draft.end), "timeZone": draft.timezone},
    }
    if draft.attendees:
        body["attendees"] = [{"email": email} for email in draft.attendees]
    if draft.ledger_record_id:
        body["extendedProperties"] = {
            "private": {LEDGER_RECORD_PROPERTY: draft.ledger_record_id}
        }
    return body


def build_event_patch_body(patch: EventPatch) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if patch.title is not None:
        body["summary"] = patch.title
    if patch.description is not None:
        body["description"] = patch.description
    if patch.location is not None:
        body["location"] = patch.location
    if patch.start is not None:
        body["start"] = {"dateTime": rfc3339(patch.start)}
        if patch.timezone:
            body["start"]["timeZone"] = patch.timezone
    if patch.end is not None:
        body["end"] = {"dateTime": rfc3339(patch.end)}
        if patch.timezone:
            body["end"]["timeZone"] = patch.timezone
    if patch.attendees is not None:
        body["attendees"] = [{"email": email} for email in patch.attendees]
    if not body:
        raise ValueError("Event patch must change at least one field")
    return body


def google_event_to_calendar_event(payload: dict[str, Any]) -> CalendarEvent | None:
    """Convert a Google event payload; cancelled or id-less events yield ``None``.

    Missing sub-fields become empty values rather than errors.
    """
    status = payload.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        return None

    event_id = _text(payload.get("id"))
    if not event_id:
        logger.debug("Skipping Google Calendar item without an id")
        return None

    start, all_day = _parse_boundary(payload.get("start"))
    end, _ = _parse_boundary(payload.get("end"))

    return CalendarEvent(
        event_id=event_id,
        title=_text(payload.get("summary")),
        start=start,
        end=end,
        all_day=all_day,
        description=_text(payload.get("description")),
        location=_text(payload.get("location")),
        attendees=_extract_attendees(payload.get("attendees")),
        ledger_record_id=_extract_ledger_record_id(payload.get("extendedProperties")),
        html_link=_text(payload.get("htmlLink")) or None,
    )


def _parse_boundary(value: Any) -> tuple[datetime | None, bool]:
    if not isinstance(value, dict):
        return None, False
    for key, all_day in (("dateTime", False), ("date", True)):
        raw = value.get(key)
        if isinstance(raw, str) and raw.strip():
            try:
                return parse_instant(raw), all_day
            except ValueError:
                logger.debug("Ignoring unparseable Google Calendar %s value %r", key, raw)
                return None, all_day
    return None, False


def _extract_attendees(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    emails: list[str] = []
    for attendee in value:
        if isinstance(attendee, dict):
            email = _text(attendee.get("email"))
            if email:
                emails.append(email)
    return emails


def _extract_ledger_record_id(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    private = value.get("private")
    if not isinstance(private, dict):
        return None
    return _text(private.get(LEDGER_RECORD_PROPERTY)) or None


def _text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()
