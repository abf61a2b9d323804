"""Google Calendar adapter.

Wire shapes handled here:

- boundaries are ``{"date": "YYYY-MM-DD"}`` for all-day events and
  ``{"dateTime": RFC3339, "timeZone": IANA?}`` for timed events
- attendee ``responseStatus`` is one of ``needsAction``/``accepted``/
  ``declined``/``tentative``; the attendee list can only be replaced as a whole
- calendar list entries carry ``accessRole`` from which ``read_only`` is derived
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any
from urllib.parse import quote

import httpx

from calendar_hub.colors import normalize_hex_color
from calendar_hub.errors import CalendarValidationError
from calendar_hub.models import (
    Attendee,
    AttendeeStatus,
    AttendeeType,
    Calendar,
    CalendarEvent,
    CreateCalendarInput,
    CreateEventInput,
    EventResponse,
    GoogleEventMetadata,
    ProviderId,
    UpdateCalendarInput,
    UpdateEventInput,
)
from calendar_hub.providers._http import ProviderHttpClient, ProviderHttpError, provider_operation
from calendar_hub.providers.base import (
    DEFAULT_EVENT_PAGE_SIZE,
    DEFAULT_MAX_EVENT_PAGES,
    CalendarProvider,
)
from calendar_hub.temporal import Instant, PlainDate, ZonedDateTime, format_utc, parse_rfc3339
from calendar_hub.timezones import resolve_time_zone

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
READ_ONLY_ACCESS_ROLES = frozenset({"reader", "freeBusyReader"})
# Calendar lists are small; this only bounds a misbehaving cursor.
MAX_CALENDAR_LIST_PAGES = 10

_GOOGLE_TO_ATTENDEE_STATUS = {
    "needsAction": AttendeeStatus.unknown,
    "accepted": AttendeeStatus.accepted,
    "declined": AttendeeStatus.declined,
    "tentative": AttendeeStatus.tentative,
}


# ---------------------------------------------------------------------------
# Boundary mapping
# ---------------------------------------------------------------------------


def to_google_date(value: PlainDate | Instant | ZonedDateTime) -> dict[str, str]:
    """Translate a canonical boundary into a Google ``start``/``end`` object."""
    if isinstance(value, PlainDate):
        return {"date": value.isoformat()}
    if isinstance(value, Instant):
        return {"dateTime": value.isoformat()}
    return {"dateTime": value.isoformat(), "timeZone": value.time_zone}


def parse_google_date(
    payload: dict[str, Any],
    *,
    all_day: bool,
) -> tuple[PlainDate | Instant | ZonedDateTime, str | None]:
    """Parse a Google boundary object.

    Returns the canonical value and, when the wire ``timeZone`` could not be
    resolved to an IANA zone, the raw zone string (the value then degrades to
    an ``Instant``).
    """
    if all_day:
        date_value = payload.get("date")
        if not isinstance(date_value, str) or not date_value.strip():
            raise ValueError("Google Calendar all-day boundary is missing a date value")
        try:
            return PlainDate(value=date.fromisoformat(date_value.strip())), None
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc

    date_time = payload.get("dateTime")
    if not isinstance(date_time, str) or not date_time.strip():
        raise ValueError("Google Calendar timed boundary is missing a dateTime value")
    instant = parse_rfc3339(date_time)

    raw_zone = payload.get("timeZone")
    if not isinstance(raw_zone, str) or not raw_zone.strip():
        return Instant(value=instant), None

    resolved = resolve_time_zone(raw_zone.strip())
    if resolved is None:
        logger.warning(
            "Google Calendar returned unknown timeZone %r; keeping the boundary as an instant",
            raw_zone,
        )
        return Instant(value=instant), raw_zone
    return ZonedDateTime.from_instant(instant, resolved), None


# ---------------------------------------------------------------------------
# Attendee mapping
# ---------------------------------------------------------------------------


def parse_google_attendee_status(value: Any) -> AttendeeStatus:
    if not isinstance(value, str):
        return AttendeeStatus.unknown
    return _GOOGLE_TO_ATTENDEE_STATUS.get(value.strip(), AttendeeStatus.unknown)


def to_google_attendee_response_status(status: AttendeeStatus | str) -> str:
    if status == AttendeeStatus.unknown:
        return "needsAction"
    return AttendeeStatus(status).value


def parse_google_attendee_type(entry: dict[str, Any]) -> AttendeeType:
    if entry.get("resource") is True:
        return AttendeeType.resource
    if entry.get("optional") is True:
        return AttendeeType.optional
    return AttendeeType.required


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def parse_google_attendee(entry: dict[str, Any]) -> Attendee:
    additional_guests = entry.get("additionalGuests")
    return Attendee(
        id=_optional_text(entry.get("id")),
        email=_optional_text(entry.get("email")),
        name=_optional_text(entry.get("displayName")),
        status=parse_google_attendee_status(entry.get("responseStatus")),
        type=parse_google_attendee_type(entry),
        comment=_optional_text(entry.get("comment")),
        additional_guests=(
            additional_guests
            if isinstance(additional_guests, int) and not isinstance(additional_guests, bool)
            else None
        ),
    )


# ---------------------------------------------------------------------------
# Event / calendar mapping
# ---------------------------------------------------------------------------


def is_google_all_day(payload: dict[str, Any]) -> bool:
    """An event is all-day when its ``start`` carries ``date`` instead of ``dateTime``."""
    start = payload.get("start")
    if not isinstance(start, dict):
        return False
    date_time = start.get("dateTime")
    return not (isinstance(date_time, str) and date_time.strip())


def parse_google_event(
    payload: dict[str, Any],
    *,
    calendar: Calendar,
    account_id: str,
) -> CalendarEvent:
    event_id = _optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    all_day = is_google_all_day(payload)
    start, unresolved_start = parse_google_date(start_payload, all_day=all_day)
    end, unresolved_end = parse_google_date(end_payload, all_day=all_day)

    metadata = None
    if unresolved_start or unresolved_end:
        metadata = GoogleEventMetadata(
            unresolved_start_time_zone=unresolved_start,
            unresolved_end_time_zone=unresolved_end,
        )

    attendees_payload = payload.get("attendees")
    attendees = (
        [parse_google_attendee(entry) for entry in attendees_payload if isinstance(entry, dict)]
        if isinstance(attendees_payload, list)
        else []
    )

    return CalendarEvent(
        id=event_id,
        title=_optional_text(payload.get("summary")),
        description=_optional_text(payload.get("description")),
        start=start,
        end=end,
        all_day=all_day,
        location=_optional_text(payload.get("location")),
        status=_optional_text(payload.get("status")),
        attendees=attendees,
        url=_optional_text(payload.get("htmlLink")),
        read_only=calendar.read_only,
        provider_id=ProviderId.google,
        account_id=account_id,
        calendar_id=calendar.id,
        metadata=metadata,
    )


def to_google_event(
    event: CreateEventInput | UpdateEventInput,
    *,
    include_empty: bool = False,
) -> dict[str, Any]:
    """Translate canonical event input into a Google event body.

    With ``include_empty`` set, unset text fields are sent as ``null`` so that a
    full-body update clears them.
    """
    body: dict[str, Any] = {}
    if event.id is not None and not isinstance(event, UpdateEventInput):
        body["id"] = event.id
    for key, value in (
        ("summary", event.title),
        ("description", event.description),
        ("location", event.location),
    ):
        if value is not None or include_empty:
            body[key] = value
    body["start"] = to_google_date(event.start)
    body["end"] = to_google_date(event.end)
    return body


def parse_google_calendar_list_entry(entry: dict[str, Any], *, account_id: str) -> Calendar:
    calendar_id = _optional_text(entry.get("id"))
    if calendar_id is None:
        raise ValueError("Google Calendar calendar entry is missing an id")

    name = (
        _optional_text(entry.get("summaryOverride"))
        or _optional_text(entry.get("summary"))
        or calendar_id
    )
    return Calendar(
        id=calendar_id,
        provider_id=ProviderId.google,
        account_id=account_id,
        name=name,
        description=_optional_text(entry.get("description")),
        time_zone=_optional_text(entry.get("timeZone")),
        primary=entry.get("primary") is True,
        read_only=entry.get("accessRole") in READ_ONLY_ACCESS_ROLES,
        color=normalize_hex_color(entry.get("backgroundColor")),
    )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 adapter bound to one linked account and access token."""

    SUPPORTS_RESPONSE_COMMENT = False

    def __init__(
        self,
        *,
        access_token: str,
        account_id: str,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        page_size: int = DEFAULT_EVENT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_EVENT_PAGES,
    ) -> None:
        if page_size < 1 or max_pages < 1:
            raise ValueError("page_size and max_pages must be at least 1")
        self._account_id = account_id
        self._page_size = min(page_size, 2500)
        self._max_pages = max_pages
        self._http = ProviderHttpClient(
            base_url=base_url,
            access_token=access_token,
            http_client=http_client,
        )

    @property
    def provider_id(self) -> ProviderId:
        return ProviderId.google

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def supports_response_comment(self) -> bool:
        return self.SUPPORTS_RESPONSE_COMMENT

    async def _list_pages(
        self,
        path: str,
        params: dict[str, Any],
        *,
        max_pages: int,
    ) -> tuple[list[dict[str, Any]], bool]:
        """Follow ``nextPageToken``; returns the items and whether the cap was hit."""
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        for _ in range(max_pages):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = await self._http.request_json("GET", path, params=page_params)
            raw_items = payload.get("items", [])
            if not isinstance(raw_items, list):
                raise ValueError("Google Calendar list response has a non-list items field")
            items.extend(item for item in raw_items if isinstance(item, dict))
            page_token = _optional_text(payload.get("nextPageToken"))
            if page_token is None:
                return items, False
        return items, True

    async def calendars(self) -> list[Calendar]:
        async with provider_operation(self.provider_id, "calendars", account_id=self._account_id):
            entries, _ = await self._list_pages(
                "/users/me/calendarList",
                {},
                max_pages=MAX_CALENDAR_LIST_PAGES,
            )
            return [
                parse_google_calendar_list_entry(entry, account_id=self._account_id)
                for entry in entries
            ]

    async def create_calendar(self, calendar: CreateCalendarInput) -> Calendar:
        async with provider_operation(self.provider_id, "createCalendar"):
            body: dict[str, Any] = {"summary": calendar.name}
            if calendar.description is not None:
                body["description"] = calendar.description
            if calendar.time_zone is not None:
                body["timeZone"] = calendar.time_zone
            created = await self._http.request_json("POST", "/calendars", json_body=body)
            return parse_google_calendar_list_entry(created, account_id=self._account_id)

    async def update_calendar(self, calendar_id: str, calendar: UpdateCalendarInput) -> Calendar:
        async with provider_operation(self.provider_id, "updateCalendar", calendar_id=calendar_id):
            encoded_id = quote(calendar_id, safe="")
            body: dict[str, Any] = {}
            if calendar.name is not None:
                body["summary"] = calendar.name
            if calendar.description is not None:
                body["description"] = calendar.description
            if calendar.time_zone is not None:
                body["timeZone"] = calendar.time_zone
            if body:
                await self._http.request_json("PATCH", f"/calendars/{encoded_id}", json_body=body)

            # Colors live on the calendar list entry, not the calendar resource.
            list_entry_path = f"/users/me/calendarList/{encoded_id}"
            color = normalize_hex_color(calendar.color)
            if color is not None:
                entry = await self._http.request_json(
                    "PATCH",
                    list_entry_path,
                    params={"colorRgbFormat": True},
                    json_body={"backgroundColor": color},
                )
            else:
                entry = await self._http.request_json("GET", list_entry_path)
            return parse_google_calendar_list_entry(entry, account_id=self._account_id)

    async def delete_calendar(self, calendar_id: str) -> None:
        async with provider_operation(self.provider_id, "deleteCalendar", calendar_id=calendar_id):
            await self._http.request_json("DELETE", f"/calendars/{quote(calendar_id, safe='')}")

    async def events(
        self,
        calendar: Calendar,
        time_min: ZonedDateTime,
        time_max: ZonedDateTime,
    ) -> list[CalendarEvent]:
        async with provider_operation(self.provider_id, "events", calendar_id=calendar.id):
            params: dict[str, Any] = {
                "timeMin": format_utc(time_min.to_instant()),
                "timeMax": format_utc(time_max.to_instant()),
                "singleEvents": True,
                "orderBy": "startTime",
                "maxResults": self._page_size,
            }
            items, truncated = await self._list_pages(
                f"/calendars/{quote(calendar.id, safe='')}/events",
                params,
                max_pages=self._max_pages,
            )
            if truncated:
                logger.warning(
                    "Google Calendar events for calendar %s truncated after %d page(s)",
                    calendar.id,
                    self._max_pages,
                )
            return [
                parse_google_event(item, calendar=calendar, account_id=self._account_id)
                for item in items
            ]

    async def create_event(self, calendar: Calendar, event: CreateEventInput) -> CalendarEvent:
        async with provider_operation(self.provider_id, "createEvent", calendar_id=calendar.id):
            created = await self._http.request_json(
                "POST",
                f"/calendars/{quote(calendar.id, safe='')}/events",
                json_body=to_google_event(event),
            )
            return parse_google_event(created, calendar=calendar, account_id=self._account_id)

    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        event: UpdateEventInput,
    ) -> CalendarEvent:
        async with provider_operation(
            self.provider_id, "updateEvent", calendar_id=calendar.id, event_id=event_id
        ):
            path = f"/calendars/{quote(calendar.id, safe='')}/events/{quote(event_id, safe='')}"
            existing = await self._http.request_json("GET", path)
            body = {**existing, **to_google_event(event, include_empty=True)}
            updated = await self._http.request_json("PUT", path, json_body=body)
            return parse_google_event(updated, calendar=calendar, account_id=self._account_id)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        async with provider_operation(
            self.provider_id, "deleteEvent", calendar_id=calendar_id, event_id=event_id
        ):
            path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
            try:
                await self._http.request_json("DELETE", path)
            except ProviderHttpError as exc:
                # 410 Gone means the event was already deleted.
                if exc.status_code != 410:
                    raise
                logger.debug("delete_event: event '%s' already deleted", event_id)

    async def _republish_self_response(
        self,
        calendar_id: str,
        event_id: str,
        status: AttendeeStatus,
        *,
        insert_missing_self: bool,
    ) -> None:
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        event = await self._http.request_json("GET", path)

        attendees_payload = event.get("attendees")
        attendees = (
            [dict(entry) for entry in attendees_payload if isinstance(entry, dict)]
            if isinstance(attendees_payload, list)
            else []
        )
        self_index = next(
            (index for index, entry in enumerate(attendees) if entry.get("self") is True),
            None,
        )
        wire_status = to_google_attendee_response_status(status)
        if self_index is None:
            if not insert_missing_self:
                raise CalendarValidationError(
                    f"Event '{event_id}' has no self attendee; the caller is the organizer "
                    "or was not invited"
                )
            attendees.append({"self": True, "responseStatus": wire_status})
        else:
            attendees[self_index] = {**attendees[self_index], "responseStatus": wire_status}

        # Partial attendee updates are not supported: resend the whole list.
        await self._http.request_json(
            "PUT",
            path,
            params={"sendUpdates": "all"},
            json_body={**event, "attendees": attendees},
        )

    async def respond_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None:
        async with provider_operation(
            self.provider_id, "respondToEvent", calendar_id=calendar_id, event_id=event_id
        ):
            if response.comment is not None:
                raise CalendarValidationError(
                    "Google Calendar does not support comments when responding to an event"
                )
            await self._republish_self_response(
                calendar_id,
                event_id,
                AttendeeStatus(response.status),
                insert_missing_self=False,
            )

    async def accept_event(self, calendar_id: str, event_id: str) -> None:
        """Accept an invitation, adding a self attendee entry when none exists."""
        async with provider_operation(
            self.provider_id, "acceptEvent", calendar_id=calendar_id, event_id=event_id
        ):
            await self._republish_self_response(
                calendar_id,
                event_id,
                AttendeeStatus.accepted,
                insert_missing_self=True,
            )

    async def aclose(self) -> None:
        await self._http.aclose()
