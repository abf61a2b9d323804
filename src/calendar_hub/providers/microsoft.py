"""Microsoft Graph calendar adapter.

Graph date-times are ``{"dateTime": "<local wall time>", "timeZone": "<zone>"}``
where the zone may be a legacy Windows name (``"Pacific Standard Time"``).
Zones are resolved to IANA ids on the way in and the original strings are kept
in ``MicrosoftEventMetadata`` so that writes reproduce them on the way out.
"""

from __future__ import annotations

import logging
from datetime import UTC, date
from typing import Any
from urllib.parse import quote

import httpx

from calendar_hub.colors import assign_color, normalize_hex_color
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
    MicrosoftEventMetadata,
    OriginalTimeZone,
    ProviderId,
    UpdateCalendarInput,
    UpdateEventInput,
)
from calendar_hub.providers._http import ProviderHttpClient, provider_operation
from calendar_hub.providers.base import (
    DEFAULT_EVENT_PAGE_SIZE,
    DEFAULT_MAX_EVENT_PAGES,
    CalendarProvider,
)
from calendar_hub.temporal import (
    Instant,
    PlainDate,
    ZonedDateTime,
    parse_iso_datetime,
)
from calendar_hub.timezones import resolve_time_zone

logger = logging.getLogger(__name__)

MICROSOFT_GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
# Graph rejects calendar list requests without an explicit $select.
CALENDAR_SELECT_FIELDS = (
    "id,name,isDefaultCalendar,canEdit,hexColor,isRemovable,owner,calendarPermissions"
)
GRAPH_FILTER_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
MAX_CALENDAR_LIST_PAGES = 10

_GRAPH_TO_ATTENDEE_STATUS = {
    "accepted": AttendeeStatus.accepted,
    "declined": AttendeeStatus.declined,
    "tentativelyAccepted": AttendeeStatus.tentative,
    "notResponded": AttendeeStatus.unknown,
    "none": AttendeeStatus.unknown,
    "organizer": AttendeeStatus.unknown,
}

_GRAPH_TO_ATTENDEE_TYPE = {
    "required": AttendeeType.required,
    "optional": AttendeeType.optional,
    "resource": AttendeeType.resource,
}

_RESPONSE_ACTIONS = {
    "accepted": "accept",
    "tentative": "tentativelyAccept",
    "declined": "decline",
}


def calendar_path(calendar_id: str) -> str:
    """Graph path for a calendar; ``primary`` addresses the default calendar."""
    if calendar_id == "primary":
        return "/me/calendar"
    return f"/me/calendars/{quote(calendar_id, safe='')}"


def event_response_action(status: str) -> str:
    """Graph action segment for a canonical response status."""
    try:
        return _RESPONSE_ACTIONS[status]
    except KeyError:
        raise CalendarValidationError(f"Unsupported event response status: {status!r}") from None


# ---------------------------------------------------------------------------
# Boundary mapping
# ---------------------------------------------------------------------------


def _original_zone(raw: Any) -> OriginalTimeZone | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    return OriginalTimeZone(raw=raw, parsed=resolve_time_zone(raw.strip()))


def to_microsoft_date(
    value: PlainDate | Instant | ZonedDateTime,
    original_time_zone: OriginalTimeZone | None = None,
) -> dict[str, str]:
    """Translate a canonical boundary into a Graph ``dateTimeTimeZone``.

    Zoned values are sent as wall time. When the value's zone is the one the
    original string resolved to, the original string is sent instead of the
    IANA id. An unresolved original string is only sent back for a UTC value
    when the wall time was read as UTC in place of that string.
    """
    if isinstance(value, PlainDate):
        return {
            "dateTime": value.isoformat(),
            "timeZone": original_time_zone.raw if original_time_zone else "UTC",
        }

    if isinstance(value, Instant):
        return {
            "dateTime": value.value.astimezone(UTC).replace(tzinfo=None).isoformat(),
            "timeZone": "UTC",
        }

    time_zone = value.time_zone
    if original_time_zone is not None:
        if original_time_zone.parsed == value.time_zone:
            time_zone = original_time_zone.raw
        elif original_time_zone.read_in_raw_zone and value.time_zone == "UTC":
            time_zone = original_time_zone.raw
    return {"dateTime": value.local_isoformat(), "timeZone": time_zone}


def _parse_graph_date(raw: str) -> date:
    text = raw.strip()
    if "T" in text:
        return parse_iso_datetime(text).date()
    return date.fromisoformat(text)


def parse_microsoft_date(
    payload: dict[str, Any],
    *,
    all_day: bool,
    original_time_zone: OriginalTimeZone | None = None,
) -> tuple[PlainDate | ZonedDateTime, OriginalTimeZone | None]:
    """Parse a Graph ``dateTimeTimeZone``.

    Returns the canonical value and the original-zone record to keep in
    metadata. The wall time is read in the wire ``timeZone``; the result is
    observed in the event's original zone when that zone resolves. Unknown
    zones fall back to UTC and are recorded with ``parsed`` left empty.
    """
    raw_date_time = payload.get("dateTime")
    if not isinstance(raw_date_time, str) or not raw_date_time.strip():
        raise ValueError("Microsoft Graph boundary is missing a dateTime value")

    if all_day:
        return PlainDate(value=_parse_graph_date(raw_date_time)), original_time_zone

    wire_zone = _original_zone(payload.get("timeZone"))
    wall_time = parse_iso_datetime(raw_date_time)
    if wall_time.tzinfo is not None:
        wall_time = wall_time.replace(tzinfo=None)

    record = original_time_zone
    if wire_zone is None:
        read_zone = "UTC"
    elif wire_zone.parsed is None:
        logger.warning(
            "Microsoft Graph returned unknown timeZone %r; reading the boundary as UTC",
            wire_zone.raw,
        )
        read_zone = "UTC"
        if record is None or record.raw == wire_zone.raw:
            record = wire_zone.model_copy(update={"read_in_raw_zone": True})
    else:
        read_zone = wire_zone.parsed

    value = ZonedDateTime(value=wall_time, time_zone=read_zone)
    if original_time_zone is not None and original_time_zone.parsed is not None:
        value = value.with_time_zone(original_time_zone.parsed)
    elif original_time_zone is not None:
        logger.warning(
            "Microsoft Graph returned unknown original timeZone %r; keeping %s",
            original_time_zone.raw,
            read_zone,
        )
    return value, record


# ---------------------------------------------------------------------------
# Attendee / event / calendar mapping
# ---------------------------------------------------------------------------


def parse_microsoft_attendee_status(value: Any) -> AttendeeStatus:
    if not isinstance(value, str):
        return AttendeeStatus.unknown
    return _GRAPH_TO_ATTENDEE_STATUS.get(value.strip(), AttendeeStatus.unknown)


def parse_microsoft_attendee_type(value: Any) -> AttendeeType:
    if not isinstance(value, str):
        return AttendeeType.required
    return _GRAPH_TO_ATTENDEE_TYPE.get(value.strip(), AttendeeType.required)


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def parse_microsoft_attendee(entry: dict[str, Any]) -> Attendee:
    email_address = entry.get("emailAddress")
    if not isinstance(email_address, dict):
        email_address = {}
    status = entry.get("status")
    response = status.get("response") if isinstance(status, dict) else None
    return Attendee(
        email=_optional_text(email_address.get("address")),
        name=_optional_text(email_address.get("name")),
        status=parse_microsoft_attendee_status(response),
        type=parse_microsoft_attendee_type(entry.get("type")),
    )


def parse_microsoft_event(
    payload: dict[str, Any],
    *,
    calendar: Calendar,
    account_id: str,
) -> CalendarEvent:
    event_id = _optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Microsoft Graph event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Microsoft Graph event '{event_id}' is missing start/end payloads")

    all_day = payload.get("isAllDay") is True
    start, start_zone = parse_microsoft_date(
        start_payload,
        all_day=all_day,
        original_time_zone=_original_zone(payload.get("originalStartTimeZone")),
    )
    end, end_zone = parse_microsoft_date(
        end_payload,
        all_day=all_day,
        original_time_zone=_original_zone(payload.get("originalEndTimeZone")),
    )

    metadata = None
    if start_zone is not None or end_zone is not None:
        metadata = MicrosoftEventMetadata(
            original_start_time_zone=start_zone,
            original_end_time_zone=end_zone,
        )

    location = payload.get("location")
    attendees_payload = payload.get("attendees")
    attendees = (
        [parse_microsoft_attendee(entry) for entry in attendees_payload if isinstance(entry, dict)]
        if isinstance(attendees_payload, list)
        else []
    )

    return CalendarEvent(
        id=event_id,
        title=_optional_text(payload.get("subject")),
        description=_optional_text(payload.get("bodyPreview")),
        start=start,
        end=end,
        all_day=all_day,
        location=(
            _optional_text(location.get("displayName")) if isinstance(location, dict) else None
        ),
        status=_optional_text(payload.get("showAs")),
        attendees=attendees,
        url=_optional_text(payload.get("webLink")),
        read_only=calendar.read_only,
        provider_id=ProviderId.microsoft,
        account_id=account_id,
        calendar_id=calendar.id,
        metadata=metadata,
    )


def to_microsoft_event(
    event: CreateEventInput | UpdateEventInput,
    *,
    include_empty: bool = False,
) -> dict[str, Any]:
    """Translate canonical event input into a Graph event body.

    With ``include_empty`` set, unset text fields are sent as empty values so that
    a PATCH clears them.
    """
    metadata = event.metadata if isinstance(event.metadata, MicrosoftEventMetadata) else None
    body: dict[str, Any] = {}
    if event.title is not None or include_empty:
        body["subject"] = event.title or ""
    if event.description is not None or include_empty:
        body["body"] = {"contentType": "text", "content": event.description or ""}
    if event.location is not None or include_empty:
        body["location"] = {"displayName": event.location or ""}
    body["start"] = to_microsoft_date(
        event.start,
        metadata.original_start_time_zone if metadata else None,
    )
    body["end"] = to_microsoft_date(
        event.end,
        metadata.original_end_time_zone if metadata else None,
    )
    body["isAllDay"] = event.is_all_day
    return body


def parse_microsoft_calendar(
    payload: dict[str, Any],
    *,
    account_id: str,
    index: int = 0,
) -> Calendar:
    """Map a Graph calendar; calendars without a color get one by list position."""
    calendar_id = _optional_text(payload.get("id"))
    if calendar_id is None:
        raise ValueError("Microsoft Graph calendar payload is missing an id")
    return Calendar(
        id=calendar_id,
        provider_id=ProviderId.microsoft,
        account_id=account_id,
        name=_optional_text(payload.get("name")) or calendar_id,
        primary=payload.get("isDefaultCalendar") is True,
        read_only=payload.get("canEdit") is False,
        color=normalize_hex_color(payload.get("hexColor")) or assign_color(index),
    )


def _reject_unsupported_calendar_fields(
    calendar: CreateCalendarInput | UpdateCalendarInput,
) -> None:
    unsupported = [
        field
        for field in ("description", "time_zone", "color")
        if getattr(calendar, field, None) is not None
    ]
    if unsupported:
        raise CalendarValidationError(
            "Microsoft Graph calendars do not support: " + ", ".join(unsupported)
        )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class MicrosoftCalendarProvider(CalendarProvider):
    """Microsoft Graph v1.0 adapter bound to one linked account and access token."""

    SUPPORTS_RESPONSE_COMMENT = True

    def __init__(
        self,
        *,
        access_token: str,
        account_id: str,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = MICROSOFT_GRAPH_API_BASE_URL,
        page_size: int = DEFAULT_EVENT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_EVENT_PAGES,
    ) -> None:
        if page_size < 1 or max_pages < 1:
            raise ValueError("page_size and max_pages must be at least 1")
        self._account_id = account_id
        self._page_size = page_size
        self._max_pages = max_pages
        self._http = ProviderHttpClient(
            base_url=base_url,
            access_token=access_token,
            http_client=http_client,
        )

    @property
    def provider_id(self) -> ProviderId:
        return ProviderId.microsoft

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
        """Follow ``@odata.nextLink``; returns the items and whether the cap was hit."""
        items: list[dict[str, Any]] = []
        next_path: str | None = path
        next_params: dict[str, Any] | None = params
        for _ in range(max_pages):
            payload = await self._http.request_json("GET", next_path, params=next_params)
            raw_items = payload.get("value", [])
            if not isinstance(raw_items, list):
                raise ValueError("Microsoft Graph list response has a non-list value field")
            items.extend(item for item in raw_items if isinstance(item, dict))
            next_path = _optional_text(payload.get("@odata.nextLink"))
            if next_path is None:
                return items, False
            # The next link already carries the query string.
            next_params = None
        return items, True

    async def calendars(self) -> list[Calendar]:
        async with provider_operation(self.provider_id, "calendars", account_id=self._account_id):
            entries, _ = await self._list_pages(
                "/me/calendars",
                {"$select": CALENDAR_SELECT_FIELDS},
                max_pages=MAX_CALENDAR_LIST_PAGES,
            )
            return [
                parse_microsoft_calendar(entry, account_id=self._account_id, index=index)
                for index, entry in enumerate(entries)
            ]

    async def create_calendar(self, calendar: CreateCalendarInput) -> Calendar:
        async with provider_operation(self.provider_id, "createCalendar"):
            _reject_unsupported_calendar_fields(calendar)
            created = await self._http.request_json(
                "POST", "/me/calendars", json_body={"name": calendar.name}
            )
            return parse_microsoft_calendar(created, account_id=self._account_id)

    async def update_calendar(self, calendar_id: str, calendar: UpdateCalendarInput) -> Calendar:
        async with provider_operation(self.provider_id, "updateCalendar", calendar_id=calendar_id):
            _reject_unsupported_calendar_fields(calendar)
            body: dict[str, Any] = {}
            if calendar.name is not None:
                body["name"] = calendar.name
            path = calendar_path(calendar_id)
            if body:
                updated = await self._http.request_json("PATCH", path, json_body=body)
            else:
                updated = await self._http.request_json(
                    "GET", path, params={"$select": CALENDAR_SELECT_FIELDS}
                )
            return parse_microsoft_calendar(updated, account_id=self._account_id)

    async def delete_calendar(self, calendar_id: str) -> None:
        async with provider_operation(self.provider_id, "deleteCalendar", calendar_id=calendar_id):
            await self._http.request_json("DELETE", calendar_path(calendar_id))

    async def events(
        self,
        calendar: Calendar,
        time_min: ZonedDateTime,
        time_max: ZonedDateTime,
    ) -> list[CalendarEvent]:
        async with provider_operation(self.provider_id, "events", calendar_id=calendar.id):
            start = time_min.to_instant().strftime(GRAPH_FILTER_DATETIME_FORMAT)
            end = time_max.to_instant().strftime(GRAPH_FILTER_DATETIME_FORMAT)
            params = {
                "$filter": f"start/dateTime lt '{end}' and end/dateTime gt '{start}'",
                "$orderby": "start/dateTime",
                "$top": self._page_size,
            }
            items, truncated = await self._list_pages(
                f"{calendar_path(calendar.id)}/events",
                params,
                max_pages=self._max_pages,
            )
            if truncated:
                logger.warning(
                    "Microsoft Graph events for calendar %s truncated after %d page(s)",
                    calendar.id,
                    self._max_pages,
                )
            return [
                parse_microsoft_event(item, calendar=calendar, account_id=self._account_id)
                for item in items
            ]

    async def create_event(self, calendar: Calendar, event: CreateEventInput) -> CalendarEvent:
        async with provider_operation(self.provider_id, "createEvent", calendar_id=calendar.id):
            created = await self._http.request_json(
                "POST",
                f"{calendar_path(calendar.id)}/events",
                json_body=to_microsoft_event(event),
            )
            return parse_microsoft_event(created, calendar=calendar, account_id=self._account_id)

    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        event: UpdateEventInput,
    ) -> CalendarEvent:
        async with provider_operation(
            self.provider_id, "updateEvent", calendar_id=calendar.id, event_id=event_id
        ):
            updated = await self._http.request_json(
                "PATCH",
                f"{calendar_path(calendar.id)}/events/{quote(event_id, safe='')}",
                json_body=to_microsoft_event(event, include_empty=True),
            )
            return parse_microsoft_event(updated, calendar=calendar, account_id=self._account_id)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        async with provider_operation(
            self.provider_id, "deleteEvent", calendar_id=calendar_id, event_id=event_id
        ):
            await self._http.request_json(
                "DELETE",
                f"{calendar_path(calendar_id)}/events/{quote(event_id, safe='')}",
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
            action = event_response_action(response.status)
            event_path = f"/me/events/{quote(event_id, safe='')}"
            event = await self._http.request_json(
                "GET", event_path, params={"$select": "id,isOrganizer"}
            )
            if event.get("isOrganizer") is True:
                raise CalendarValidationError(
                    f"Event '{event_id}' is organized by this account; organizers cannot respond"
                )

            body: dict[str, Any] = {"sendResponse": True}
            if response.comment is not None:
                body["comment"] = response.comment
            await self._http.request_json("POST", f"{event_path}/{action}", json_body=body)

    async def aclose(self) -> None:
        await self._http.aclose()
