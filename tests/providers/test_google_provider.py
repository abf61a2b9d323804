"""Tests for the Google Calendar adapter (mapping functions and HTTP behaviour).

All HTTP calls go through ``httpx.MockTransport``; no network access.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, date, datetime

import httpx
import pytest

from calendar_hub.errors import CalendarValidationError, ProviderError
from calendar_hub.models import (
    AttendeeStatus,
    AttendeeType,
    Calendar,
    CreateCalendarInput,
    CreateEventInput,
    EventResponse,
    ProviderId,
    UpdateCalendarInput,
    UpdateEventInput,
)
from calendar_hub.providers.google import (
    GoogleCalendarProvider,
    is_google_all_day,
    parse_google_attendee,
    parse_google_attendee_status,
    parse_google_calendar_list_entry,
    parse_google_date,
    parse_google_event,
    to_google_attendee_response_status,
    to_google_date,
    to_google_event,
)
from calendar_hub.temporal import Instant, PlainDate, ZonedDateTime

pytestmark = pytest.mark.unit

_CALENDAR = Calendar(
    id="primary",
    provider_id=ProviderId.google,
    account_id="acc-g",
    name="Me",
    primary=True,
)


def _provider(handler, **kwargs) -> tuple[GoogleCalendarProvider, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    provider = GoogleCalendarProvider(
        access_token="ya29.test",
        account_id="acc-g",
        http_client=http_client,
        **kwargs,
    )
    return provider, requests


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def _timed_event(event_id: str = "evt-1", **overrides) -> dict:
    payload = {
        "id": event_id,
        "summary": "Planning",
        "start": {"dateTime": "2026-03-10T09:00:00+01:00", "timeZone": "Europe/Berlin"},
        "end": {"dateTime": "2026-03-10T10:00:00+01:00", "timeZone": "Europe/Berlin"},
        "htmlLink": "https://calendar.google.com/event?eid=1",
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Boundary mapping
# ---------------------------------------------------------------------------


class TestGoogleDates:
    def test_plain_date(self):
        assert to_google_date(PlainDate(value=date(2026, 3, 10))) == {"date": "2026-03-10"}

    def test_instant(self):
        value = Instant(value=datetime(2026, 3, 10, 8, tzinfo=UTC))
        assert to_google_date(value) == {"dateTime": "2026-03-10T08:00:00Z"}

    def test_zoned_carries_offset_and_zone(self):
        value = ZonedDateTime(value=datetime(2026, 3, 10, 9), time_zone="Europe/Berlin")
        assert to_google_date(value) == {
            "dateTime": "2026-03-10T09:00:00+01:00",
            "timeZone": "Europe/Berlin",
        }

    def test_parse_zoned(self):
        value, unresolved = parse_google_date(
            {"dateTime": "2026-03-10T08:00:00Z", "timeZone": "Europe/Berlin"},
            all_day=False,
        )
        assert isinstance(value, ZonedDateTime)
        assert value.local_isoformat() == "2026-03-10T09:00:00"
        assert unresolved is None

    def test_parse_without_zone_is_instant(self):
        value, _ = parse_google_date({"dateTime": "2026-03-10T08:00:00Z"}, all_day=False)
        assert isinstance(value, Instant)

    def test_parse_unknown_zone_degrades_to_instant(self, caplog):
        with caplog.at_level(logging.WARNING, logger="calendar_hub.providers.google"):
            value, unresolved = parse_google_date(
                {"dateTime": "2026-03-10T08:00:00Z", "timeZone": "Mars/Olympus"},
                all_day=False,
            )
        assert isinstance(value, Instant)
        assert unresolved == "Mars/Olympus"
        assert "Mars/Olympus" in caplog.text

    def test_parse_all_day_requires_date(self):
        with pytest.raises(ValueError, match="missing a date"):
            parse_google_date({"dateTime": "2026-03-10T08:00:00Z"}, all_day=True)

    def test_boundaries_round_trip(self):
        for value in (
            PlainDate(value=date(2026, 3, 10)),
            ZonedDateTime(value=datetime(2026, 3, 10, 9), time_zone="America/New_York"),
        ):
            parsed, _ = parse_google_date(
                to_google_date(value), all_day=isinstance(value, PlainDate)
            )
            assert parsed == value


# ---------------------------------------------------------------------------
# Attendees
# ---------------------------------------------------------------------------


class TestGoogleAttendees:
    @pytest.mark.parametrize(
        ("wire", "expected"),
        [
            ("accepted", AttendeeStatus.accepted),
            ("declined", AttendeeStatus.declined),
            ("tentative", AttendeeStatus.tentative),
            ("needsAction", AttendeeStatus.unknown),
            ("somethingNew", AttendeeStatus.unknown),
            (None, AttendeeStatus.unknown),
        ],
    )
    def test_status_mapping_is_total(self, wire, expected):
        assert parse_google_attendee_status(wire) == expected

    def test_unknown_status_written_as_needs_action(self):
        assert to_google_attendee_response_status(AttendeeStatus.unknown) == "needsAction"
        assert to_google_attendee_response_status(AttendeeStatus.declined) == "declined"

    def test_attendee_fields(self):
        attendee = parse_google_attendee(
            {
                "email": "room@example.com",
                "displayName": "Room 1",
                "resource": True,
                "optional": True,
                "responseStatus": "accepted",
                "additionalGuests": 2,
                "comment": " see you ",
            }
        )
        assert attendee.type == AttendeeType.resource
        assert attendee.name == "Room 1"
        assert attendee.additional_guests == 2
        assert attendee.comment == "see you"

    def test_optional_attendee(self):
        assert parse_google_attendee({"optional": True}).type == AttendeeType.optional


# ---------------------------------------------------------------------------
# Events and calendars
# ---------------------------------------------------------------------------


class TestGoogleEventMapping:
    def test_all_day_detected_from_missing_datetime(self):
        payload = {
            "id": "evt-1",
            "start": {"date": "2026-03-10"},
            "end": {"date": "2026-03-11"},
        }
        assert is_google_all_day(payload) is True
        event = parse_google_event(payload, calendar=_CALENDAR, account_id="acc-g")
        assert event.all_day is True
        assert event.start == PlainDate(value=date(2026, 3, 10))

    def test_timed_event(self):
        event = parse_google_event(_timed_event(), calendar=_CALENDAR, account_id="acc-g")
        assert event.all_day is False
        assert event.title == "Planning"
        assert event.url == "https://calendar.google.com/event?eid=1"
        assert event.provider_id == ProviderId.google
        assert event.calendar_id == "primary"
        assert event.metadata is None

    def test_unresolved_zone_recorded_in_metadata(self):
        payload = _timed_event(
            start={"dateTime": "2026-03-10T08:00:00Z", "timeZone": "Mars/Olympus"},
        )
        event = parse_google_event(payload, calendar=_CALENDAR, account_id="acc-g")
        assert event.metadata.provider_id == "google"
        assert event.metadata.unresolved_start_time_zone == "Mars/Olympus"
        assert event.metadata.unresolved_end_time_zone is None

    def test_read_only_inherited_from_calendar(self):
        calendar = _CALENDAR.model_copy(update={"read_only": True})
        event = parse_google_event(_timed_event(), calendar=calendar, account_id="acc-g")
        assert event.read_only is True

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError, match="id"):
            parse_google_event(_timed_event(id=""), calendar=_CALENDAR, account_id="acc-g")

    def test_to_google_event_create(self):
        event = CreateEventInput(
            id="custom1",
            title="Lunch",
            start=PlainDate(value=date(2026, 3, 10)),
            end=PlainDate(value=date(2026, 3, 11)),
        )
        assert to_google_event(event) == {
            "id": "custom1",
            "summary": "Lunch",
            "start": {"date": "2026-03-10"},
            "end": {"date": "2026-03-11"},
        }

    def test_to_google_event_update_clears_text(self):
        event = UpdateEventInput(
            id="ignored",
            start=PlainDate(value=date(2026, 3, 10)),
            end=PlainDate(value=date(2026, 3, 11)),
        )
        body = to_google_event(event, include_empty=True)
        assert "id" not in body
        assert body["summary"] is None
        assert body["description"] is None


class TestGoogleCalendarMapping:
    def test_calendar_list_entry(self):
        calendar = parse_google_calendar_list_entry(
            {
                "id": "team@group.calendar.google.com",
                "summary": "Team",
                "summaryOverride": "My team",
                "backgroundColor": "#9fe1e7",
                "accessRole": "reader",
                "timeZone": "Europe/Berlin",
            },
            account_id="acc-g",
        )
        assert calendar.name == "My team"
        assert calendar.color == "#9FE1E7"
        assert calendar.read_only is True
        assert calendar.primary is False
        assert calendar.time_zone == "Europe/Berlin"

    @pytest.mark.parametrize("role", ["owner", "writer"])
    def test_writable_roles(self, role):
        calendar = parse_google_calendar_list_entry(
            {"id": "c", "accessRole": role, "primary": True}, account_id="acc-g"
        )
        assert calendar.read_only is False
        assert calendar.primary is True
        assert calendar.name == "c"


# ---------------------------------------------------------------------------
# Provider over HTTP
# ---------------------------------------------------------------------------


class TestGoogleCalendars:
    async def test_follows_calendar_list_pages(self):
        pages = {
            None: {"items": [{"id": "primary", "primary": True}], "nextPageToken": "p2"},
            "p2": {"items": [{"id": "holidays", "accessRole": "reader"}]},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/calendar/v3/users/me/calendarList"
            return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

        provider, requests = _provider(handler)
        calendars = await provider.calendars()

        assert [c.id for c in calendars] == ["primary", "holidays"]
        assert calendars[1].read_only is True
        assert len(requests) == 2
        assert requests[0].headers["Authorization"] == "Bearer ya29.test"

    async def test_create_calendar(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert _body(request) == {"summary": "Trips", "timeZone": "Europe/Berlin"}
            return httpx.Response(200, json={"id": "trips-id", "summary": "Trips"})

        provider, _ = _provider(handler)
        calendar = await provider.create_calendar(
            CreateCalendarInput(name="Trips", time_zone="Europe/Berlin")
        )
        assert calendar.id == "trips-id"
        assert calendar.account_id == "acc-g"

    async def test_update_calendar_color_patches_list_entry(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/calendar/v3/calendars/work":
                assert _body(request) == {"summary": "Work"}
                return httpx.Response(200, json={"id": "work", "summary": "Work"})
            assert request.url.path == "/calendar/v3/users/me/calendarList/work"
            assert request.method == "PATCH"
            assert request.url.params["colorRgbFormat"] == "true"
            assert _body(request) == {"backgroundColor": "#00C950"}
            return httpx.Response(
                200, json={"id": "work", "summary": "Work", "backgroundColor": "#00c950"}
            )

        provider, requests = _provider(handler)
        calendar = await provider.update_calendar(
            "work", UpdateCalendarInput(name="Work", color="#00c950")
        )
        assert calendar.color == "#00C950"
        assert len(requests) == 2


class TestGoogleEvents:
    async def test_window_and_paging_parameters(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"items": [_timed_event()]})

        provider, requests = _provider(handler)
        time_min = ZonedDateTime(value=datetime(2026, 3, 10, 0, 0), time_zone="Europe/Berlin")
        time_max = ZonedDateTime(value=datetime(2026, 3, 11, 0, 0), time_zone="Europe/Berlin")
        events = await provider.events(_CALENDAR, time_min, time_max)

        params = requests[0].url.params
        assert requests[0].url.path == "/calendar/v3/calendars/primary/events"
        assert params["timeMin"] == "2026-03-09T23:00:00Z"
        assert params["timeMax"] == "2026-03-10T23:00:00Z"
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"
        assert params["maxResults"] == "250"
        assert [e.id for e in events] == ["evt-1"]

    async def test_truncates_after_max_pages(self, caplog):
        counter = iter(range(100))

        def handler(request: httpx.Request) -> httpx.Response:
            n = next(counter)
            return httpx.Response(
                200,
                json={"items": [_timed_event(f"evt-{n}")], "nextPageToken": f"page-{n + 1}"},
            )

        provider, requests = _provider(handler, page_size=1, max_pages=3)
        window = ZonedDateTime(value=datetime(2026, 3, 10), time_zone="UTC")
        with caplog.at_level(logging.WARNING, logger="calendar_hub.providers.google"):
            events = await provider.events(_CALENDAR, window, window)

        assert len(events) == 3
        assert len(requests) == 3
        assert requests[2].url.params["pageToken"] == "page-2"
        assert "truncated" in caplog.text

    async def test_not_found_becomes_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                404, json={"error": {"code": 404, "message": "Not Found", "status": "NOT_FOUND"}}
            )

        provider, _ = _provider(handler)
        window = ZonedDateTime(value=datetime(2026, 3, 10), time_zone="UTC")
        with pytest.raises(ProviderError) as exc_info:
            await provider.events(_CALENDAR, window, window)

        assert exc_info.value.operation == "events"
        assert exc_info.value.code == "NOT_FOUND"
        assert exc_info.value.context == {"calendar_id": "primary"}

    async def test_update_event_preserves_other_fields(self):
        existing = _timed_event(
            attendees=[{"email": "a@example.com", "responseStatus": "accepted"}],
            description="old notes",
        )

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=existing)
            return httpx.Response(200, json=_body(request))

        provider, requests = _provider(handler)
        event = await provider.update_event(
            _CALENDAR,
            "evt-1",
            UpdateEventInput(
                title="Renamed",
                start=PlainDate(value=date(2026, 3, 12)),
                end=PlainDate(value=date(2026, 3, 13)),
            ),
        )

        sent = _body(requests[1])
        assert requests[1].method == "PUT"
        assert sent["summary"] == "Renamed"
        assert sent["description"] is None
        assert sent["attendees"] == existing["attendees"]
        assert sent["start"] == {"date": "2026-03-12"}
        assert event.all_day is True

    async def test_delete_already_gone_is_ignored(self):
        provider, requests = _provider(lambda request: httpx.Response(410, text="Gone"))
        await provider.delete_event("primary", "evt-1")
        assert requests[0].method == "DELETE"


class TestGoogleRespondToEvent:
    def _invitation(self) -> dict:
        return _timed_event(
            attendees=[
                {"email": "boss@example.com", "organizer": True, "responseStatus": "accepted"},
                {"email": "me@example.com", "self": True, "responseStatus": "needsAction"},
                {"email": "peer@example.com", "responseStatus": "tentative", "comment": "maybe"},
            ]
        )

    async def test_decline_changes_only_self_entry(self):
        invitation = self._invitation()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=invitation)
            return httpx.Response(200, json=_body(request))

        provider, requests = _provider(handler)
        await provider.respond_to_event("primary", "evt-1", EventResponse(status="declined"))

        put = requests[1]
        assert put.method == "PUT"
        assert put.url.params["sendUpdates"] == "all"
        attendees = _body(put)["attendees"]
        assert len(attendees) == 3
        assert attendees[0] == invitation["attendees"][0]
        assert attendees[1] == {**invitation["attendees"][1], "responseStatus": "declined"}
        assert attendees[2] == invitation["attendees"][2]

    async def test_comment_rejected_before_network(self):
        provider, requests = _provider(lambda request: httpx.Response(200, json={}))
        with pytest.raises(CalendarValidationError, match="comments"):
            await provider.respond_to_event(
                "primary", "evt-1", EventResponse(status="accepted", comment="On my way")
            )
        assert requests == []

    async def test_no_self_attendee_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_timed_event(attendees=[{"email": "x@example.com"}]))

        provider, requests = _provider(handler)
        with pytest.raises(CalendarValidationError, match="no self attendee"):
            await provider.respond_to_event("primary", "evt-1", EventResponse(status="accepted"))
        assert [r.method for r in requests] == ["GET"]

    async def test_accept_does_not_duplicate_self(self):
        invitation = self._invitation()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=invitation)
            return httpx.Response(200, json=_body(request))

        provider, requests = _provider(handler)
        await provider.accept_event("primary", "evt-1")

        attendees = _body(requests[1])["attendees"]
        assert len(attendees) == 3
        assert sum(1 for a in attendees if a.get("self")) == 1
        assert attendees[1]["responseStatus"] == "accepted"

    async def test_accept_inserts_missing_self(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=_timed_event())
            return httpx.Response(200, json=_body(request))

        provider, requests = _provider(handler)
        await provider.accept_event("primary", "evt-1")

        assert _body(requests[1])["attendees"] == [{"self": True, "responseStatus": "accepted"}]

    def test_capability_flag(self):
        provider, _ = _provider(lambda request: httpx.Response(200, json={}))
        assert provider.supports_response_comment is False
