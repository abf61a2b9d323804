"""Calendar, event, and linked-account endpoints."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from calendar_hub.api.models import ApiMeta, ApiResponse, SetDefaultCalendarRequest
from calendar_hub.errors import CalendarValidationError
from calendar_hub.models import (
    AccountSummary,
    CalendarEvent,
    CalendarListing,
    CreateEventInput,
    DefaultSelection,
    EventResponse,
    ProviderId,
    UpdateEventInput,
)
from calendar_hub.service import CalendarService
from calendar_hub.temporal import ZonedDateTime

router = APIRouter(prefix="/api", tags=["calendars"])
logger = logging.getLogger(__name__)


def get_calendar_service() -> CalendarService:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("CalendarService not initialized")


def get_current_user_id() -> str:
    """Dependency stub: overridden by the host application's session layer."""
    raise RuntimeError("User identity dependency not configured")


def _window(start: datetime, end: datetime, time_zone: str) -> tuple[ZonedDateTime, ZonedDateTime]:
    """Build the query window; naive bounds are wall time in *time_zone*."""
    try:
        window = (
            ZonedDateTime(value=start, time_zone=time_zone),
            ZonedDateTime(value=end, time_zone=time_zone),
        )
    except ValueError as exc:
        raise CalendarValidationError(f"Invalid event window: {exc}") from exc
    if window[1].to_instant() < window[0].to_instant():
        raise CalendarValidationError("end must not be earlier than start")
    return window


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


@router.get("/calendars", response_model=ApiResponse[CalendarListing])
async def list_calendars(
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[CalendarListing]:
    """Calendars of every linked account with the resolved default account/calendar.

    Accounts that could not be reached are listed with an ``error`` and
    counted in ``meta.failed_accounts``.
    """
    listing = await service.list_calendars(user_id)
    return ApiResponse[CalendarListing](
        data=listing,
        meta=ApiMeta(failed_accounts=len(listing.failures)),
    )


@router.get("/calendars/default", response_model=ApiResponse[DefaultSelection])
async def get_default_calendar(
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[DefaultSelection]:
    """The recorded default account/calendar pair; both are null when unset."""
    selection = await service.get_default_selection(user_id)
    return ApiResponse[DefaultSelection](data=selection)


@router.put("/calendars/default", response_model=ApiResponse[DefaultSelection])
async def set_default_calendar(
    request: SetDefaultCalendarRequest,
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[DefaultSelection]:
    await service.set_default_calendar(user_id, request.account_id, request.calendar_id)
    return ApiResponse[DefaultSelection](
        data=DefaultSelection(account_id=request.account_id, calendar_id=request.calendar_id)
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.get(
    "/accounts/{account_id}/calendars/{calendar_id}/events",
    response_model=ApiResponse[list[CalendarEvent]],
)
async def list_events(
    account_id: str,
    calendar_id: str,
    start: datetime = Query(description="Window start (inclusive)."),
    end: datetime = Query(description="Window end (exclusive)."),
    time_zone: str = Query(default="UTC", description="IANA zone for naive bounds."),
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[list[CalendarEvent]]:
    time_min, time_max = _window(start, end, time_zone)
    calendar = await service.get_calendar(user_id, account_id, calendar_id)
    events = await service.list_events(user_id, calendar, time_min, time_max)
    return ApiResponse[list[CalendarEvent]](data=events)


@router.post(
    "/accounts/{account_id}/calendars/{calendar_id}/events",
    response_model=ApiResponse[CalendarEvent],
    status_code=201,
)
async def create_event(
    account_id: str,
    calendar_id: str,
    event: CreateEventInput,
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[CalendarEvent]:
    calendar = await service.get_calendar(user_id, account_id, calendar_id)
    created = await service.create_event(user_id, calendar, event)
    return ApiResponse[CalendarEvent](data=created)


@router.put(
    "/accounts/{account_id}/calendars/{calendar_id}/events/{event_id}",
    response_model=ApiResponse[CalendarEvent],
)
async def update_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    event: UpdateEventInput,
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[CalendarEvent]:
    calendar = await service.get_calendar(user_id, account_id, calendar_id)
    updated = await service.update_event(user_id, calendar, event_id, event)
    return ApiResponse[CalendarEvent](data=updated)


@router.delete(
    "/accounts/{account_id}/calendars/{calendar_id}/events/{event_id}",
    response_model=ApiResponse[dict],
)
async def delete_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[dict]:
    await service.delete_event(user_id, account_id, calendar_id, event_id)
    return ApiResponse[dict](data={"event_id": event_id, "status": "deleted"})


@router.post(
    "/accounts/{account_id}/calendars/{calendar_id}/events/{event_id}/response",
    response_model=ApiResponse[dict],
)
async def respond_to_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    response: EventResponse,
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[dict]:
    await service.respond_to_event(user_id, account_id, calendar_id, event_id, response)
    return ApiResponse[dict](data={"event_id": event_id, "status": response.status})


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/accounts", response_model=ApiResponse[list[AccountSummary]])
async def list_accounts(
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[list[AccountSummary]]:
    accounts = await service.list_accounts(user_id)
    return ApiResponse[list[AccountSummary]](data=accounts)


@router.get("/accounts/default", response_model=ApiResponse[AccountSummary])
async def get_default_account(
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[AccountSummary]:
    """The default account; the newest linked account is assigned when none is recorded."""
    account = await service.get_default_account(user_id)
    return ApiResponse[AccountSummary](data=account)


@router.delete("/accounts/{account_id}", response_model=ApiResponse[dict])
async def unlink_account(
    account_id: str,
    provider_id: ProviderId = Query(description="Provider of the linked account."),
    service: CalendarService = Depends(get_calendar_service),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[dict]:
    """Unlink an account; the default selection is repaired when it pointed there."""
    await service.unlink_account(user_id, account_id, provider_id)
    return ApiResponse[dict](data={"account_id": account_id, "status": "unlinked"})
