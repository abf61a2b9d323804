"""Calendar provider contract implemented by every adapter.

Operations take and return canonical entities only. Every failure surfaces as
``ProviderError`` (remote failure) or ``CalendarValidationError`` (input
rejected before the network call).
"""

from __future__ import annotations

import abc

from calendar_hub.models import (
    Calendar,
    CalendarEvent,
    CreateCalendarInput,
    CreateEventInput,
    EventResponse,
    ProviderId,
    UpdateCalendarInput,
    UpdateEventInput,
)
from calendar_hub.temporal import ZonedDateTime

# Page size requested from every events endpoint.
DEFAULT_EVENT_PAGE_SIZE = 250
# Cursor pages followed per events() call before truncating.
DEFAULT_MAX_EVENT_PAGES = 4


class CalendarProvider(abc.ABC):
    """Capability interface for one external calendar service account."""

    # Class-level capability, readable before an adapter is constructed.
    SUPPORTS_RESPONSE_COMMENT: bool = False

    @property
    @abc.abstractmethod
    def provider_id(self) -> ProviderId:
        """Provider identifier (``google`` or ``microsoft``)."""
        ...

    @property
    @abc.abstractmethod
    def account_id(self) -> str:
        """Linked account that owns every calendar this adapter returns."""
        ...

    @property
    @abc.abstractmethod
    def supports_response_comment(self) -> bool:
        """Whether ``respond_to_event`` can carry a comment to the attendee list."""
        ...

    @abc.abstractmethod
    async def calendars(self) -> list[Calendar]:
        """List every calendar visible to the account."""
        ...

    @abc.abstractmethod
    async def create_calendar(self, calendar: CreateCalendarInput) -> Calendar:
        """Create a secondary calendar."""
        ...

    @abc.abstractmethod
    async def update_calendar(self, calendar_id: str, calendar: UpdateCalendarInput) -> Calendar:
        """Update calendar metadata."""
        ...

    @abc.abstractmethod
    async def delete_calendar(self, calendar_id: str) -> None:
        """Delete a calendar."""
        ...

    @abc.abstractmethod
    async def events(
        self,
        calendar: Calendar,
        time_min: ZonedDateTime,
        time_max: ZonedDateTime,
    ) -> list[CalendarEvent]:
        """Return events intersecting ``[time_min, time_max)``, ordered by start."""
        ...

    @abc.abstractmethod
    async def create_event(self, calendar: Calendar, event: CreateEventInput) -> CalendarEvent:
        """Create an event."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        event: UpdateEventInput,
    ) -> CalendarEvent:
        """Replace an event's writable fields."""
        ...

    @abc.abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event."""
        ...

    @abc.abstractmethod
    async def respond_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None:
        """Set the caller's own attendance response on an event they do not own.

        Raises ``CalendarValidationError`` when the caller has no self-attendee
        entry (organizer or not invited) or when a comment is supplied and
        ``supports_response_comment`` is False.
        """
        ...

    @abc.abstractmethod
    async def aclose(self) -> None:
        """Release HTTP resources owned by the adapter."""
        ...
