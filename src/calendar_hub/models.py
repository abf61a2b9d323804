"""Canonical, provider-agnostic calendar domain model."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from calendar_hub.temporal import PlainDate, TemporalValue, ensure_not_before


class ProviderId(StrEnum):
    """External calendar services supported by the adapters."""

    google = "google"
    microsoft = "microsoft"


class AttendeeStatus(StrEnum):
    """Canonical attendee response state."""

    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"
    unknown = "unknown"


class AttendeeType(StrEnum):
    """Canonical attendee role."""

    required = "required"
    optional = "optional"
    resource = "resource"


ResponseStatus = Literal["accepted", "tentative", "declined"]


class Attendee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    email: str | None = None
    name: str | None = None
    status: AttendeeStatus = AttendeeStatus.unknown
    type: AttendeeType = AttendeeType.required
    # Google only
    comment: str | None = None
    additional_guests: int | None = None


class Calendar(BaseModel):
    """A container of events owned by one linked account."""

    id: str
    provider_id: ProviderId
    account_id: str
    name: str
    description: str | None = None
    time_zone: str | None = None
    primary: bool = False
    read_only: bool = False
    color: str | None = None


class OriginalTimeZone(BaseModel):
    """A zone string exactly as a provider supplied it, plus its IANA resolution."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    raw: str
    parsed: str | None = None
    # The wall time was read as UTC because this raw zone did not resolve.
    read_in_raw_zone: bool = False


class GoogleEventMetadata(BaseModel):
    """Google-scoped round-trip data (zones that could not be resolved)."""

    model_config = ConfigDict(extra="forbid")

    provider_id: Literal["google"] = "google"
    unresolved_start_time_zone: str | None = None
    unresolved_end_time_zone: str | None = None


class MicrosoftEventMetadata(BaseModel):
    """Graph-scoped round-trip data (original, possibly Windows, zone names)."""

    model_config = ConfigDict(extra="forbid")

    provider_id: Literal["microsoft"] = "microsoft"
    original_start_time_zone: OriginalTimeZone | None = None
    original_end_time_zone: OriginalTimeZone | None = None


EventMetadata = Annotated[
    GoogleEventMetadata | MicrosoftEventMetadata,
    Field(discriminator="provider_id"),
]


def _both_plain_dates(start: object, end: object) -> bool:
    return isinstance(start, PlainDate) and isinstance(end, PlainDate)


class CalendarEvent(BaseModel):
    """Canonical event shape produced by every provider adapter."""

    id: str
    title: str | None = None
    description: str | None = None
    start: TemporalValue
    end: TemporalValue
    all_day: bool = False
    location: str | None = None
    status: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    url: str | None = None
    color: str | None = None
    read_only: bool = False
    provider_id: ProviderId
    account_id: str
    calendar_id: str
    metadata: EventMetadata | None = None

    @model_validator(mode="after")
    def _validate_all_day(self) -> CalendarEvent:
        if self.all_day != _both_plain_dates(self.start, self.end):
            raise ValueError("all_day must be true exactly when start and end are both dates")
        return self


class CreateEventInput(BaseModel):
    """Canonical input for creating an event."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start: TemporalValue
    end: TemporalValue
    all_day: bool | None = None
    color: str | None = None
    metadata: EventMetadata | None = None

    @field_validator("title", "description", "location", "color")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode="after")
    def _validate_boundaries(self) -> CreateEventInput:
        ensure_not_before(self.start, self.end)
        both_dates = _both_plain_dates(self.start, self.end)
        if self.all_day is not None and self.all_day != both_dates:
            raise ValueError("all_day must be true exactly when start and end are both dates")
        return self

    @property
    def is_all_day(self) -> bool:
        return _both_plain_dates(self.start, self.end)


class UpdateEventInput(CreateEventInput):
    """Canonical input for replacing an existing event's writable fields."""


class CreateCalendarInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: str | None = None
    time_zone: str | None = None


class UpdateCalendarInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str | None = None
    time_zone: str | None = None
    color: str | None = None


class EventResponse(BaseModel):
    """The caller's own attendance response to an event they do not own."""

    model_config = ConfigDict(extra="forbid")

    status: ResponseStatus
    comment: str | None = None

    @field_validator("comment")
    @classmethod
    def _normalize_comment(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class LinkedAccount(BaseModel):
    """A user's linked external calendar account (owned by the account store)."""

    id: str
    user_id: str
    provider_id: ProviderId
    account_id: str
    email: str | None = None
    name: str | None = None
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def display_name(self) -> str:
        return self.email or self.name or self.account_id


class AccountSummary(BaseModel):
    """Token-free view of a linked account returned to callers."""

    id: str
    provider_id: ProviderId
    account_id: str
    email: str | None = None
    name: str | None = None

    @classmethod
    def from_account(cls, account: LinkedAccount) -> AccountSummary:
        return cls(
            id=account.id,
            provider_id=account.provider_id,
            account_id=account.account_id,
            email=account.email,
            name=account.name,
        )


class DefaultSelection(BaseModel):
    """The user's default account/calendar pair; always written together."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    account_id: str | None = None
    calendar_id: str | None = None


FailureKind = Literal["auth", "provider", "timeout"]


class AccountFailure(BaseModel):
    """One account (or calendar) that could not contribute to an aggregation."""

    account_id: str
    provider_id: ProviderId
    kind: FailureKind
    message: str
    code: str | None = None
    calendar_id: str | None = None


class AccountCalendars(BaseModel):
    id: str
    provider_id: ProviderId
    name: str
    calendars: list[Calendar] = Field(default_factory=list)
    error: AccountFailure | None = None


class CalendarListing(BaseModel):
    accounts: list[AccountCalendars]
    default_account: AccountSummary
    default_calendar: Calendar
    failures: list[AccountFailure] = Field(default_factory=list)


class EventListing(BaseModel):
    events: list[CalendarEvent] = Field(default_factory=list)
    failures: list[AccountFailure] = Field(default_factory=list)
