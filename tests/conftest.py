"""Shared fixtures: fake adapters, fake token providers and linked-account builders."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from calendar_hub.errors import AuthError, ProviderError
from calendar_hub.models import (
    Calendar,
    CalendarEvent,
    CreateCalendarInput,
    CreateEventInput,
    EventResponse,
    LinkedAccount,
    ProviderId,
    UpdateCalendarInput,
    UpdateEventInput,
)
from calendar_hub.providers.base import CalendarProvider
from calendar_hub.store import InMemoryAccountStore
from calendar_hub.temporal import ZonedDateTime
from calendar_hub.tokens import TokenProvider

_EPOCH = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


def make_account(
    account_id: str,
    *,
    user_id: str = "user-1",
    provider_id: ProviderId = ProviderId.google,
    age_days: int = 0,
    email: str | None = None,
) -> LinkedAccount:
    """Linked account created *age_days* after a fixed epoch."""
    return LinkedAccount(
        id=account_id,
        user_id=user_id,
        provider_id=provider_id,
        account_id=f"ext-{account_id}",
        email=email or f"{account_id}@example.com",
        access_token=f"stored-{account_id}",
        refresh_token=f"refresh-{account_id}",
        created_at=_EPOCH + timedelta(days=age_days),
    )


def make_calendar(
    calendar_id: str,
    account: LinkedAccount,
    *,
    primary: bool = False,
    read_only: bool = False,
) -> Calendar:
    return Calendar(
        id=calendar_id,
        provider_id=account.provider_id,
        account_id=account.id,
        name=calendar_id.title(),
        primary=primary,
        read_only=read_only,
    )


class FakeProvider(CalendarProvider):
    """In-memory adapter; *error* is raised from every operation when set."""

    def __init__(
        self,
        provider_id: ProviderId,
        account_id: str,
        *,
        calendars: list[Calendar] | None = None,
        events: dict[str, list[CalendarEvent]] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self._provider_id = provider_id
        self._account_id = account_id
        self.calendar_list = list(calendars or [])
        self.event_map = dict(events or {})
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.access_tokens: list[str] = []
        self.closed = 0

    @property
    def provider_id(self) -> ProviderId:
        return self._provider_id

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def supports_response_comment(self) -> bool:
        return self._provider_id == ProviderId.microsoft

    async def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def calendars(self) -> list[Calendar]:
        await self._call("calendars")
        return list(self.calendar_list)

    async def create_calendar(self, calendar: CreateCalendarInput) -> Calendar:
        await self._call("create_calendar", calendar)
        created = Calendar(
            id=f"cal-{len(self.calendar_list) + 1}",
            provider_id=self._provider_id,
            account_id=self._account_id,
            name=calendar.name,
        )
        self.calendar_list.append(created)
        return created

    async def update_calendar(self, calendar_id: str, calendar: UpdateCalendarInput) -> Calendar:
        await self._call("update_calendar", calendar_id, calendar)
        existing = next(c for c in self.calendar_list if c.id == calendar_id)
        return existing.model_copy(update={"name": calendar.name or existing.name})

    async def delete_calendar(self, calendar_id: str) -> None:
        await self._call("delete_calendar", calendar_id)
        self.calendar_list = [c for c in self.calendar_list if c.id != calendar_id]

    async def events(
        self,
        calendar: Calendar,
        time_min: ZonedDateTime,
        time_max: ZonedDateTime,
    ) -> list[CalendarEvent]:
        await self._call("events", calendar.id, time_min, time_max)
        return list(self.event_map.get(calendar.id, []))

    async def create_event(self, calendar: Calendar, event: CreateEventInput) -> CalendarEvent:
        await self._call("create_event", calendar.id, event)
        return CalendarEvent(
            id="evt-new",
            title=event.title,
            start=event.start,
            end=event.end,
            all_day=event.is_all_day,
            provider_id=self._provider_id,
            account_id=self._account_id,
            calendar_id=calendar.id,
        )

    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        event: UpdateEventInput,
    ) -> CalendarEvent:
        await self._call("update_event", calendar.id, event_id, event)
        return CalendarEvent(
            id=event_id,
            title=event.title,
            start=event.start,
            end=event.end,
            all_day=event.is_all_day,
            provider_id=self._provider_id,
            account_id=self._account_id,
            calendar_id=calendar.id,
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._call("delete_event", calendar_id, event_id)

    async def respond_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None:
        await self._call("respond_to_event", calendar_id, event_id, response)

    async def aclose(self) -> None:
        self.closed += 1


class FakeProviderFactory:
    """Provider factory returning the pre-registered ``FakeProvider`` per account."""

    def __init__(self) -> None:
        self.providers: dict[str, FakeProvider] = {}
        self.created: list[dict[str, Any]] = []

    def register(self, account: LinkedAccount, **kwargs: Any) -> FakeProvider:
        provider = FakeProvider(account.provider_id, account.id, **kwargs)
        self.providers[account.id] = provider
        return provider

    def __call__(
        self,
        provider_id: ProviderId,
        *,
        access_token: str,
        account_id: str,
        **kwargs: Any,
    ) -> FakeProvider:
        self.created.append(
            {"provider_id": provider_id, "access_token": access_token, "account_id": account_id}
        )
        provider = self.providers[account_id]
        provider.access_tokens.append(access_token)
        return provider


class FakeTokenProvider(TokenProvider):
    """Returns ``token-<account>``; accounts in *failing* raise ``AuthError``."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = set(failing or ())
        self.requests: list[tuple[str, ProviderId, str]] = []
        self.invalidated: list[str] = []

    async def get_access_token(
        self,
        account_id: str,
        provider_id: ProviderId,
        user_id: str,
    ) -> str:
        self.requests.append((account_id, provider_id, user_id))
        if account_id in self.failing:
            raise AuthError("refresh token revoked", account_id=account_id)
        return f"token-{account_id}"

    def invalidate(self, account_id: str) -> None:
        self.invalidated.append(account_id)


def provider_failure(operation: str = "calendars") -> ProviderError:
    return ProviderError(
        "Backend unavailable",
        operation=operation,
        code="HTTP_500",
        provider_id="google",
    )


@pytest.fixture
def store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def tokens() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def factory() -> FakeProviderFactory:
    return FakeProviderFactory()
