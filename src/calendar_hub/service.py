"""Calendar aggregation service: the API the rest of the application calls.

Every per-account fetch runs in its own task, bounded by a timeout. A failing
account contributes an empty result plus an ``AccountFailure``; it never aborts
the aggregation for the other accounts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import httpx

from calendar_hub.accounts import AccountResolver, AuthorizedAccount
from calendar_hub.config import CalendarHubConfig
from calendar_hub.core.logging import account_context
from calendar_hub.errors import (
    AccountsUnavailableError,
    AuthError,
    CalendarHubError,
    CalendarValidationError,
    NoLinkedAccountsError,
    NotFoundError,
    PartialAggregationError,
    ProviderError,
    sanitize_error_message,
)
from calendar_hub.models import (
    AccountCalendars,
    AccountFailure,
    AccountSummary,
    Calendar,
    CalendarEvent,
    CalendarListing,
    CreateCalendarInput,
    CreateEventInput,
    DefaultSelection,
    EventListing,
    EventResponse,
    FailureKind,
    LinkedAccount,
    ProviderId,
    UpdateCalendarInput,
    UpdateEventInput,
)
from calendar_hub.providers import (
    CalendarProvider,
    ProviderFactory,
    create_provider,
    provider_supports_response_comment,
)
from calendar_hub.providers.base import DEFAULT_EVENT_PAGE_SIZE, DEFAULT_MAX_EVENT_PAGES
from calendar_hub.store import AccountStore
from calendar_hub.temporal import ZonedDateTime, to_instant
from calendar_hub.tokens import TokenProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ACCOUNT_TIMEOUT_SECONDS = 15.0
# Conditional writes of the default pair retried before giving up.
MAX_DEFAULT_WRITE_ATTEMPTS = 3


def _failure_from(
    exc: BaseException,
    account: LinkedAccount,
    *,
    calendar_id: str | None = None,
) -> AccountFailure:
    kind: FailureKind
    code: str | None = None
    if isinstance(exc, AuthError):
        kind = "auth"
        message = str(exc)
    elif isinstance(exc, ProviderError):
        kind = "provider"
        message = exc.message
        code = exc.code
    elif isinstance(exc, TimeoutError):
        kind = "timeout"
        message = "Calendar service did not answer in time"
        code = "TIMEOUT"
    else:
        kind = "provider"
        message = f"Unexpected error: {type(exc).__name__}"
        code = "UNKNOWN_ERROR"
    return AccountFailure(
        account_id=account.id,
        provider_id=account.provider_id,
        kind=kind,
        message=sanitize_error_message(message),
        code=code,
        calendar_id=calendar_id,
    )


class CalendarService:
    """Aggregates calendars and events across a user's linked accounts."""

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenProvider,
        *,
        provider_factory: ProviderFactory = create_provider,
        account_timeout_seconds: float = DEFAULT_ACCOUNT_TIMEOUT_SECONDS,
        strict: bool = False,
        event_page_size: int = DEFAULT_EVENT_PAGE_SIZE,
        max_event_pages: int = DEFAULT_MAX_EVENT_PAGES,
        api_base_urls: dict[ProviderId, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._resolver = AccountResolver(store, tokens)
        self._provider_factory = provider_factory
        self._account_timeout_seconds = account_timeout_seconds
        self._strict = strict
        self._event_page_size = event_page_size
        self._max_event_pages = max_event_pages
        self._api_base_urls = dict(api_base_urls or {})
        self._http_client = http_client

    @classmethod
    def from_config(
        cls,
        config: CalendarHubConfig,
        store: AccountStore,
        tokens: TokenProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> CalendarService:
        return cls(
            store,
            tokens,
            account_timeout_seconds=config.aggregation.account_timeout_seconds,
            strict=config.aggregation.strict,
            event_page_size=config.events.page_size,
            max_event_pages=config.events.max_pages,
            api_base_urls={
                provider_id: provider.api_base_url
                for provider_id, provider in config.providers.items()
                if provider.api_base_url
            },
            http_client=http_client,
        )

    @property
    def accounts(self) -> AccountResolver:
        return self._resolver

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _provider(self, authorized: AuthorizedAccount) -> AsyncIterator[CalendarProvider]:
        account = authorized.account
        provider = self._provider_factory(
            account.provider_id,
            access_token=authorized.access_token,
            account_id=account.id,
            http_client=self._http_client,
            base_url=self._api_base_urls.get(account.provider_id),
            page_size=self._event_page_size,
            max_pages=self._max_event_pages,
        )
        try:
            yield provider
        finally:
            await provider.aclose()

    async def _require_account(self, user_id: str, account_id: str) -> LinkedAccount:
        account = await self._store.get_account(user_id, account_id)
        if account is None:
            raise NotFoundError(f"Linked account '{account_id}' not found")
        return account

    async def _run_for_account(
        self,
        account: LinkedAccount,
        operation: Callable[[CalendarProvider], Awaitable[T]],
    ) -> T:
        """Resolve a token, open the adapter, and run *operation* against it."""
        with account_context(account.id):
            authorized = await self._resolver.with_access_token(account)
            async with self._provider(authorized) as provider:
                return await operation(provider)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._account_timeout_seconds)

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def _fetch_account_calendars(self, account: LinkedAccount) -> AccountCalendars:
        result = AccountCalendars(
            id=account.id,
            provider_id=account.provider_id,
            name=account.display_name,
        )
        try:
            calendars = await self._bounded(
                self._run_for_account(account, lambda provider: provider.calendars())
            )
        except (AuthError, ProviderError, TimeoutError) as exc:
            failure = _failure_from(exc, account)
            logger.warning(
                "Calendar listing failed for account %s (%s): kind=%s code=%s error=%s",
                account.id,
                account.provider_id,
                failure.kind,
                failure.code,
                failure.message,
            )
            result.error = failure
            return result
        except Exception as exc:
            logger.error(
                "Calendar listing failed unexpectedly for account %s (%s)",
                account.id,
                account.provider_id,
                exc_info=True,
            )
            result.error = _failure_from(exc, account)
            return result

        result.calendars = calendars
        return result

    async def list_calendars(self, user_id: str) -> CalendarListing:
        """Calendars of every linked account plus the resolved defaults.

        Raises
        ------
        NoLinkedAccountsError
            The user has no linked accounts.
        AccountsUnavailableError
            No default calendar resolves and at least one account failed.
        NotFoundError
            Every account answered and no default calendar resolves.
        PartialAggregationError
            Strict mode only: some accounts failed.
        """
        accounts = await self._resolver.list_accounts(user_id)
        if not accounts:
            raise NoLinkedAccountsError(f"User '{user_id}' has no linked calendar accounts")

        groups = list(
            await asyncio.gather(*(self._fetch_account_calendars(account) for account in accounts))
        )
        failures = [group.error for group in groups if group.error is not None]

        selection = await self._store.get_default_selection(user_id)
        by_id = {account.id: account for account in accounts}
        default_account = by_id.get(selection.account_id or "", accounts[0])

        all_calendars = [calendar for group in groups for calendar in group.calendars]
        default_calendar = None
        if selection.calendar_id is not None:
            default_calendar = next(
                (
                    calendar
                    for calendar in all_calendars
                    if calendar.id == selection.calendar_id
                    and selection.account_id in (None, calendar.account_id)
                ),
                None,
            )
        if default_calendar is None:
            default_calendar = next(
                (
                    calendar
                    for calendar in all_calendars
                    if calendar.account_id == default_account.id and calendar.primary
                ),
                None,
            )

        if default_calendar is None:
            if failures:
                raise AccountsUnavailableError(
                    "Default calendar could not be resolved because "
                    f"{len(failures)} linked account(s) are unreachable",
                    failures=failures,
                )
            raise NotFoundError(f"No default calendar found for user '{user_id}'")

        listing = CalendarListing(
            accounts=groups,
            default_account=AccountSummary.from_account(default_account),
            default_calendar=default_calendar,
            failures=failures,
        )
        if failures and self._strict:
            raise PartialAggregationError(listing)
        return listing

    async def _live_calendars(self, account: LinkedAccount) -> list[Calendar]:
        return await self._run_for_account(account, lambda provider: provider.calendars())

    async def get_calendar(self, user_id: str, account_id: str, calendar_id: str) -> Calendar:
        """Look up one calendar in the account's live calendar list."""
        account = await self._require_account(user_id, account_id)
        for calendar in await self._live_calendars(account):
            if calendar.id == calendar_id:
                return calendar
        raise NotFoundError(f"Calendar '{calendar_id}' not found in account '{account_id}'")

    async def _write_default(
        self,
        user_id: str,
        compute: Callable[[DefaultSelection], DefaultSelection | None],
    ) -> DefaultSelection | None:
        """Read-modify-write the default pair; *compute* returns None to skip."""
        for _ in range(MAX_DEFAULT_WRITE_ATTEMPTS):
            current = await self._store.get_default_selection(user_id)
            new = compute(current)
            if new is None or new == current:
                return current
            if await self._store.compare_and_set_default(user_id, current, new):
                return new
        raise CalendarHubError(
            f"Default calendar for user '{user_id}' changed concurrently; retry the request"
        )

    async def set_default_calendar(self, user_id: str, account_id: str, calendar_id: str) -> None:
        """Persist the default pair after checking it against live provider data."""
        calendar = await self.get_calendar(user_id, account_id, calendar_id)
        selection = DefaultSelection(account_id=account_id, calendar_id=calendar.id)
        await self._write_default(user_id, lambda _current: selection)
        logger.info(
            "Default calendar set: user=%s account=%s calendar=%s",
            user_id,
            account_id,
            calendar_id,
        )

    async def create_calendar(
        self,
        user_id: str,
        account_id: str,
        calendar: CreateCalendarInput,
    ) -> Calendar:
        account = await self._require_account(user_id, account_id)
        return await self._run_for_account(
            account, lambda provider: provider.create_calendar(calendar)
        )

    async def update_calendar(
        self,
        user_id: str,
        account_id: str,
        calendar_id: str,
        calendar: UpdateCalendarInput,
    ) -> Calendar:
        account = await self._require_account(user_id, account_id)
        return await self._run_for_account(
            account, lambda provider: provider.update_calendar(calendar_id, calendar)
        )

    async def delete_calendar(self, user_id: str, account_id: str, calendar_id: str) -> None:
        """Delete a calendar; a default pointing at it falls back to the account's primary."""
        account = await self._require_account(user_id, account_id)
        await self._run_for_account(account, lambda provider: provider.delete_calendar(calendar_id))

        def _clear_calendar(current: DefaultSelection) -> DefaultSelection | None:
            if current.account_id == account_id and current.calendar_id == calendar_id:
                return DefaultSelection(account_id=account_id, calendar_id=None)
            return None

        await self._write_default(user_id, _clear_calendar)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _account_for_calendar(self, user_id: str, calendar: Calendar) -> LinkedAccount:
        account = await self._require_account(user_id, calendar.account_id)
        if account.provider_id != calendar.provider_id:
            raise CalendarValidationError(
                f"Calendar '{calendar.id}' does not belong to a {account.provider_id} account"
            )
        return account

    async def list_events(
        self,
        user_id: str,
        calendar: Calendar,
        start: ZonedDateTime,
        end: ZonedDateTime,
    ) -> list[CalendarEvent]:
        """Events of one calendar intersecting ``[start, end)``."""
        if end.to_instant() < start.to_instant():
            raise CalendarValidationError("end must not be earlier than start")
        account = await self._account_for_calendar(user_id, calendar)
        return await self._run_for_account(
            account, lambda provider: provider.events(calendar, start, end)
        )

    async def _fetch_account_events(
        self,
        account: LinkedAccount,
        calendars: list[Calendar],
        start: ZonedDateTime,
        end: ZonedDateTime,
    ) -> tuple[list[CalendarEvent], list[AccountFailure]]:
        events: list[CalendarEvent] = []
        failures: list[AccountFailure] = []

        async def _one(provider: CalendarProvider, calendar: Calendar) -> None:
            try:
                events.extend(await self._bounded(provider.events(calendar, start, end)))
            except (ProviderError, TimeoutError) as exc:
                failure = _failure_from(exc, account, calendar_id=calendar.id)
                logger.warning(
                    "Event listing failed for calendar %s of account %s: kind=%s code=%s",
                    calendar.id,
                    account.id,
                    failure.kind,
                    failure.code,
                )
                failures.append(failure)
            except Exception as exc:
                logger.error(
                    "Event listing failed unexpectedly for calendar %s of account %s",
                    calendar.id,
                    account.id,
                    exc_info=True,
                )
                failures.append(_failure_from(exc, account, calendar_id=calendar.id))

        async def _all(provider: CalendarProvider) -> None:
            await asyncio.gather(*(_one(provider, calendar) for calendar in calendars))

        try:
            await self._run_for_account(account, _all)
        except AuthError as exc:
            failure = _failure_from(exc, account)
            logger.warning("Event listing failed for account %s: kind=auth", account.id)
            failures.append(failure)
        except Exception as exc:
            logger.error(
                "Event listing failed unexpectedly for account %s", account.id, exc_info=True
            )
            failures.append(_failure_from(exc, account))
        return events, failures

    async def list_events_for_calendars(
        self,
        user_id: str,
        calendars: list[Calendar],
        start: ZonedDateTime,
        end: ZonedDateTime,
    ) -> EventListing:
        """Events across several calendars, merged and sorted by start instant."""
        if end.to_instant() < start.to_instant():
            raise CalendarValidationError("end must not be earlier than start")

        by_account: dict[str, list[Calendar]] = {}
        for calendar in calendars:
            by_account.setdefault(calendar.account_id, []).append(calendar)

        accounts = [
            await self._account_for_calendar(user_id, group[0]) for group in by_account.values()
        ]
        results = await asyncio.gather(
            *(
                self._fetch_account_events(account, by_account[account.id], start, end)
                for account in accounts
            )
        )

        events = [event for account_events, _ in results for event in account_events]
        events.sort(key=lambda event: (to_instant(event.start), event.calendar_id, event.id))
        failures = [failure for _, account_failures in results for failure in account_failures]
        return EventListing(events=events, failures=failures)

    async def create_event(
        self,
        user_id: str,
        calendar: Calendar,
        event: CreateEventInput,
    ) -> CalendarEvent:
        if calendar.read_only:
            raise CalendarValidationError(f"Calendar '{calendar.id}' is read-only")
        account = await self._account_for_calendar(user_id, calendar)
        return await self._run_for_account(
            account, lambda provider: provider.create_event(calendar, event)
        )

    async def update_event(
        self,
        user_id: str,
        calendar: Calendar,
        event_id: str,
        event: UpdateEventInput,
    ) -> CalendarEvent:
        if calendar.read_only:
            raise CalendarValidationError(f"Calendar '{calendar.id}' is read-only")
        account = await self._account_for_calendar(user_id, calendar)
        return await self._run_for_account(
            account, lambda provider: provider.update_event(calendar, event_id, event)
        )

    async def delete_event(
        self,
        user_id: str,
        account_id: str,
        calendar_id: str,
        event_id: str,
    ) -> None:
        """Delete an event after checking its calendar against the live calendar list."""
        account = await self._require_account(user_id, account_id)

        async def _delete(provider: CalendarProvider) -> None:
            calendars = await provider.calendars()
            calendar = next((c for c in calendars if c.id == calendar_id), None)
            if calendar is None:
                raise NotFoundError(
                    f"Calendar '{calendar_id}' not found in account '{account_id}'"
                )
            if calendar.read_only:
                raise CalendarValidationError(f"Calendar '{calendar.id}' is read-only")
            await provider.delete_event(calendar_id, event_id)

        await self._run_for_account(account, _delete)

    async def respond_to_event(
        self,
        user_id: str,
        account_id: str,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None:
        """Set the caller's attendance response on an event they were invited to."""
        account = await self._require_account(user_id, account_id)
        if response.comment is not None and not provider_supports_response_comment(
            account.provider_id
        ):
            raise CalendarValidationError(
                f"{account.provider_id} calendars do not support comments on event responses"
            )
        await self._run_for_account(
            account,
            lambda provider: provider.respond_to_event(calendar_id, event_id, response),
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def list_accounts(self, user_id: str) -> list[AccountSummary]:
        """Every linked account, oldest first; each must yield a live token."""
        accounts = await self._resolver.get_accounts(user_id)
        return [AccountSummary.from_account(authorized.account) for authorized in accounts]

    async def get_default_account(self, user_id: str) -> AccountSummary:
        """The default account, assigned and persisted on first use."""
        authorized = await self._resolver.get_default_account(user_id)
        return AccountSummary.from_account(authorized.account)

    async def get_default_selection(self, user_id: str) -> DefaultSelection:
        """The recorded default pair, without checking it against providers."""
        return await self._store.get_default_selection(user_id)

    async def _primary_calendar_id(self, account: LinkedAccount) -> str | None:
        try:
            calendars = await self._bounded(self._live_calendars(account))
        except (AuthError, ProviderError, TimeoutError) as exc:
            logger.warning(
                "Could not read calendars of account %s while repairing the default: %s",
                account.id,
                sanitize_error_message(str(exc) or type(exc).__name__),
            )
            return None
        return next((calendar.id for calendar in calendars if calendar.primary), None)

    async def unlink_account(self, user_id: str, account_id: str, provider_id: ProviderId) -> None:
        """Remove a linked account and repair the default selection if it pointed there."""
        if not await self._store.remove_account(user_id, account_id, provider_id):
            raise NotFoundError(f"Linked {provider_id} account '{account_id}' not found")
        self._tokens.invalidate(account_id)
        logger.info("Linked account unlinked: user=%s account=%s", user_id, account_id)

        selection = await self._store.get_default_selection(user_id)
        if selection.account_id != account_id:
            return

        remaining = await self._resolver.list_accounts(user_id)
        if remaining:
            replacement_account = remaining[0]
            replacement = DefaultSelection(
                account_id=replacement_account.id,
                calendar_id=await self._primary_calendar_id(replacement_account),
            )
        else:
            replacement = DefaultSelection()

        def _repair(current: DefaultSelection) -> DefaultSelection | None:
            # Another request already moved the default elsewhere.
            if current.account_id != account_id:
                return None
            return replacement

        await self._write_default(user_id, _repair)
        logger.info(
            "Default calendar reassigned after unlink: user=%s account=%s calendar=%s",
            user_id,
            replacement.account_id,
            replacement.calendar_id,
        )
