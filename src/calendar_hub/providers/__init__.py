"""Calendar provider adapters and the factory that selects one per provider id."""

from __future__ import annotations

from collections.abc import Callable

import httpx

from calendar_hub.errors import CalendarValidationError
from calendar_hub.models import ProviderId
from calendar_hub.providers.base import (
    DEFAULT_EVENT_PAGE_SIZE,
    DEFAULT_MAX_EVENT_PAGES,
    CalendarProvider,
)
from calendar_hub.providers.google import GOOGLE_CALENDAR_API_BASE_URL, GoogleCalendarProvider
from calendar_hub.providers.microsoft import (
    MICROSOFT_GRAPH_API_BASE_URL,
    MicrosoftCalendarProvider,
)

ProviderFactory = Callable[..., CalendarProvider]

_PROVIDER_CLASSES: dict[ProviderId, type[CalendarProvider]] = {
    ProviderId.google: GoogleCalendarProvider,
    ProviderId.microsoft: MicrosoftCalendarProvider,
}

DEFAULT_API_BASE_URLS: dict[ProviderId, str] = {
    ProviderId.google: GOOGLE_CALENDAR_API_BASE_URL,
    ProviderId.microsoft: MICROSOFT_GRAPH_API_BASE_URL,
}


def provider_supports_response_comment(provider_id: ProviderId | str) -> bool:
    """Whether the adapter for *provider_id* can carry a comment on an event response."""
    return _PROVIDER_CLASSES[ProviderId(provider_id)].SUPPORTS_RESPONSE_COMMENT


def create_provider(
    provider_id: ProviderId | str,
    *,
    access_token: str,
    account_id: str,
    http_client: httpx.AsyncClient | None = None,
    base_url: str | None = None,
    page_size: int = DEFAULT_EVENT_PAGE_SIZE,
    max_pages: int = DEFAULT_MAX_EVENT_PAGES,
) -> CalendarProvider:
    """Build the adapter for *provider_id* bound to one account and token."""
    try:
        key = ProviderId(provider_id)
    except ValueError:
        raise CalendarValidationError(f"Unsupported calendar provider: {provider_id!r}") from None

    provider_cls = _PROVIDER_CLASSES[key]
    return provider_cls(
        access_token=access_token,
        account_id=account_id,
        http_client=http_client,
        base_url=base_url or DEFAULT_API_BASE_URLS[key],
        page_size=page_size,
        max_pages=max_pages,
    )


__all__ = [
    "CalendarProvider",
    "DEFAULT_API_BASE_URLS",
    "GoogleCalendarProvider",
    "MicrosoftCalendarProvider",
    "ProviderFactory",
    "create_provider",
    "provider_supports_response_comment",
]
