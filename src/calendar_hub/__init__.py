"""Provider-agnostic calendar integration layer."""

from calendar_hub.errors import (
    AccountsUnavailableError,
    AuthError,
    CalendarHubError,
    CalendarValidationError,
    NoLinkedAccountsError,
    NotFoundError,
    PartialAggregationError,
    ProviderError,
)
from calendar_hub.service import CalendarService

__all__ = [
    "AccountsUnavailableError",
    "AuthError",
    "CalendarHubError",
    "CalendarService",
    "CalendarValidationError",
    "NoLinkedAccountsError",
    "NotFoundError",
    "PartialAggregationError",
    "ProviderError",
]
