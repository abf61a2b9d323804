"""Error taxonomy for the calendar integration layer.

- ``CalendarValidationError``: canonical input rejected before any network call
- ``ProviderError``: an external calendar service rejected or failed a call
- ``NotFoundError``: an account, calendar, or default selection does not exist
- ``AuthError``: a live access token could not be obtained
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from calendar_hub.models import AccountFailure, CalendarListing

UNKNOWN_ERROR_CODE = "UNKNOWN_ERROR"
MAX_ERROR_MESSAGE_LENGTH = 200


class CalendarHubError(RuntimeError):
    """Base error raised by the calendar integration layer."""


class ConfigError(CalendarHubError):
    """Raised when calendar-hub configuration is missing, malformed, or invalid."""


class CalendarValidationError(CalendarHubError):
    """Raised when canonical input is malformed before any network call."""


class ProviderError(CalendarHubError):
    """Raised when an external calendar service rejects or fails an operation.

    ``operation`` names the adapter operation (``calendars``, ``createEvent``...),
    ``code`` is a best-effort error code extracted from the underlying failure,
    and ``context`` carries identifiers such as the calendar id.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        code: str = UNKNOWN_ERROR_CODE,
        provider_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.operation = operation
        self.code = code
        self.provider_id = provider_id
        self.context = dict(context or {})
        super().__init__(f"{operation} failed ({code}): {message}")


class NotFoundError(CalendarHubError):
    """Raised when a resolved entity (account, calendar, default) does not exist."""


class NoLinkedAccountsError(NotFoundError):
    """Raised when the user has no linked calendar accounts at all."""


class AuthError(CalendarHubError):
    """Raised when refreshing or obtaining an access token fails."""

    def __init__(self, message: str, *, account_id: str | None = None) -> None:
        self.account_id = account_id
        super().__init__(message)


class AccountsUnavailableError(CalendarHubError):
    """Raised when accounts are linked but none could supply the data needed."""

    def __init__(self, message: str, *, failures: list[AccountFailure]) -> None:
        self.failures = list(failures)
        super().__init__(message)


class PartialAggregationError(CalendarHubError):
    """Raised in strict mode when some (but not all) accounts failed to answer."""

    def __init__(self, listing: CalendarListing) -> None:
        self.listing = listing
        failed = ", ".join(failure.account_id for failure in listing.failures)
        super().__init__(f"Calendar aggregation incomplete; failed account(s): {failed}")


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact credentials, collapse whitespace and cap the length of *message*."""
    redacted = redact_credential_values(message)
    return " ".join(redacted.split())[:MAX_ERROR_MESSAGE_LENGTH]
