"""Tests for calendar_hub.errors: taxonomy and message sanitization."""

from __future__ import annotations

import pytest

from calendar_hub.errors import (
    MAX_ERROR_MESSAGE_LENGTH,
    CalendarHubError,
    NoLinkedAccountsError,
    NotFoundError,
    ProviderError,
    sanitize_error_message,
)

pytestmark = pytest.mark.unit


class TestProviderError:
    def test_carries_operation_and_code(self):
        exc = ProviderError(
            "Calendar not found",
            operation="events",
            code="HTTP_404",
            provider_id="google",
            context={"calendar_id": "work"},
        )
        assert exc.operation == "events"
        assert exc.code == "HTTP_404"
        assert exc.context == {"calendar_id": "work"}
        assert "events failed (HTTP_404)" in str(exc)

    def test_default_code(self):
        assert ProviderError("boom", operation="calendars").code == "UNKNOWN_ERROR"


class TestHierarchy:
    def test_no_linked_accounts_is_not_found(self):
        assert issubclass(NoLinkedAccountsError, NotFoundError)
        assert issubclass(NotFoundError, CalendarHubError)


class TestSanitizeErrorMessage:
    def test_redacts_key_value_tokens(self):
        message = sanitize_error_message("refresh failed: refresh_token=1//abc client_secret=xyz")
        assert "1//abc" not in message
        assert "xyz" not in message
        assert "refresh_token=[REDACTED]" in message

    def test_redacts_json_values(self):
        message = sanitize_error_message('{"access_token": "ya29.secret", "error": "bad"}')
        assert "ya29.secret" not in message
        assert '"error": "bad"' in message

    def test_redacts_bearer_header(self):
        assert "abc.def" not in sanitize_error_message("Authorization: Bearer abc.def")

    def test_collapses_whitespace_and_caps_length(self):
        message = sanitize_error_message("a\n\n  b " + "x" * 500)
        assert message.startswith("a b ")
        assert len(message) == MAX_ERROR_MESSAGE_LENGTH
