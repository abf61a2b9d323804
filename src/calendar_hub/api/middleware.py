"""API error handling: consistent error responses.

Status code mapping:
- ``NoLinkedAccountsError`` → 404 Not Found (``NO_LINKED_ACCOUNTS``)
- ``NotFoundError`` → 404 Not Found
- ``CalendarValidationError`` → 422 Unprocessable Entity
- ``AuthError`` → 401 Unauthorized
- ``AccountsUnavailableError`` / ``PartialAggregationError`` / ``ProviderError`` → 502 Bad Gateway
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calendar_hub.api.models import ErrorDetail, ErrorResponse
from calendar_hub.errors import (
    AccountsUnavailableError,
    AuthError,
    CalendarValidationError,
    NoLinkedAccountsError,
    NotFoundError,
    PartialAggregationError,
    ProviderError,
)

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def _handle_no_linked_accounts(request: Request, exc: NoLinkedAccountsError) -> JSONResponse:
    return _error_response(404, "NO_LINKED_ACCOUNTS", str(exc))


async def _handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    logger.info("Not found: %s", exc)
    return _error_response(404, "NOT_FOUND", str(exc))


async def _handle_validation(request: Request, exc: CalendarValidationError) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error_response(422, "VALIDATION_ERROR", str(exc))


async def _handle_auth(request: Request, exc: AuthError) -> JSONResponse:
    logger.warning("Calendar account authorization failed: account=%s", exc.account_id)
    details = {"account_id": exc.account_id} if exc.account_id else None
    return _error_response(401, "ACCOUNT_AUTH_FAILED", str(exc), details)


async def _handle_accounts_unavailable(
    request: Request,
    exc: AccountsUnavailableError,
) -> JSONResponse:
    details = {"failures": [failure.model_dump(mode="json") for failure in exc.failures]}
    return _error_response(502, "ACCOUNTS_UNAVAILABLE", str(exc), details)


async def _handle_partial_aggregation(
    request: Request,
    exc: PartialAggregationError,
) -> JSONResponse:
    details = {"listing": exc.listing.model_dump(mode="json")}
    return _error_response(502, "PARTIAL_AGGREGATION", str(exc), details)


async def _handle_provider(request: Request, exc: ProviderError) -> JSONResponse:
    logger.warning(
        "Calendar provider error: provider=%s operation=%s code=%s",
        exc.provider_id,
        exc.operation,
        exc.code,
    )
    details = {
        "provider_id": exc.provider_id,
        "operation": exc.operation,
        "provider_code": exc.code,
    }
    return _error_response(502, "PROVIDER_ERROR", exc.message, details)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(NoLinkedAccountsError, _handle_no_linked_accounts)  # type: ignore[arg-type]
    app.add_exception_handler(NotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarValidationError, _handle_validation)  # type: ignore[arg-type]
    app.add_exception_handler(AuthError, _handle_auth)  # type: ignore[arg-type]
    app.add_exception_handler(AccountsUnavailableError, _handle_accounts_unavailable)  # type: ignore[arg-type]
    app.add_exception_handler(PartialAggregationError, _handle_partial_aggregation)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _handle_provider)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
