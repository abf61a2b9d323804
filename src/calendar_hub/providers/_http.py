"""Authenticated HTTP transport and error envelope shared by provider adapters.

Adapters hold a ``ProviderHttpClient`` rather than inheriting from a common
base, and run every public operation inside ``provider_operation`` so that no
raw transport error ever escapes an adapter uncategorized.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from calendar_hub.core.telemetry import provider_span
from calendar_hub.errors import (
    UNKNOWN_ERROR_CODE,
    CalendarValidationError,
    ProviderError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


class ProviderHttpError(RuntimeError):
    """Raised when a calendar API answers with a non-2xx status."""

    def __init__(self, *, status_code: int, message: str, code: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.code = code or f"HTTP_{status_code}"
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, whitespace-normalized error message from *response*."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def extract_error_code(response: httpx.Response) -> str | None:
    """Best-effort error code from a Google or Graph error body.

    Graph: ``{"error": {"code": "ErrorItemNotFound"}}``.
    Google: ``{"error": {"status": "NOT_FOUND", "errors": [{"reason": "notFound"}]}}``.
    """
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error_payload = payload.get("error")
    if not isinstance(error_payload, dict):
        return None

    code = error_payload.get("code")
    if isinstance(code, str) and code.strip():
        return code.strip()
    status = error_payload.get("status")
    if isinstance(status, str) and status.strip():
        return status.strip()
    errors = error_payload.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        reason = errors[0].get("reason")
        if isinstance(reason, str) and reason.strip():
            return reason.strip()
    return None


def _error_code_for(exc: Exception) -> str:
    if isinstance(exc, ProviderHttpError):
        return exc.code
    if isinstance(exc, httpx.TimeoutException | asyncio.TimeoutError):
        return "TIMEOUT"
    if isinstance(exc, httpx.HTTPError):
        return "NETWORK_ERROR"
    if isinstance(exc, ValueError | KeyError | TypeError):
        return "INVALID_RESPONSE"
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.strip():
        return code
    return UNKNOWN_ERROR_CODE


@asynccontextmanager
async def provider_operation(
    provider_id: str,
    operation: str,
    **context: Any,
) -> AsyncIterator[None]:
    """Run one adapter operation, rewrapping failures as ``ProviderError``.

    ``CalendarValidationError`` and already-wrapped ``ProviderError`` propagate
    unchanged.
    """
    with provider_span(provider_id, operation, **context):
        try:
            yield
        except (CalendarValidationError, ProviderError):
            raise
        except Exception as exc:
            code = _error_code_for(exc)
            message = sanitize_error_message(str(exc) or type(exc).__name__)
            logger.warning(
                "Calendar provider operation failed: provider=%s operation=%s code=%s error=%s",
                provider_id,
                operation,
                code,
                message,
            )
            raise ProviderError(
                message,
                operation=operation,
                code=code,
                provider_id=provider_id,
                context=context,
            ) from exc


class ProviderHttpClient:
    """Bearer-authenticated JSON client bound to one API base URL."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if not access_token or not access_token.strip():
            raise ValueError("access_token must be a non-empty string")
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token.strip()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def url_for(self, path: str) -> str:
        if path.startswith(("https://", "http://")):
            return path
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{normalized_path}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = self.url_for(path)
        response = await self._request_once(method, url, params, json_body, extra_headers)

        # Rate-limit retry: honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params, json_body, extra_headers)
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }
        if extra_headers:
            headers.update(extra_headers)
        return await self._http_client.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=headers,
        )

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.request(
            method,
            path,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderHttpError(
                status_code=response.status_code,
                message=safe_error_message(response),
                code=extract_error_code(response),
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise ValueError(
                "Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise ValueError("Calendar API returned an unexpected JSON payload shape")
        return payload

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
