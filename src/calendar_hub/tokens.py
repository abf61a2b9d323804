"""Access-token capability consumed by the account resolver.

Tokens are fetched per call and cached only in memory; nothing here writes a
token back to the account store.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from calendar_hub.errors import AuthError, sanitize_error_message
from calendar_hub.models import ProviderId
from calendar_hub.providers._http import safe_error_message
from calendar_hub.store import AccountStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_OAUTH_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

DEFAULT_TOKEN_URLS: dict[ProviderId, str] = {
    ProviderId.google: GOOGLE_OAUTH_TOKEN_URL,
    ProviderId.microsoft: MICROSOFT_OAUTH_TOKEN_URL,
}

DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class OAuthClientCredentials:
    """OAuth client registered with one calendar service."""

    client_id: str
    client_secret: str
    token_url: str
    scope: str | None = None

    def __repr__(self) -> str:
        return f"OAuthClientCredentials(client_id={self.client_id!r}, token_url={self.token_url!r})"


class TokenProvider(abc.ABC):
    """Returns a currently valid bearer token for a linked account."""

    @abc.abstractmethod
    async def get_access_token(
        self,
        account_id: str,
        provider_id: ProviderId,
        user_id: str,
    ) -> str:
        """Return a live access token; raises ``AuthError`` on failure."""
        ...

    def invalidate(self, account_id: str) -> None:  # noqa: B027
        """Forget any cached token of *account_id*."""


class StoredTokenProvider(TokenProvider):
    """Hands out the access token already recorded on the linked account."""

    def __init__(self, store: AccountStore) -> None:
        self._store = store

    async def get_access_token(
        self,
        account_id: str,
        provider_id: ProviderId,
        user_id: str,
    ) -> str:
        account = await self._store.get_account(user_id, account_id)
        if account is None or account.provider_id != provider_id:
            raise AuthError(f"Linked account '{account_id}' not found", account_id=account_id)
        if not account.access_token:
            raise AuthError(
                f"Linked account '{account_id}' has no access token", account_id=account_id
            )
        return account.access_token


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


@dataclass
class _CachedToken:
    access_token: str
    expires_at: datetime

    def is_fresh(self) -> bool:
        return datetime.now(UTC) < self.expires_at


class OAuthTokenProvider(TokenProvider):
    """Refresh-token OAuth grant with per-account in-memory caching.

    Refreshes for the same account are serialized so that concurrent callers
    share one token request.
    """

    def __init__(
        self,
        store: AccountStore,
        clients: dict[ProviderId, OAuthClientCredentials],
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._clients = dict(clients)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._cache: dict[str, _CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get_access_token(
        self,
        account_id: str,
        provider_id: ProviderId,
        user_id: str,
        *,
        force_refresh: bool = False,
    ) -> str:
        cached = self._cache.get(account_id)
        if not force_refresh and cached is not None and cached.is_fresh():
            return cached.access_token

        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            cached = self._cache.get(account_id)
            if not force_refresh and cached is not None and cached.is_fresh():
                return cached.access_token

            token = await self._refresh(account_id, provider_id, user_id)
            self._cache[account_id] = token
            return token.access_token

    def invalidate(self, account_id: str) -> None:
        """Drop the cached token of *account_id* (e.g. after unlinking)."""
        self._cache.pop(account_id, None)

    async def _refresh(
        self,
        account_id: str,
        provider_id: ProviderId,
        user_id: str,
    ) -> _CachedToken:
        client = self._clients.get(provider_id)
        if client is None:
            raise AuthError(
                f"No OAuth client configured for provider '{provider_id}'",
                account_id=account_id,
            )

        account = await self._store.get_account(user_id, account_id)
        if account is None or account.provider_id != provider_id:
            raise AuthError(f"Linked account '{account_id}' not found", account_id=account_id)
        if not account.refresh_token:
            raise AuthError(
                f"Linked account '{account_id}' has no refresh token", account_id=account_id
            )

        form = {
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "refresh_token": account.refresh_token,
            "grant_type": "refresh_token",
        }
        if client.scope:
            form["scope"] = client.scope

        try:
            response = await self._http_client.post(
                client.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthError(
                "OAuth token refresh request failed: " + sanitize_error_message(str(exc)),
                account_id=account_id,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = sanitize_error_message(safe_error_message(response))
            logger.warning(
                "OAuth token refresh rejected: provider=%s account=%s status=%d",
                provider_id,
                account_id,
                response.status_code,
            )
            raise AuthError(
                f"OAuth token refresh failed ({response.status_code}): {message}",
                account_id=account_id,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError(
                "OAuth token endpoint returned invalid JSON", account_id=account_id
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError(
                "OAuth token response is missing a non-empty access_token",
                account_id=account_id,
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)
        logger.debug("OAuth token refreshed: provider=%s account=%s", provider_id, account_id)
        return _CachedToken(
            access_token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds),
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
