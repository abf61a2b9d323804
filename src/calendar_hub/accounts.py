"""Account resolver: linked accounts with freshly resolved access tokens."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from calendar_hub.errors import NoLinkedAccountsError
from calendar_hub.models import DefaultSelection, LinkedAccount
from calendar_hub.store import AccountStore
from calendar_hub.tokens import TokenProvider

logger = logging.getLogger(__name__)

# Conditional writes retried before giving up on persisting a new default.
MAX_DEFAULT_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class AuthorizedAccount:
    """A linked account paired with a live access token."""

    account: LinkedAccount
    access_token: str = field(repr=False)

    @property
    def id(self) -> str:
        return self.account.id


def _newest(accounts: list[LinkedAccount]) -> LinkedAccount:
    return max(accounts, key=lambda account: (account.created_at, account.id))


class AccountResolver:
    """Resolves a user's linked accounts and default account."""

    def __init__(self, store: AccountStore, tokens: TokenProvider) -> None:
        self._store = store
        self._tokens = tokens

    @property
    def store(self) -> AccountStore:
        return self._store

    async def list_accounts(self, user_id: str) -> list[LinkedAccount]:
        """Linked accounts without tokens, oldest first."""
        return await self._store.list_accounts(user_id)

    async def with_access_token(self, account: LinkedAccount) -> AuthorizedAccount:
        """Attach a freshly resolved token; raises ``AuthError`` on failure."""
        token = await self._tokens.get_access_token(
            account.id,
            account.provider_id,
            account.user_id,
        )
        return AuthorizedAccount(account=account, access_token=token)

    async def get_accounts(self, user_id: str) -> list[AuthorizedAccount]:
        """Every linked account of *user_id* with a live token."""
        accounts = await self._store.list_accounts(user_id)
        return list(await asyncio.gather(*(self.with_access_token(a) for a in accounts)))

    async def get_default_account(self, user_id: str) -> AuthorizedAccount:
        """The recorded default account, or the newest account persisted as default.

        Raises ``NoLinkedAccountsError`` when the user has no linked accounts.
        """
        accounts = await self._store.list_accounts(user_id)
        if not accounts:
            raise NoLinkedAccountsError(f"User '{user_id}' has no linked calendar accounts")
        by_id = {account.id: account for account in accounts}

        for _ in range(MAX_DEFAULT_WRITE_ATTEMPTS):
            selection = await self._store.get_default_selection(user_id)
            if selection.account_id in by_id:
                return await self.with_access_token(by_id[selection.account_id])

            newest = _newest(accounts)
            # The old calendar belongs to an account that is gone; clear both together.
            replacement = DefaultSelection(account_id=newest.id, calendar_id=None)
            if await self._store.compare_and_set_default(user_id, selection, replacement):
                logger.info(
                    "Default account assigned: user=%s account=%s", user_id, newest.id
                )
                return await self.with_access_token(newest)

        logger.warning(
            "Default account for user %s kept changing; using the newest account unpersisted",
            user_id,
        )
        return await self.with_access_token(_newest(accounts))
