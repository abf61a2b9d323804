"""Linked-account store: the read side of linked accounts plus the default pair.

The calendar layer only reads linked-account records. Its single write path is
the user's default account/calendar pair, updated through
``compare_and_set_default`` so concurrent writers can never leave the two
fields inconsistent.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import TYPE_CHECKING, Any

from calendar_hub.models import DefaultSelection, LinkedAccount, ProviderId

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_ACCOUNTS_TABLE = "calendar_linked_accounts"
_DEFAULTS_TABLE = "calendar_user_defaults"

_ACCOUNTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_ACCOUNTS_TABLE} (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    provider_id   TEXT NOT NULL,
    account_id    TEXT NOT NULL,
    email         TEXT,
    name          TEXT,
    access_token  TEXT,
    refresh_token TEXT,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_ACCOUNTS_USER_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calendar_linked_accounts_user
ON {_ACCOUNTS_TABLE} (user_id, created_at)
"""

_DEFAULTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_DEFAULTS_TABLE} (
    user_id             TEXT PRIMARY KEY,
    default_account_id  TEXT,
    default_calendar_id TEXT,
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_ACCOUNT_COLUMNS = (
    "id, user_id, provider_id, account_id, email, name, access_token, refresh_token, created_at"
)


class AccountStore(abc.ABC):
    """Read access to linked accounts and conditional writes of the default pair."""

    @abc.abstractmethod
    async def list_accounts(self, user_id: str) -> list[LinkedAccount]:
        """Linked accounts of *user_id*, oldest first."""
        ...

    @abc.abstractmethod
    async def get_account(self, user_id: str, account_id: str) -> LinkedAccount | None:
        """Linked account by internal id, or ``None`` when it is not the user's."""
        ...

    @abc.abstractmethod
    async def get_default_selection(self, user_id: str) -> DefaultSelection:
        """The recorded default pair (both fields ``None`` when never set)."""
        ...

    @abc.abstractmethod
    async def compare_and_set_default(
        self,
        user_id: str,
        expected: DefaultSelection,
        new: DefaultSelection,
    ) -> bool:
        """Replace the default pair only if it still equals *expected*.

        Returns ``True`` when the write happened.
        """
        ...

    @abc.abstractmethod
    async def remove_account(self, user_id: str, account_id: str, provider_id: ProviderId) -> bool:
        """Delete a linked account. Returns ``False`` when nothing matched."""
        ...


class InMemoryAccountStore(AccountStore):
    """Process-local store, used by tests and local tooling."""

    def __init__(self, accounts: list[LinkedAccount] | None = None) -> None:
        self._accounts: dict[str, LinkedAccount] = {}
        self._defaults: dict[str, DefaultSelection] = {}
        self._lock = asyncio.Lock()
        for account in accounts or []:
            self._accounts[account.id] = account

    def add_account(self, account: LinkedAccount) -> None:
        self._accounts[account.id] = account

    async def list_accounts(self, user_id: str) -> list[LinkedAccount]:
        accounts = [a for a in self._accounts.values() if a.user_id == user_id]
        return sorted(accounts, key=lambda account: (account.created_at, account.id))

    async def get_account(self, user_id: str, account_id: str) -> LinkedAccount | None:
        account = self._accounts.get(account_id)
        if account is None or account.user_id != user_id:
            return None
        return account

    async def get_default_selection(self, user_id: str) -> DefaultSelection:
        return self._defaults.get(user_id, DefaultSelection())

    async def compare_and_set_default(
        self,
        user_id: str,
        expected: DefaultSelection,
        new: DefaultSelection,
    ) -> bool:
        async with self._lock:
            current = self._defaults.get(user_id, DefaultSelection())
            if current != expected:
                return False
            self._defaults[user_id] = new
            return True

    async def remove_account(self, user_id: str, account_id: str, provider_id: ProviderId) -> bool:
        async with self._lock:
            account = self._accounts.get(account_id)
            if account is None or account.user_id != user_id or account.provider_id != provider_id:
                return False
            del self._accounts[account_id]
            return True


def _account_from_row(row: Any) -> LinkedAccount:
    return LinkedAccount(
        id=row["id"],
        user_id=row["user_id"],
        provider_id=ProviderId(row["provider_id"]),
        account_id=row["account_id"],
        email=row["email"],
        name=row["name"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        created_at=row["created_at"],
    )


def _affected_rows(status: str | None) -> int:
    # asyncpg returns a command tag like "UPDATE 1" or "DELETE 0"
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0


class PostgresAccountStore(AccountStore):
    """Account store backed by an asyncpg pool.

    Parameters
    ----------
    pool:
        An asyncpg connection pool. Each operation acquires a connection for
        the duration of the call.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        """Create the account and default-selection tables when missing."""
        async with self.pool.acquire() as conn:
            await conn.execute(_ACCOUNTS_TABLE_DDL)
            await conn.execute(_ACCOUNTS_USER_INDEX_DDL)
            await conn.execute(_DEFAULTS_TABLE_DDL)

    async def list_accounts(self, user_id: str) -> list[LinkedAccount]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_ACCOUNT_COLUMNS} FROM {_ACCOUNTS_TABLE} "
                "WHERE user_id = $1 ORDER BY created_at, id",
                user_id,
            )
        return [_account_from_row(row) for row in rows]

    async def get_account(self, user_id: str, account_id: str) -> LinkedAccount | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ACCOUNT_COLUMNS} FROM {_ACCOUNTS_TABLE} WHERE user_id = $1 AND id = $2",
                user_id,
                account_id,
            )
        return _account_from_row(row) if row is not None else None

    async def get_default_selection(self, user_id: str) -> DefaultSelection:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT default_account_id, default_calendar_id FROM {_DEFAULTS_TABLE} "
                "WHERE user_id = $1",
                user_id,
            )
        if row is None:
            return DefaultSelection()
        return DefaultSelection(
            account_id=row["default_account_id"],
            calendar_id=row["default_calendar_id"],
        )

    async def compare_and_set_default(
        self,
        user_id: str,
        expected: DefaultSelection,
        new: DefaultSelection,
    ) -> bool:
        async with self.pool.acquire() as conn:
            # A missing row is equivalent to an all-NULL pair.
            await conn.execute(
                f"INSERT INTO {_DEFAULTS_TABLE} (user_id) VALUES ($1) "
                "ON CONFLICT (user_id) DO NOTHING",
                user_id,
            )
            status = await conn.execute(
                f"""
                UPDATE {_DEFAULTS_TABLE}
                SET default_account_id = $2,
                    default_calendar_id = $3,
                    updated_at = now()
                WHERE user_id = $1
                  AND default_account_id IS NOT DISTINCT FROM $4
                  AND default_calendar_id IS NOT DISTINCT FROM $5
                """,
                user_id,
                new.account_id,
                new.calendar_id,
                expected.account_id,
                expected.calendar_id,
            )
        updated = _affected_rows(status) > 0
        if updated:
            logger.info(
                "Default calendar selection updated: user=%s account=%s calendar=%s",
                user_id,
                new.account_id,
                new.calendar_id,
            )
        else:
            logger.debug("Default calendar selection changed concurrently: user=%s", user_id)
        return updated

    async def remove_account(self, user_id: str, account_id: str, provider_id: ProviderId) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                f"DELETE FROM {_ACCOUNTS_TABLE} "
                "WHERE user_id = $1 AND id = $2 AND provider_id = $3",
                user_id,
                account_id,
                str(provider_id),
            )
        deleted = _affected_rows(status) > 0
        if deleted:
            logger.info("Linked account removed: user=%s account=%s", user_id, account_id)
        return deleted
