"""CLI for calendar-hub: inspect timezones and a user's linked calendars."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click

from calendar_hub.config import CalendarHubConfig, load_config
from calendar_hub.core.logging import configure_logging
from calendar_hub.core.telemetry import init_telemetry
from calendar_hub.errors import CalendarHubError, ConfigError
from calendar_hub.models import CalendarListing
from calendar_hub.service import CalendarService
from calendar_hub.store import PostgresAccountStore
from calendar_hub.timezones import is_valid_time_zone, resolve_time_zone
from calendar_hub.tokens import OAuthTokenProvider, StoredTokenProvider, TokenProvider


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    envvar="CALENDAR_HUB_CONFIG",
    default=None,
    help="Path to calendar_hub.toml (or the directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calendar-hub: one calendar model over Google and Microsoft accounts."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    ctx.obj = config


# ---------------------------------------------------------------------------
# timezone
# ---------------------------------------------------------------------------


@cli.group()
def timezone() -> None:
    """Timezone name resolution (IANA and legacy Windows names)."""


@timezone.command("resolve")
@click.argument("name")
def timezone_resolve(name: str) -> None:
    """Print the IANA zone NAME resolves to; exits 1 when it is unknown."""
    resolved = resolve_time_zone(name)
    if resolved is None:
        click.echo(f"Unknown time zone: {name}", err=True)
        sys.exit(1)
    click.echo(resolved)


@timezone.command("check")
@click.argument("name")
def timezone_check(name: str) -> None:
    """Report whether NAME is a valid IANA zone as-is."""
    if is_valid_time_zone(name):
        click.echo(f"{name}: valid")
        return
    resolved = resolve_time_zone(name)
    if resolved is not None:
        click.echo(f"{name}: not IANA, maps to {resolved}")
        return
    click.echo(f"{name}: invalid")
    sys.exit(1)


# ---------------------------------------------------------------------------
# calendars / set-default
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _service_from_config(config: CalendarHubConfig) -> AsyncIterator[CalendarService]:
    if not config.database.dsn:
        raise click.ClickException("database.dsn is not configured")

    import asyncpg

    init_telemetry()
    pool = await asyncpg.create_pool(config.database.dsn, min_size=1, max_size=4)
    store = PostgresAccountStore(pool)
    clients = config.oauth_clients()
    tokens: TokenProvider = (
        OAuthTokenProvider(store, clients) if clients else StoredTokenProvider(store)
    )
    try:
        yield CalendarService.from_config(config, store, tokens)
    finally:
        if isinstance(tokens, OAuthTokenProvider):
            await tokens.aclose()
        await pool.close()


def _print_listing(listing: CalendarListing) -> None:
    default = listing.default_calendar
    for group in listing.accounts:
        click.echo(f"{group.name} [{group.provider_id}] ({group.id})")
        if group.error is not None:
            click.echo(f"  ! {group.error.kind}: {group.error.message}")
            continue
        for calendar in group.calendars:
            markers = []
            if calendar.account_id == default.account_id and calendar.id == default.id:
                markers.append("default")
            if calendar.primary:
                markers.append("primary")
            if calendar.read_only:
                markers.append("read-only")
            suffix = f" ({', '.join(markers)})" if markers else ""
            click.echo(f"  - {calendar.name} <{calendar.id}>{suffix}")


async def _list_calendars(config: CalendarHubConfig, user_id: str) -> CalendarListing:
    async with _service_from_config(config) as service:
        return await service.list_calendars(user_id)


async def _set_default(
    config: CalendarHubConfig,
    user_id: str,
    account_id: str,
    calendar_id: str,
) -> None:
    async with _service_from_config(config) as service:
        await service.set_default_calendar(user_id, account_id, calendar_id)


@cli.command("calendars")
@click.argument("user_id")
@click.pass_obj
def calendars_cmd(config: CalendarHubConfig, user_id: str) -> None:
    """List USER_ID's calendars across every linked account."""
    try:
        listing = asyncio.run(_list_calendars(config, user_id))
    except CalendarHubError as exc:
        raise click.ClickException(str(exc)) from exc
    _print_listing(listing)


@cli.command("set-default")
@click.argument("user_id")
@click.argument("account_id")
@click.argument("calendar_id")
@click.pass_obj
def set_default_cmd(
    config: CalendarHubConfig,
    user_id: str,
    account_id: str,
    calendar_id: str,
) -> None:
    """Make CALENDAR_ID of ACCOUNT_ID the default calendar of USER_ID."""
    try:
        asyncio.run(_set_default(config, user_id, account_id, calendar_id))
    except CalendarHubError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Default calendar set to {calendar_id} ({account_id})")


@cli.command("init-db")
@click.pass_obj
def init_db_cmd(config: CalendarHubConfig) -> None:
    """Create the linked-account and default-selection tables."""

    async def _init() -> None:
        if not config.database.dsn:
            raise click.ClickException("database.dsn is not configured")
        import asyncpg

        conn_pool = await asyncpg.create_pool(config.database.dsn, min_size=1, max_size=1)
        try:
            await PostgresAccountStore(conn_pool).ensure_schema()
        finally:
            await conn_pool.close()

    asyncio.run(_init())
    click.echo("Calendar tables ready")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
