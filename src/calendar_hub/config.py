"""calendar-hub configuration loading and validation.

Reads ``calendar_hub.toml``, resolves ``${VAR_NAME}`` references against the
environment, and returns a validated ``CalendarHubConfig``. Every section is
optional; a missing file yields the defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from calendar_hub.errors import ConfigError
from calendar_hub.models import ProviderId
from calendar_hub.providers.base import DEFAULT_EVENT_PAGE_SIZE, DEFAULT_MAX_EVENT_PAGES
from calendar_hub.tokens import DEFAULT_TOKEN_URLS, OAuthClientCredentials

CONFIG_FILE_NAME = "calendar_hub.toml"
CONFIG_PATH_ENV_VAR = "CALENDAR_HUB_CONFIG"

# Pattern matching ${VAR_NAME}: supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class AggregationConfig:
    """Fan-out behavior from the [aggregation] section."""

    account_timeout_seconds: float = 15.0
    strict: bool = False


@dataclass
class EventsConfig:
    """Event listing limits from the [events] section."""

    page_size: int = DEFAULT_EVENT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_EVENT_PAGES


@dataclass
class DatabaseConfig:
    dsn: str | None = None


@dataclass
class ProviderConfig:
    """OAuth client and API endpoint for one calendar service."""

    client_id: str | None = None
    client_secret: str | None = None
    api_base_url: str | None = None
    token_url: str | None = None
    scope: str | None = None

    def oauth_credentials(self, provider_id: ProviderId) -> OAuthClientCredentials | None:
        if not self.client_id or not self.client_secret:
            return None
        return OAuthClientCredentials(
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_url=self.token_url or DEFAULT_TOKEN_URLS[provider_id],
            scope=self.scope,
        )

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(client_id={self.client_id!r}, "
            f"api_base_url={self.api_base_url!r}, token_url={self.token_url!r})"
        )


@dataclass
class CalendarHubConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    providers: dict[ProviderId, ProviderConfig] = field(
        default_factory=lambda: {provider_id: ProviderConfig() for provider_id in ProviderId}
    )

    def oauth_clients(self) -> dict[ProviderId, OAuthClientCredentials]:
        """OAuth clients for every provider with complete client credentials."""
        clients: dict[ProviderId, OAuthClientCredentials] = {}
        for provider_id, provider in self.providers.items():
            credentials = provider.oauth_credentials(provider_id)
            if credentials is not None:
                clients[provider_id] = credentials
        return clients


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _optional_str(section: dict[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string")
    return value.strip() or None


def _positive_number(section: dict[str, Any], key: str, path: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"{path}.{key} must be a positive number, got {value!r}")
    return float(value)


def _positive_int(section: dict[str, Any], key: str, path: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{path}.{key} must be a positive integer, got {value!r}")
    return value


def parse_config(data: dict[str, Any]) -> CalendarHubConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)

    logging_section = _section(data, "logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Must be 'text' or 'json'.")
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_optional_str(logging_section, "log_root", "logging"),
    )

    aggregation_section = _section(data, "aggregation")
    strict = aggregation_section.get("strict", False)
    if not isinstance(strict, bool):
        raise ConfigError("aggregation.strict must be a boolean")
    aggregation = AggregationConfig(
        account_timeout_seconds=_positive_number(
            aggregation_section,
            "account_timeout_seconds",
            "aggregation",
            AggregationConfig.account_timeout_seconds,
        ),
        strict=strict,
    )

    events_section = _section(data, "events")
    events = EventsConfig(
        page_size=_positive_int(events_section, "page_size", "events", DEFAULT_EVENT_PAGE_SIZE),
        max_pages=_positive_int(events_section, "max_pages", "events", DEFAULT_MAX_EVENT_PAGES),
    )

    database_section = _section(data, "database")
    database = DatabaseConfig(dsn=_optional_str(database_section, "dsn", "database"))

    providers_section = _section(data, "providers")
    unknown = sorted(set(providers_section) - {provider_id.value for provider_id in ProviderId})
    if unknown:
        raise ConfigError(f"Unknown provider section(s): {', '.join(unknown)}")
    providers: dict[ProviderId, ProviderConfig] = {}
    for provider_id in ProviderId:
        section = providers_section.get(provider_id.value, {})
        if not isinstance(section, dict):
            raise ConfigError(f"[providers.{provider_id.value}] must be a table")
        path = f"providers.{provider_id.value}"
        providers[provider_id] = ProviderConfig(
            client_id=_optional_str(section, "client_id", path),
            client_secret=_optional_str(section, "client_secret", path),
            api_base_url=_optional_str(section, "api_base_url", path),
            token_url=_optional_str(section, "token_url", path),
            scope=_optional_str(section, "scope", path),
        )

    return CalendarHubConfig(
        logging=logging_config,
        aggregation=aggregation,
        events=events,
        database=database,
        providers=providers,
    )


def load_config(path: Path | None = None) -> CalendarHubConfig:
    """Load and validate configuration.

    *path* may be a file or a directory containing ``calendar_hub.toml``.
    Without a path, ``$CALENDAR_HUB_CONFIG`` is consulted; when neither is set
    the defaults are returned.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or fails validation.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV_VAR)
        if not env_path:
            return CalendarHubConfig()
        path = Path(env_path)

    toml_path = path / CONFIG_FILE_NAME if path.is_dir() else path
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
