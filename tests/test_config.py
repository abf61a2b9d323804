"""Tests for calendar_hub.config: TOML loading, env resolution, and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from calendar_hub.config import (
    CONFIG_FILE_NAME,
    CalendarHubConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)
from calendar_hub.errors import ConfigError
from calendar_hub.models import ProviderId
from calendar_hub.providers.base import DEFAULT_EVENT_PAGE_SIZE, DEFAULT_MAX_EVENT_PAGES
from calendar_hub.tokens import DEFAULT_TOKEN_URLS

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(tmp_path: Path, content: str) -> Path:
    """Write *content* to calendar_hub.toml inside *tmp_path* and return the directory."""
    (tmp_path / CONFIG_FILE_NAME).write_text(content)
    return tmp_path


@pytest.fixture(autouse=True)
def _no_config_env(monkeypatch):
    monkeypatch.delenv("CALENDAR_HUB_CONFIG", raising=False)


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_embedded_reference(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db.internal")
        assert resolve_env_vars("postgresql://${DB_HOST}/hub") == "postgresql://db.internal/hub"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("SECRET", "s3cret")
        data = {"providers": {"google": {"client_secret": "${SECRET}", "tags": ["${SECRET}", 1]}}}
        assert resolve_env_vars(data) == {
            "providers": {"google": {"client_secret": "s3cret", "tags": ["s3cret", 1]}}
        }

    def test_non_strings_pass_through(self):
        assert resolve_env_vars(15.0) == 15.0
        assert resolve_env_vars(True) is True

    def test_all_missing_variables_reported(self, monkeypatch):
        monkeypatch.delenv("MISSING_A", raising=False)
        monkeypatch.delenv("MISSING_B", raising=False)
        with pytest.raises(ConfigError, match="MISSING_A, MISSING_B"):
            resolve_env_vars("${MISSING_A}:${MISSING_B}")


# ---------------------------------------------------------------------------
# parse_config
# ---------------------------------------------------------------------------


class TestParseConfig:
    def test_defaults(self):
        config = parse_config({})
        assert config.logging.level == "INFO"
        assert config.logging.format == "text"
        assert config.aggregation.account_timeout_seconds == 15.0
        assert config.aggregation.strict is False
        assert config.events.page_size == DEFAULT_EVENT_PAGE_SIZE
        assert config.events.max_pages == DEFAULT_MAX_EVENT_PAGES
        assert config.database.dsn is None
        assert set(config.providers) == set(ProviderId)
        assert config.oauth_clients() == {}

    def test_full_document(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "g-secret")
        config = parse_config(
            {
                "logging": {"level": "debug", "format": "JSON"},
                "aggregation": {"account_timeout_seconds": 5, "strict": True},
                "events": {"page_size": 100, "max_pages": 2},
                "database": {"dsn": "postgresql://localhost/hub"},
                "providers": {
                    "google": {
                        "client_id": "g-client",
                        "client_secret": "${GOOGLE_CLIENT_SECRET}",
                    },
                    "microsoft": {"api_base_url": "https://graph.test/v1.0"},
                },
            }
        )

        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.aggregation.account_timeout_seconds == 5.0
        assert config.aggregation.strict is True
        assert (config.events.page_size, config.events.max_pages) == (100, 2)
        assert config.database.dsn == "postgresql://localhost/hub"
        assert config.providers[ProviderId.microsoft].api_base_url == "https://graph.test/v1.0"

        clients = config.oauth_clients()
        assert list(clients) == [ProviderId.google]
        assert clients[ProviderId.google].client_secret == "g-secret"
        assert clients[ProviderId.google].token_url == DEFAULT_TOKEN_URLS[ProviderId.google]

    def test_provider_repr_hides_secret(self):
        config = parse_config(
            {"providers": {"google": {"client_id": "g", "client_secret": "hunter2"}}}
        )
        assert "hunter2" not in repr(config.providers[ProviderId.google])

    def test_blank_strings_are_unset(self):
        config = parse_config({"database": {"dsn": "   "}})
        assert config.database.dsn is None

    @pytest.mark.parametrize(
        ("data", "match"),
        [
            ({"logging": {"format": "xml"}}, "logging.format"),
            ({"aggregation": {"account_timeout_seconds": 0}}, "account_timeout_seconds"),
            ({"aggregation": {"account_timeout_seconds": True}}, "account_timeout_seconds"),
            ({"aggregation": {"strict": "yes"}}, "aggregation.strict"),
            ({"events": {"page_size": 2.5}}, "events.page_size"),
            ({"events": {"max_pages": 0}}, "events.max_pages"),
            ({"database": {"dsn": 5432}}, "database.dsn"),
            ({"database": "postgresql://"}, r"\[database\] must be a table"),
            ({"providers": {"icloud": {}}}, "Unknown provider section"),
            ({"providers": {"google": "oops"}}, r"\[providers.google\] must be a table"),
        ],
    )
    def test_invalid_values(self, data, match):
        with pytest.raises(ConfigError, match=match):
            parse_config(data)


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_no_path_no_env_gives_defaults(self):
        config = load_config()
        assert isinstance(config, CalendarHubConfig)
        assert config.database.dsn is None

    def test_directory_path(self, tmp_path):
        config_dir = _write_toml(tmp_path, '[database]\ndsn = "postgresql://localhost/hub"\n')
        assert load_config(config_dir).database.dsn == "postgresql://localhost/hub"

    def test_file_path(self, tmp_path):
        path = tmp_path / "custom.toml"
        path.write_text("[events]\nmax_pages = 7\n")
        assert load_config(path).events.max_pages == 7

    def test_env_var_path(self, tmp_path, monkeypatch):
        _write_toml(tmp_path, "[aggregation]\nstrict = true\n")
        monkeypatch.setenv("CALENDAR_HUB_CONFIG", str(tmp_path))
        assert load_config().aggregation.strict is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        config_dir = _write_toml(tmp_path, "[database\ndsn = \n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(config_dir)

    def test_unresolved_env_var_in_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HUB_DSN_UNSET", raising=False)
        config_dir = _write_toml(tmp_path, '[database]\ndsn = "${HUB_DSN_UNSET}"\n')
        with pytest.raises(ConfigError, match="HUB_DSN_UNSET"):
            load_config(config_dir)
