"""Tests for calendar_hub.timezones: IANA passthrough and Windows name mapping."""

from __future__ import annotations

import pytest

from calendar_hub.timezones import (
    WINDOWS_TO_IANA_TIME_ZONES,
    is_valid_time_zone,
    resolve_time_zone,
)

pytestmark = pytest.mark.unit


class TestIsValidTimeZone:
    @pytest.mark.parametrize("name", ["UTC", "Europe/Berlin", "America/New_York", "Asia/Tokyo"])
    def test_iana_names(self, name):
        assert is_valid_time_zone(name) is True

    @pytest.mark.parametrize("name", ["", "   ", "Mars/Olympus", "W. Europe Standard Time"])
    def test_invalid_names(self, name):
        assert is_valid_time_zone(name) is False


class TestResolveTimeZone:
    def test_iana_name_returned_unchanged(self):
        assert resolve_time_zone("Europe/Berlin") == "Europe/Berlin"

    @pytest.mark.parametrize(
        ("windows", "iana"),
        [
            ("W. Europe Standard Time", "Europe/Berlin"),
            ("Pacific Standard Time", "America/Los_Angeles"),
            ("Eastern Standard Time", "America/New_York"),
            ("Tokyo Standard Time", "Asia/Tokyo"),
            ("tzone://Microsoft/Utc", "UTC"),
        ],
    )
    def test_windows_names_map_to_iana(self, windows, iana):
        assert resolve_time_zone(windows) == iana

    def test_unknown_name_is_none(self):
        assert resolve_time_zone("Atlantis Standard Time") is None

    def test_none_is_none(self):
        assert resolve_time_zone(None) is None

    def test_resolution_is_deterministic(self):
        results = {resolve_time_zone("Romance Standard Time") for _ in range(5)}
        assert results == {"Europe/Paris"}

    def test_every_mapping_target_is_loadable(self):
        unresolvable = [
            name for name in WINDOWS_TO_IANA_TIME_ZONES if resolve_time_zone(name) is None
        ]
        assert unresolvable == []
