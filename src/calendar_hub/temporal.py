"""Provider-agnostic temporal values for event boundaries.

Three variants are used uniformly across providers:

- ``PlainDate``: a calendar date with no zone (all-day events)
- ``Instant``: an absolute point in time with no zone of its own
- ``ZonedDateTime``: an absolute point in time paired with an IANA zone id

All three are frozen pydantic models tagged by ``kind`` so that the
``TemporalValue`` union round-trips through JSON without losing the variant.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from typing import Annotated, Any, Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from calendar_hub.timezones import is_valid_time_zone

# Graph returns up to seven fractional digits; datetime accepts six.
_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


def format_utc(value: datetime) -> str:
    """Format *value* as an RFC 3339 UTC string with a ``Z`` suffix."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO 8601 date-time, keeping it naive when no offset is present."""
    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _FRACTION_PATTERN.sub(r"\1", normalized)
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid ISO 8601 date-time: {value!r}") from exc


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 date-time into an aware datetime (naive input is UTC)."""
    parsed = parse_iso_datetime(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


class PlainDate(BaseModel):
    """A calendar date without time-of-day or zone."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["date"] = "date"
    value: date

    @field_validator("value", mode="before")
    @classmethod
    def _reject_datetime(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            raise ValueError("PlainDate requires a date without a time-of-day component")
        if isinstance(value, str) and "T" in value:
            raise ValueError("PlainDate requires a date-only string")
        return value

    def to_instant(self) -> datetime:
        """Midnight UTC of this date."""
        return datetime(self.value.year, self.value.month, self.value.day, tzinfo=UTC)

    def isoformat(self) -> str:
        return self.value.isoformat()


class Instant(BaseModel):
    """An absolute point in time, always held as an aware UTC datetime."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["instant"] = "instant"
    value: datetime

    @field_validator("value", mode="before")
    @classmethod
    def _parse_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_rfc3339(value)
        return value

    @field_validator("value")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @classmethod
    def now(cls) -> Instant:
        return cls(value=datetime.now(UTC))

    @classmethod
    def parse(cls, value: str) -> Instant:
        return cls(value=parse_rfc3339(value))

    def to_instant(self) -> datetime:
        return self.value

    def isoformat(self) -> str:
        return format_utc(self.value)


class ZonedDateTime(BaseModel):
    """An absolute point in time observed in an IANA zone."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["zoned"] = "zoned"
    value: datetime
    time_zone: str

    @model_validator(mode="before")
    @classmethod
    def _localize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        time_zone = data.get("time_zone")
        if not isinstance(time_zone, str) or not is_valid_time_zone(time_zone):
            raise ValueError(f"time_zone must be a valid IANA timezone: {time_zone!r}")

        value = data.get("value")
        if isinstance(value, str):
            value = parse_iso_datetime(value)
        if isinstance(value, datetime):
            zone = ZoneInfo(time_zone)
            # Naive values are wall-clock time in the zone.
            value = value.replace(tzinfo=zone) if value.tzinfo is None else value.astimezone(zone)
        return {**data, "value": value}

    @classmethod
    def from_instant(cls, value: datetime, time_zone: str) -> ZonedDateTime:
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return cls(value=aware, time_zone=time_zone)

    def with_time_zone(self, time_zone: str) -> ZonedDateTime:
        """Same instant observed in another zone."""
        return ZonedDateTime(value=self.value, time_zone=time_zone)

    def to_instant(self) -> datetime:
        return self.value.astimezone(UTC)

    def local_isoformat(self) -> str:
        """Wall-clock time in the zone, without an offset."""
        return self.value.replace(tzinfo=None).isoformat()

    def isoformat(self) -> str:
        """Wall-clock time in the zone, with its UTC offset."""
        return self.value.isoformat()


TemporalValue = Annotated[PlainDate | Instant | ZonedDateTime, Field(discriminator="kind")]


def is_plain_date(value: PlainDate | Instant | ZonedDateTime) -> bool:
    return isinstance(value, PlainDate)


def to_instant(value: PlainDate | Instant | ZonedDateTime) -> datetime:
    """Resolve any temporal value to an aware UTC datetime."""
    return value.to_instant()


def from_python(
    value: date | datetime,
    *,
    time_zone: str | None = None,
) -> PlainDate | Instant | ZonedDateTime:
    """Build a temporal value from a stdlib ``date``/``datetime``.

    - ``date`` -> ``PlainDate``
    - ``datetime`` with an explicit *time_zone* or a ``ZoneInfo`` tzinfo -> ``ZonedDateTime``
    - any other aware ``datetime`` -> ``Instant``
    - naive ``datetime`` without *time_zone* -> ``ValueError``
    """
    if not isinstance(value, datetime):
        return PlainDate(value=value)
    if time_zone is not None:
        return ZonedDateTime(value=value, time_zone=time_zone)
    if isinstance(value.tzinfo, ZoneInfo) and value.tzinfo.key not in ("UTC", "Etc/UTC"):
        return ZonedDateTime(value=value, time_zone=value.tzinfo.key)
    if value.tzinfo is None:
        raise ValueError("naive datetime requires an explicit time_zone")
    return Instant(value=value)


def ensure_not_before(
    start: PlainDate | Instant | ZonedDateTime,
    end: PlainDate | Instant | ZonedDateTime,
) -> None:
    """Raise ``ValueError`` when *end* resolves to an earlier point than *start*."""
    if isinstance(start, PlainDate) != isinstance(end, PlainDate):
        raise ValueError(
            "start and end must be the same type: both dates or both date-times "
            "(mixed date/date-time boundaries are not allowed)"
        )
    if to_instant(end) < to_instant(start):
        raise ValueError("end must not be earlier than start")
