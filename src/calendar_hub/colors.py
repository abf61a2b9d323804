"""Deterministic palette colors for calendars without a native color."""

from __future__ import annotations

import re

CALENDAR_PALETTE: tuple[str, ...] = (
    "#FB2C36",
    "#FF6900",
    "#F0B100",
    "#00C950",
    "#2B7FFF",
    "#AD46FF",
)

_HEX_COLOR_PATTERN = re.compile(r"^#?([0-9A-Fa-f]{3}|[0-9A-Fa-f]{6})$")


def assign_color(index: int) -> str:
    """Return the palette color for list position *index*, cycling the palette."""
    return CALENDAR_PALETTE[index % len(CALENDAR_PALETTE)]


def normalize_hex_color(value: str | None) -> str | None:
    """Return *value* as ``#RRGGBB`` or ``None`` when it is not a hex color.

    Three-digit shorthand is expanded (``#abc`` -> ``#AABBCC``).
    """
    if not isinstance(value, str):
        return None
    match = _HEX_COLOR_PATTERN.fullmatch(value.strip())
    if match is None:
        return None
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return f"#{digits.upper()}"

