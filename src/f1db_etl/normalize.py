"""Normalization functions for f1db CSV ingestion.

Cell rules accept str | None and return the appropriate type or None.
Time rules raise ParseError on anything that is not an exact match.
"""

from __future__ import annotations

import math
import re
from datetime import time, timedelta

# Ergast dumps write SQL NULL as \N
_NULL_TOKEN = "\\N"

# HH:M[M]:SS[.mmm], matched with fullmatch
_CLOCK_RE = re.compile(
    r"(?P<hours>[0-9]{2}):(?P<minutes>[0-9]{1,2}):(?P<seconds>[0-9]{2})(?:\.(?P<millis>[0-9]{3}))?"
)

# Plain ASCII digits only: no sign prefix, no digit separators, no exponent.
_INT_RE = re.compile(r"-?[0-9]+")
_FLOAT_RE = re.compile(r"-?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)")

_ONE_MS = timedelta(milliseconds=1)


class ParseError(ValueError):
    """Raised when a time or duration cell does not match its format."""

    def __init__(self, text: str, expected: str) -> None:
        super().__init__(f"invalid {expected}: {text!r}")
        self.text = text
        self.expected = expected


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string and \\N as None."""
    if value is None:
        return None
    v = value.strip()
    if not v or v == _NULL_TOKEN:
        return None
    return v


# ---------------------------------------------------------------------------
# Rule 2: parse_int / parse_float
# ---------------------------------------------------------------------------

def parse_int(value: str | None) -> int | None:
    """Parse a base-10 integer.  Blank → None; garbage raises ParseError."""
    v = trim(value)
    if v is None:
        return None
    if _INT_RE.fullmatch(v) is None:
        raise ParseError(v, "integer")
    return int(v, 10)


def parse_float(value: str | None) -> float | None:
    """Parse a finite decimal number.  Blank → None; garbage raises ParseError.

    nan, inf and exponent forms are rejected.
    """
    v = trim(value)
    if v is None:
        return None
    if _FLOAT_RE.fullmatch(v) is None:
        raise ParseError(v, "decimal number")
    result = float(v)
    if not math.isfinite(result):
        raise ParseError(v, "decimal number")
    return result


# ---------------------------------------------------------------------------
# Rule 3: clock-based time parsing
# ---------------------------------------------------------------------------

def _parse_clock(text: str, with_millis: bool, expected: str) -> time:
    """Parse one 24-hour clock reading.

    Millisecond digits are required when with_millis is true and rejected
    otherwise.  ``expected`` names the caller's format for the error message.
    """
    m = _CLOCK_RE.fullmatch(text)
    if m is None or (m.group("millis") is not None) != with_millis:
        raise ParseError(text, expected)
    millis = int(m.group("millis") or 0)
    try:
        return time(
            int(m.group("hours")),
            int(m.group("minutes")),
            int(m.group("seconds")),
            millis * 1000,
        )
    except ValueError:
        raise ParseError(text, expected) from None


def _since_midnight(t: time) -> timedelta:
    return timedelta(
        hours=t.hour,
        minutes=t.minute,
        seconds=t.second,
        microseconds=t.microsecond,
    )


def parse_lap_duration(value: str) -> timedelta:
    """Parse a lap time 'M:SS.mmm', e.g. '1:23.456' → 83.456s."""
    try:
        t = _parse_clock(f"00:{value}", with_millis=True, expected="lap time")
    except ParseError:
        raise ParseError(value, "lap time") from None
    return _since_midnight(t)


def parse_wall_time(value: str) -> time:
    """Parse a time of day 'HH:MM:SS' (no fractional seconds)."""
    return _parse_clock(value, with_millis=False, expected="time of day")


def parse_pit_stop_duration(value: str) -> timedelta:
    """Parse a pit stop duration 'SS.mmm', e.g. '23.456' → 23.456s."""
    try:
        t = _parse_clock(f"00:00:{value}", with_millis=True, expected="pit stop duration")
    except ParseError:
        raise ParseError(value, "pit stop duration") from None
    return _since_midnight(t)


# ---------------------------------------------------------------------------
# Rule 4: rendering for destination columns
# ---------------------------------------------------------------------------

def duration_millis(value: timedelta) -> int:
    """Whole milliseconds in a duration."""
    return value // _ONE_MS


def format_lap_duration(value: timedelta) -> str:
    """Render a lap duration as 'M:SS.mmm'."""
    minutes, rem = divmod(duration_millis(value), 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{minutes}:{seconds:02d}.{millis:03d}"


def format_pit_stop_duration(value: timedelta) -> str:
    """Render a pit stop duration as 'S.mmm' (seconds without padding)."""
    seconds, millis = divmod(duration_millis(value), 1000)
    return f"{seconds}.{millis:03d}"


def format_wall_time(value: time) -> str:
    return value.strftime("%H:%M:%S")
