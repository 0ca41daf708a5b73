"""Shared clock-time helpers used across the booking engine."""

import re
from datetime import datetime, time, timezone

MINUTES_PER_DAY = 24 * 60
END_OF_DAY = "24:00"


def parse_hhmm(value: str) -> time:
    """Parse an ``HH:MM`` string. ``24:00`` maps to ``time.max`` (end of day).

    Examples:
        >>> parse_hhmm("14:30")
        datetime.time(14, 30)
        >>> parse_hhmm("24:00") == time.max
        True
    """
    value = value.strip()
    if value == END_OF_DAY:
        return time.max
    return datetime.strptime(value, "%H:%M").time()


def minutes_of(value: time) -> int:
    """Minutes since midnight, treating ``time.max`` as 24:00."""
    if value == time.max:
        return MINUTES_PER_DAY
    return value.hour * 60 + value.minute


def time_from_minutes(minutes: int) -> time:
    """Inverse of :func:`minutes_of`."""
    if minutes >= MINUTES_PER_DAY:
        return time.max
    return time(minutes // 60, minutes % 60)


def format_hhmm(value: time) -> str:
    """Format a clock time as ``HH:MM`` (``24:00`` for end of day)."""
    if value == time.max:
        return END_OF_DAY
    return value.strftime("%H:%M")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def natural_key(value: str) -> tuple:
    """Sort key that orders embedded numbers numerically.

    Examples:
        >>> sorted(["s1-10", "s1-2", "s1-1"], key=natural_key)
        ['s1-1', 's1-2', 's1-10']
    """
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in re.split(r"(\d+)", value)
        if part
    )
