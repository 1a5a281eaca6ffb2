"""
TSO helpers.

A TSO is the store's commit timestamp: a physical wall clock in
milliseconds shifted left by 18 bits, OR-ed with a logical counter.
"""

from datetime import datetime, timezone
from typing import Optional

PHYSICAL_SHIFT_BITS = 18
LOGICAL_MASK = (1 << PHYSICAL_SHIFT_BITS) - 1

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def compose_tso(physical_ms: int, logical: int = 0) -> int:
    """Build a TSO from a millisecond timestamp and a logical counter."""
    if logical < 0 or logical > LOGICAL_MASK:
        raise ValueError(f"logical part out of range: {logical}")
    return (physical_ms << PHYSICAL_SHIFT_BITS) | logical


def extract_physical(tso: int) -> int:
    """Return the physical part of a TSO, in milliseconds since the epoch."""
    return tso >> PHYSICAL_SHIFT_BITS


def extract_logical(tso: int) -> int:
    return tso & LOGICAL_MASK


def tso_to_datetime(tso: int, tz: Optional[timezone] = None) -> datetime:
    """Convert a TSO to an aware datetime (local time unless tz is given)."""
    seconds = extract_physical(tso) / 1000.0
    return datetime.fromtimestamp(seconds, tz=tz).astimezone(tz)


def datetime_to_tso(value: datetime) -> int:
    """
    Convert a datetime to the smallest TSO at that instant.

    Naive datetimes are interpreted in local time.
    """
    physical_ms = int(round(value.timestamp() * 1000))
    return compose_tso(physical_ms)


def parse_datetime(text: str) -> datetime:
    """
    Parse a "YYYY-MM-DD HH:MM:SS" string in local time.

    Raises:
        ValueError: If the text does not match the format
    """
    return datetime.strptime(text.strip(), DATETIME_FORMAT)
