"""
Helper Functions
================

Common utility functions used across the application.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from dateutil.parser import isoparse

# A yearly period starting later than this would end past datetime.max
LATEST_PERIOD_START = datetime(9998, 12, 31, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def from_epoch_ms(value: Any) -> Optional[datetime]:
    """
    Convert a millisecond epoch timestamp to an aware UTC datetime.

    Returns None for missing, non-numeric, boolean or out-of-range input.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        millis = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if millis != millis or millis <= 0:  # NaN or non-positive
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion of a provider/SDK timestamp to UTC.

    Accepts datetimes, epoch milliseconds (int, float or numeric string)
    and ISO 8601 strings. Anything else yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").replace(".", "", 1).isdigit():
            return from_epoch_ms(text)
        try:
            parsed = isoparse(text)
        except (ValueError, OverflowError):
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None
