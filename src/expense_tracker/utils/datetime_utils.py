"""
Timezone-aware datetime helpers.

MongoDB hands back naive datetimes; everything in the family engine compares
aware UTC datetimes, so values read from the database go through
ensure_timezone_aware() before use.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


class DateTimeUtils:
    """Centralized datetime utilities with timezone awareness."""

    @staticmethod
    def utc_now() -> datetime:
        """
        Get current UTC datetime with timezone awareness.

        Returns:
            datetime: Current UTC datetime with timezone information
        """
        return datetime.now(timezone.utc)

    @staticmethod
    def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
        """
        Ensure datetime is timezone-aware.

        Args:
            dt: Datetime object to check
            default_tz: Default timezone to use if datetime is naive (defaults to UTC)

        Returns:
            datetime: Timezone-aware datetime object
        """
        if dt.tzinfo is None:
            return dt.replace(tzinfo=default_tz or timezone.utc)
        return dt


def utc_now() -> datetime:
    """Get current UTC datetime with timezone awareness."""
    return DateTimeUtils.utc_now()


def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
    """Ensure datetime is timezone-aware."""
    return DateTimeUtils.ensure_timezone_aware(dt, default_tz)


def ceil_seconds(delta: timedelta) -> int:
    """Whole seconds in delta, rounded up so Retry-After never undershoots."""
    seconds = delta.total_seconds()
    whole = int(seconds)
    return whole if whole == seconds else whole + 1
