"""
Clock helpers.

Components take a ``clock`` callable returning an aware UTC datetime so that
quota windows and fact timestamps can be pinned in tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def next_sunday(now: datetime) -> datetime:
    """
    Next Sunday 00:00 UTC strictly after ``now``.

    A call made on a Sunday (even at 00:00) returns the following Sunday.
    """
    now = now.astimezone(timezone.utc)
    # weekday(): Monday=0 ... Sunday=6
    days_ahead = (6 - now.weekday()) % 7 or 7
    target = now + timedelta(days=days_ahead)
    return target.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_timestamp(value) -> datetime:
    """Parse a PostgREST timestamp (ISO string) into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current
