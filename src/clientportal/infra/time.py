"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def is_expired(started_at: datetime, ttl_seconds: float | None, now: datetime) -> bool:
    """True when ttl_seconds is set and started_at + ttl is at or before now.

    A ttl of None or <= 0 means "never expires".
    """
    if not ttl_seconds or ttl_seconds <= 0:
        return False
    return started_at + timedelta(seconds=ttl_seconds) <= now
