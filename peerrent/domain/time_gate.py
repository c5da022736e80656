"""Clock helpers shared by every time-gated transition.

All comparisons are done on timezone-aware UTC instants. Stores that drop
tzinfo on read hand back naive values, which are interpreted as UTC.
"""

import math
from datetime import UTC, datetime, timedelta

SECONDS_PER_HOUR = 3600


def utcnow() -> datetime:
    """Current wall-clock time in UTC."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def hours_until(target: datetime, now: datetime) -> float:
    """Signed hours from ``now`` to ``target`` (negative once passed)."""
    delta = ensure_utc(target) - ensure_utc(now)
    return delta.total_seconds() / SECONDS_PER_HOUR


def is_at_or_past(now: datetime, threshold: datetime) -> bool:
    """True when ``now`` has reached ``threshold``."""
    return ensure_utc(now) >= ensure_utc(threshold)


def is_at_least_hours_before(now: datetime, target: datetime, hours: int) -> bool:
    """True when ``target`` is ``hours`` or more after ``now``.

    The boundary is inclusive: exactly ``hours`` before still counts.
    """
    return ensure_utc(target) - ensure_utc(now) >= timedelta(hours=hours)


def whole_hours_remaining(now: datetime, threshold: datetime) -> int:
    """Hours left until ``threshold``, rounded up; zero once reached."""
    remaining = hours_until(threshold, now)
    if remaining <= 0:
        return 0
    return math.ceil(remaining)
