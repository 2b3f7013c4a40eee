"""UTC-everywhere time handling. Due dates, reminders and audit stamps are all UTC."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def to_local(dt: datetime, tz_name: str) -> datetime:
    """
    Convert UTC datetime to a studio's local timezone for display.

    ONLY use this at display boundaries (email bodies, PDFs).

    Raises:
        ValueError: If datetime is naive or timezone name is invalid
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime. Datetime must be timezone-aware."
        )

    try:
        local_tz = ZoneInfo(tz_name)
    except KeyError:
        raise ValueError(f"Unknown timezone: {tz_name}")

    return dt.astimezone(local_tz)


def days_from_now(days: int) -> datetime:
    """UTC datetime `days` whole days after now (Net-30 due dates and the like)."""
    return now_utc() + timedelta(days=days)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """
    Number of complete days elapsed from `earlier` to `later`.

    Truncates toward zero, so 6 days 23 hours is 6. Negative when `later`
    precedes `earlier`.
    """
    delta = to_utc(later) - to_utc(earlier)
    days = delta.days
    if days < 0 and delta.seconds:
        days += 1
    return days
