"""UTC clock helpers shared by the scheduler components."""

from datetime import datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_next_utc_day(now: datetime) -> datetime:
    tomorrow = as_utc(now).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)


def resolve_timezone(name: str | None, default: str) -> ZoneInfo:
    """Load an IANA zone, falling back to ``default`` for missing or unknown names."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return ZoneInfo(default)


def next_local_hour(now: datetime, hour: int, tz: ZoneInfo) -> datetime:
    """Next moment (strictly after ``now``) at ``hour``:00 local time, in UTC."""
    local_now = as_utc(now).astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = datetime.combine(
            local_now.date() + timedelta(days=1), time(hour=hour), tzinfo=tz
        )
    return candidate.astimezone(timezone.utc)


def parse_hour(value: str | None) -> int | None:
    """Hour component of an "HH:MM" string; None when unset or malformed."""
    if not value:
        return None
    try:
        hour = int(str(value).split(":")[0])
    except ValueError:
        return None
    return hour if 0 <= hour <= 23 else None
