"""Optimal send-time calculation for delayable messages."""

from datetime import datetime

from relay_platform.infra.clock import as_utc, next_local_hour, resolve_timezone

DEFAULT_SEND_HOUR = 10  # local time, when the user has no response pattern


def _best_hours(user) -> list[int]:
    """Valid hours from the user's response pattern; malformed entries are ignored."""
    pattern = getattr(user, "response_pattern", None)
    if not isinstance(pattern, dict):
        return []
    hours = pattern.get("best_hours")
    if not isinstance(hours, (list, tuple)):
        return []

    valid = set()
    for raw in hours:
        try:
            hour = int(raw)
        except (TypeError, ValueError):
            continue
        if 0 <= hour <= 23:
            valid.add(hour)
    return sorted(valid)


def calculate_optimal_send_time(user, now: datetime, default_timezone: str) -> datetime:
    """When a delayable message to ``user`` should go out.

    - Current local hour is one of the user's best hours: now.
    - Otherwise the next best hour later today, or the first one tomorrow.
    - No response pattern: the next 10:00 local time.
    """
    tz = resolve_timezone(getattr(user, "timezone", None), default_timezone)
    now = as_utc(now)
    best_hours = _best_hours(user)

    if not best_hours:
        return next_local_hour(now, DEFAULT_SEND_HOUR, tz)

    current_hour = now.astimezone(tz).hour
    if current_hour in best_hours:
        return now

    later_today = [h for h in best_hours if h > current_hour]
    target = later_today[0] if later_today else best_hours[0]
    return next_local_hour(now, target, tz)
