from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(_get_zone(timezone_name))


def trading_day(dt: datetime, timezone_name: str = "Asia/Seoul") -> date:
    return to_timezone(dt, timezone_name).date()


def parse_hhmm(value: str | None) -> time | None:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    parts = raw.split(":")
    if len(parts) != 2:
        return None
    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except (TypeError, ValueError):
        return None
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        return None
    return time(hour=hour, minute=minute)


def local_time(dt: datetime, timezone_name: str = "Asia/Seoul") -> time:
    local = to_timezone(dt, timezone_name)
    return time(hour=local.hour, minute=local.minute, second=local.second)


def is_within_window(
    dt: datetime,
    start: str,
    end: str,
    timezone_name: str = "Asia/Seoul",
) -> bool:
    """Inclusive HH:MM window check in the exchange timezone."""
    start_t = parse_hhmm(start)
    end_t = parse_hhmm(end)
    if start_t is None or end_t is None:
        return False
    current = local_time(dt, timezone_name)
    end_inclusive = time(hour=end_t.hour, minute=end_t.minute, second=59)
    return start_t <= current <= end_inclusive


def is_at_or_after(dt: datetime, clock_time: str | None, timezone_name: str = "Asia/Seoul") -> bool:
    cutoff = parse_hhmm(clock_time)
    if cutoff is None:
        return False
    return local_time(dt, timezone_name) >= cutoff
