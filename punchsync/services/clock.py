from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from punchsync.settings import get_settings

DEFAULT_TIMEZONE = "Asia/Karachi"


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except Exception:
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_work_date(ts_utc: datetime) -> date:
    return normalize_ts(ts_utc).astimezone(attendance_timezone()).date()


def local_to_utc(ts_local: datetime) -> datetime:
    """Interpret a naive upstream timestamp as attendance-local time."""
    if ts_local.tzinfo is None:
        return ts_local.replace(tzinfo=attendance_timezone()).astimezone(timezone.utc)
    return ts_local.astimezone(timezone.utc)


def local_day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    tz = attendance_timezone()
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = local_start + timedelta(days=1)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def hours_between(start_utc: datetime, end_utc: datetime) -> float:
    return (normalize_ts(end_utc) - normalize_ts(start_utc)).total_seconds() / 3600.0
