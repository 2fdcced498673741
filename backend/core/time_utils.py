"""Time helpers shared by the automation engine.

Stored timestamps are naive UTC datetimes, which is what pymongo hands back.
"""
from datetime import datetime, timezone
from typing import Any, Optional

import pytz


def utc_now() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO strings (with or without a Z suffix)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def get_timezone(name: Optional[str]):
    """pytz timezone for name, UTC when missing or unknown"""
    if not name:
        return pytz.UTC
    try:
        return pytz.timezone(name)
    except pytz.exceptions.UnknownTimeZoneError:
        return pytz.UTC


def to_local(dt: datetime, tz_name: Optional[str]) -> datetime:
    """Naive UTC -> aware local time in tz_name"""
    return pytz.UTC.localize(dt).astimezone(get_timezone(tz_name))
