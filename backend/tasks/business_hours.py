# backend/tasks/business_hours.py
"""
Org business-hours window checks.

Business hours are rows in org_business_hours, one per weekday
(day_of_week 0 = Sunday) with "HH:MM" start_time/end_time and an
is_enabled flag. An org without rows is always open.
"""
import logging
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

from core.config import settings
from core.time_utils import get_timezone, to_local, to_naive_utc

logger = logging.getLogger(__name__)


def _parse_clock(value: Optional[str], default: time) -> time:
    if not value:
        return default
    try:
        parts = [int(p) for p in str(value).split(":")[:2]]
        return time(parts[0], parts[1] if len(parts) > 1 else 0)
    except (ValueError, IndexError):
        return default


def org_timezone(org: Optional[Dict[str, Any]]) -> Optional[str]:
    """Org timezone, falling back to the first business-hours row that names one"""
    if not org:
        return None
    if org.get("timezone"):
        return org["timezone"]
    for row in org.get("business_hours") or []:
        if row.get("timezone"):
            return row["timezone"]
    return None


def is_within_business_hours(
    business_hours: List[Dict[str, Any]],
    now: datetime,
    tz_name: Optional[str] = None
) -> bool:
    """now is naive UTC; the window is evaluated in the org's local time"""
    if not business_hours:
        return True

    local_now = to_local(now, tz_name)
    # Python weekday(): Monday=0; stored rows use Sunday=0
    day_of_week = (local_now.weekday() + 1) % 7

    for row in business_hours:
        if row.get("day_of_week") != day_of_week:
            continue
        if not row.get("is_enabled", True):
            return False
        start = _parse_clock(row.get("start_time"), time(0, 0))
        end = _parse_clock(row.get("end_time"), time(23, 59))
        return start <= local_now.time().replace(tzinfo=None) < end

    return False


def next_business_window_start(now: datetime, tz_name: Optional[str] = None) -> datetime:
    """Next local day at BUSINESS_HOURS_RESUME_HOUR, returned as naive UTC"""
    tz = get_timezone(tz_name)
    local_now = to_local(now, tz_name)
    next_day = (local_now + timedelta(days=1)).date()
    resume = tz.localize(datetime.combine(next_day, time(settings.BUSINESS_HOURS_RESUME_HOUR, 0)))
    return to_naive_utc(resume)
