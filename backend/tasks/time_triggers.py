# backend/tasks/time_triggers.py
"""
Daily scan that emits inactivity and time_based trigger events.

Both trigger types match everything in the matcher, so this scan is where
their predicates live. Each rule only sees contacts that crossed its own
threshold during the last day, and events are restricted to that rule.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError

from core.config import settings
from core.time_utils import parse_timestamp, utc_now
from models.automation import TriggerEvent, TriggerType, parse_trigger_config

logger = logging.getLogger(__name__)


async def _emit(scheduler, rule: Dict[str, Any], contact: Dict[str, Any],
                trigger_type: TriggerType, trigger_data: Dict[str, Any]) -> bool:
    event = TriggerEvent(
        org_id=rule["org_id"],
        trigger_type=trigger_type,
        contact_id=contact["id"],
        trigger_data=trigger_data,
    )
    try:
        result = await scheduler.handle_trigger(event, rule_ids=[rule["id"]])
    except Exception as e:
        logger.error(f"❌ {trigger_type.value} event failed for contact {contact['id']}: {e}")
        return False
    return result.get("rules_processed", 0) > 0


async def _paged_contacts(fetch, *args):
    """Yield every contact a paged repository query matches, one batch at a time"""
    batch_size = settings.INACTIVITY_SCAN_BATCH_SIZE
    after_id = None
    while True:
        page = await fetch(*args, batch_size, after_id=after_id)
        for contact in page:
            yield contact
        if len(page) < batch_size:
            return
        after_id = page[-1]["id"]


async def scan_inactivity_rules(repo, scheduler, now: datetime) -> Dict[str, int]:
    stats = {"rules": 0, "events": 0, "scheduled": 0}

    for rule in await repo.find_active_rules_by_trigger(TriggerType.INACTIVITY.value):
        try:
            config = parse_trigger_config(TriggerType.INACTIVITY.value, rule.get("trigger_config"))
        except ValidationError as e:
            logger.error(f"Skipping inactivity rule {rule['id']}: {e}")
            continue

        stats["rules"] += 1
        window_end = now - timedelta(days=config.days_inactive)
        window_start = window_end - timedelta(days=1)
        contacts = _paged_contacts(repo.find_contacts_updated_between, rule["org_id"], window_start, window_end)

        async for contact in contacts:
            last_activity = parse_timestamp(contact.get("updated_at"))
            trigger_data = {
                "days_inactive": (now - last_activity).days if last_activity else config.days_inactive,
                "last_activity": last_activity.isoformat() if last_activity else None,
            }
            stats["events"] += 1
            if await _emit(scheduler, rule, contact, TriggerType.INACTIVITY, trigger_data):
                stats["scheduled"] += 1

    return stats


async def scan_time_based_rules(repo, scheduler, now: datetime) -> Dict[str, int]:
    stats = {"rules": 0, "events": 0, "scheduled": 0}
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    for rule in await repo.find_active_rules_by_trigger(TriggerType.TIME_BASED.value):
        try:
            config = parse_trigger_config(TriggerType.TIME_BASED.value, rule.get("trigger_config"))
        except ValidationError as e:
            logger.error(f"Skipping time_based rule {rule['id']}: {e}")
            continue
        if not config.date_field:
            continue

        stats["rules"] += 1
        day_start = today - timedelta(days=config.offset_days)
        contacts = _paged_contacts(
            repo.find_contacts_by_date_field,
            rule["org_id"], config.date_field, day_start, day_start + timedelta(days=1)
        )

        async for contact in contacts:
            field_value = parse_timestamp(contact.get(config.date_field))
            trigger_data = {
                "date_field": config.date_field,
                "date_value": field_value.isoformat() if field_value else None,
                "offset_days": config.offset_days,
            }
            stats["events"] += 1
            if await _emit(scheduler, rule, contact, TriggerType.TIME_BASED, trigger_data):
                stats["scheduled"] += 1

    return stats


async def scan_time_triggers(repo, scheduler, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utc_now()
    logger.info("🔎 Scanning for inactivity and date-based automation triggers")

    inactivity = await scan_inactivity_rules(repo, scheduler, now)
    time_based = await scan_time_based_rules(repo, scheduler, now)

    logger.info(
        f"✅ Time trigger scan done: {inactivity['scheduled']} inactivity, "
        f"{time_based['scheduled']} date-based executions"
    )
    return {"inactivity": inactivity, "time_based": time_based}
