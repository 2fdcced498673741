# backend/tasks/cooldown.py
"""Per-rule, per-contact send frequency gate"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.time_utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


def cooldown_allows(
    cooldown: Optional[Dict[str, Any]],
    max_sends_per_contact: Optional[int],
    cooldown_period_days: Optional[float],
    now: Optional[datetime] = None
) -> bool:
    """Decide from an existing cooldown record whether another send is allowed"""
    if not cooldown:
        return True

    if max_sends_per_contact and cooldown.get("send_count", 0) >= max_sends_per_contact:
        return False

    if cooldown_period_days:
        last_sent = parse_timestamp(cooldown.get("last_sent_at"))
        if last_sent is not None:
            now = now or utc_now()
            if now < last_sent + timedelta(days=cooldown_period_days):
                return False

    return True


async def can_send(repo, rule: Dict[str, Any], contact_id: str, now: Optional[datetime] = None) -> bool:
    """Read-only gate; the increment happens after a successful send"""
    cooldown = await repo.get_cooldown(rule["id"], contact_id)
    allowed = cooldown_allows(
        cooldown,
        rule.get("max_sends_per_contact"),
        rule.get("cooldown_period_days"),
        now=now
    )
    if not allowed:
        logger.info(f"⏸️ Cooldown active for rule {rule['id']} contact {contact_id}")
    return allowed
