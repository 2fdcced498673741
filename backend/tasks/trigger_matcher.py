# backend/tasks/trigger_matcher.py
"""
Per-trigger-type matching of a rule's trigger_config against an event payload
"""
import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from core.time_utils import parse_timestamp
from models.automation import (
    ActivityLoggedConfig,
    AssignmentChangedConfig,
    DispositionSetConfig,
    EmailEngagementConfig,
    FieldUpdatedConfig,
    StageChangeConfig,
    parse_trigger_config,
)

logger = logging.getLogger(__name__)

WILDCARD = "any"


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def match_stage_change(config: StageChangeConfig, data: Dict[str, Any]) -> bool:
    if config.from_stage_id and config.from_stage_id != WILDCARD:
        if config.from_stage_id != data.get("from_stage_id"):
            return False
    if config.to_stage_id and config.to_stage_id != WILDCARD:
        if config.to_stage_id != data.get("to_stage_id"):
            return False
    return True


def match_disposition_set(config: DispositionSetConfig, data: Dict[str, Any]) -> bool:
    if config.disposition_ids and data.get("disposition_id") not in config.disposition_ids:
        return False
    if config.sub_disposition_ids and data.get("sub_disposition_id") not in config.sub_disposition_ids:
        return False
    return True


def match_activity_logged(config: ActivityLoggedConfig, data: Dict[str, Any]) -> bool:
    if config.activity_types and data.get("activity_type") not in config.activity_types:
        return False
    if config.min_call_duration_seconds:
        duration = _to_float(data.get("call_duration"))
        if duration is None or duration < config.min_call_duration_seconds:
            return False
    return True


def threshold_passes(threshold: str, value: float) -> bool:
    """'>100' / '<5' style threshold; anything else passes"""
    threshold = threshold.strip()
    if threshold[:1] not in (">", "<"):
        return True
    limit = _to_float(threshold[1:].strip())
    if limit is None:
        return True
    if threshold.startswith(">"):
        return value > limit
    return value < limit


def match_field_updated(config: FieldUpdatedConfig, data: Dict[str, Any]) -> bool:
    if config.field_id and config.field_id != data.get("custom_field_id"):
        return False

    new_value = data.get("new_value")
    if config.change_type == "set" and not new_value:
        return False
    if config.change_type == "cleared" and new_value:
        return False

    if config.value_threshold and new_value:
        number = _to_float(new_value)
        if number is None:
            return False
        if not threshold_passes(config.value_threshold, number):
            return False
    return True


def match_assignment_changed(config: AssignmentChangedConfig, data: Dict[str, Any]) -> bool:
    if config.assigned_to_user_ids and data.get("new_user_id") not in config.assigned_to_user_ids:
        return False
    if config.assigned_to_team_ids and data.get("new_team_id") not in config.assigned_to_team_ids:
        return False
    return True


def match_email_engagement(config: EmailEngagementConfig, data: Dict[str, Any]) -> bool:
    engagement_type = data.get("engagement_type")
    if config.engagement_type and config.engagement_type != engagement_type:
        return False

    if config.within_hours and data.get("sent_at"):
        sent_at = parse_timestamp(data.get("sent_at"))
        engaged_key = "opened_at" if engagement_type == "opened" else "clicked_at"
        engaged_at = parse_timestamp(data.get(engaged_key))
        if sent_at is None or engaged_at is None:
            return False
        hours = (engaged_at - sent_at).total_seconds() / 3600
        if hours > config.within_hours:
            return False
    return True


def _pass_through(config, data) -> bool:
    # Candidates are pre-filtered by the periodic scan
    return True


MATCHERS: Dict[str, Callable[[Any, Dict[str, Any]], bool]] = {
    "stage_change": match_stage_change,
    "disposition_set": match_disposition_set,
    "activity_logged": match_activity_logged,
    "field_updated": match_field_updated,
    "inactivity": _pass_through,
    "time_based": _pass_through,
    "assignment_changed": match_assignment_changed,
    "email_engagement": match_email_engagement,
}


def matches_trigger(
    trigger_type: str,
    trigger_config: Optional[Dict[str, Any]],
    trigger_data: Optional[Dict[str, Any]]
) -> bool:
    """True when the event payload satisfies the rule's trigger config.

    Unknown trigger types and malformed configs never match.
    """
    matcher = MATCHERS.get(trigger_type)
    if matcher is None:
        logger.warning(f"Unknown trigger type: {trigger_type}")
        return False

    try:
        config = parse_trigger_config(trigger_type, trigger_config)
    except ValidationError as e:
        logger.error(f"Invalid {trigger_type} trigger config: {e}")
        return False

    return matcher(config, trigger_data or {})
