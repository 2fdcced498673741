# backend/tasks/condition_evaluator.py
"""
Evaluates a rule's condition list against a contact.

A condition that cannot be evaluated (bad shape, failed lookup) counts as
false and is logged; it never aborts the surrounding rule evaluation.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.time_utils import to_local, utc_now
from models.automation import (
    ActivityHistoryCondition,
    ContactFieldCondition,
    CustomFieldCondition,
    Operator,
    TimeCondition,
    UserTeamCondition,
    condition_adapter,
)

logger = logging.getLogger(__name__)

DAY_ABBREVIATIONS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
MONTH_ABBREVIATIONS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                       "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

NUMERIC_OPERATORS = {
    Operator.GREATER_THAN: lambda a, b: a > b,
    Operator.LESS_THAN: lambda a, b: a < b,
    Operator.GREATER_THAN_OR_EQUAL: lambda a, b: a >= b,
    Operator.LESS_THAN_OR_EQUAL: lambda a, b: a <= b,
}


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).lower().strip()


def compare_values(actual: Any, operator: str, expected: Any) -> bool:
    """Case-insensitive comparison; numeric operators compare as floats"""
    try:
        operator = Operator(operator)
    except ValueError:
        return False

    if actual is None:
        return operator in (Operator.IS_EMPTY, Operator.NOT_EQUALS)

    if operator in NUMERIC_OPERATORS:
        try:
            return NUMERIC_OPERATORS[operator](float(actual), float(expected))
        except (TypeError, ValueError):
            return False

    actual_text = _as_text(actual)
    expected_text = _as_text(expected) if expected is not None else ""

    if operator == Operator.EQUALS:
        return actual_text == expected_text
    if operator == Operator.NOT_EQUALS:
        return actual_text != expected_text
    if operator == Operator.CONTAINS:
        return expected_text in actual_text
    if operator == Operator.NOT_CONTAINS:
        return expected_text not in actual_text
    if operator == Operator.STARTS_WITH:
        return actual_text.startswith(expected_text)
    if operator == Operator.ENDS_WITH:
        return actual_text.endswith(expected_text)
    if operator == Operator.IS_EMPTY:
        return len(actual_text) == 0
    if operator == Operator.IS_NOT_EMPTY:
        return len(actual_text) > 0

    members = [item.strip() for item in expected_text.split(",")]
    if operator == Operator.IN:
        return actual_text in members
    if operator == Operator.NOT_IN:
        return actual_text not in members
    return False


class ConditionEvaluator:
    """Evaluates conditions for one contact, caching its custom field values"""

    def __init__(self, repo, contact: Dict[str, Any], now: Optional[datetime] = None,
                 timezone: Optional[str] = None):
        self.repo = repo
        self.contact = contact or {}
        self.now = now or utc_now()
        self.timezone = timezone
        self._custom_fields: Optional[Dict[str, Any]] = self.contact.get("custom_fields")

    async def evaluate(self, conditions: List[Dict[str, Any]], logic: str = "AND") -> bool:
        if not conditions:
            return True

        use_or = str(logic).upper() == "OR"
        results = []
        for raw in conditions:
            result = await self.evaluate_one(raw)
            results.append(result)
            if not use_or and not result:
                return False
            if use_or and result:
                return True

        return any(results) if use_or else all(results)

    async def evaluate_one(self, raw: Dict[str, Any]) -> bool:
        try:
            condition = condition_adapter.validate_python(raw)
        except ValidationError as e:
            logger.warning(f"Skipping unrecognised condition {raw.get('type') if isinstance(raw, dict) else raw}: {e}")
            return False

        try:
            if isinstance(condition, ContactFieldCondition):
                return compare_values(self.contact.get(condition.field), condition.operator, condition.value)
            if isinstance(condition, CustomFieldCondition):
                fields = await self._load_custom_fields()
                return compare_values(fields.get(condition.field_name), condition.operator, condition.value)
            if isinstance(condition, ActivityHistoryCondition):
                return await self._activity_history(condition)
            if isinstance(condition, TimeCondition):
                return self._time_condition(condition)
            if isinstance(condition, UserTeamCondition):
                return self._user_team(condition)
        except Exception as e:
            logger.error(f"Error evaluating condition {condition.type}: {e}")
            return False
        return False

    async def _load_custom_fields(self) -> Dict[str, Any]:
        if self._custom_fields is None:
            self._custom_fields = await self.repo.get_contact_custom_fields(self.contact.get("id"))
        return self._custom_fields

    async def _activity_history(self, condition: ActivityHistoryCondition) -> bool:
        since = self.now - timedelta(days=condition.days_ago or 30)
        count = await self.repo.count_activities(self.contact.get("id"), condition.activity_type, since)
        return compare_values(count, condition.operator, int(float(condition.value)))

    def _time_condition(self, condition: TimeCondition) -> bool:
        local_now = to_local(self.now, self.timezone)

        if condition.time_type == "day_of_week":
            return DAY_ABBREVIATIONS[local_now.weekday()] in condition.values
        if condition.time_type == "time_of_day":
            start_hour = int((condition.start_time or "0").split(":")[0])
            end_hour = int((condition.end_time or "23").split(":")[0])
            return start_hour <= local_now.hour <= end_hour
        if condition.time_type == "month":
            return MONTH_ABBREVIATIONS[local_now.month - 1] in condition.values
        return False

    def _user_team(self, condition: UserTeamCondition) -> bool:
        if condition.check_type == "assigned_user":
            return self.contact.get("assigned_to") in condition.user_ids
        return self.contact.get("assigned_team_id") in condition.team_ids


async def evaluate_conditions(
    repo,
    conditions: List[Dict[str, Any]],
    contact: Dict[str, Any],
    logic: str = "AND",
    now: Optional[datetime] = None,
    timezone: Optional[str] = None
) -> bool:
    """AND/OR over the rule's conditions with short-circuit; empty list is true"""
    return await ConditionEvaluator(repo, contact, now=now, timezone=timezone).evaluate(conditions, logic)
