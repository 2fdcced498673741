# backend/tasks/template_variables.py
"""
Template personalization for automation emails.

Placeholders look like {{first_name}}, {{custom_field.Plan}} or
{{trigger.old_stage}}. The template is scanned once for the tokens it
uses; database lookups run only for tokens that are present, and the
text is rewritten in a single substitution pass.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Set

from core.time_utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_][A-Za-z0-9_.\- ]*?)\s*\}\}")
IF_BLOCK_PATTERN = re.compile(
    r"\{\{#if\s+([^}]+?)\s*\}\}(.*?)(?:\{\{else\}\}(.*?))?\{\{/if\}\}",
    re.DOTALL
)
EQUALS_CONDITION = re.compile(r'^(\w+)\s*==\s*"([^"]*)"$')

CONTACT_FIELDS = (
    "first_name", "last_name", "email", "phone", "company", "job_title",
    "city", "state", "country", "status", "source",
)

STAGE_TOKENS = {
    "trigger.old_stage": "from_stage_id",
    "trigger.from_stage": "from_stage_id",
    "trigger.new_stage": "to_stage_id",
    "trigger.to_stage": "to_stage_id",
}


def _text(value: Any) -> str:
    if value is None or value is False:
        return ""
    return str(value)


def format_short_date(dt: datetime) -> str:
    return f"{dt.month}/{dt.day}/{dt.year}"


def format_long_date(dt: datetime) -> str:
    return f"{dt.strftime('%B')} {dt.day}, {dt.year}"


def format_call_duration(seconds: Any) -> Optional[Dict[str, str]]:
    try:
        total = int(float(seconds))
    except (TypeError, ValueError):
        return None
    minutes, secs = divmod(total, 60)
    return {
        "trigger.call_duration": f"{minutes}m {secs}s",
        "trigger.call_duration_minutes": str(minutes),
    }


def find_tokens(text: str) -> Set[str]:
    return {match.group(1).strip() for match in TOKEN_PATTERN.finditer(text or "")}


def apply_custom_mappings(
    template: str,
    contact: Optional[Dict[str, Any]],
    trigger_data: Optional[Dict[str, Any]],
    custom_mappings: Dict[str, Dict[str, Any]]
) -> str:
    """Literal replace per mapping; no other substitution happens in this mode"""
    result = template
    for placeholder, mapping in custom_mappings.items():
        mapping = mapping or {}
        source = mapping.get("source")
        value: Any = ""
        if source == "crm" and contact:
            value = contact.get(mapping.get("field")) or ""
        elif source == "csv" and trigger_data:
            value = trigger_data.get(mapping.get("field")) or ""
        elif source == "static":
            value = mapping.get("value") or ""
        result = result.replace(placeholder, _text(value))
    return result


def apply_conditional_blocks(text: str, contact: Optional[Dict[str, Any]]) -> str:
    """Evaluate {{#if field}}..{{else}}..{{/if}} blocks against the contact"""
    contact = contact or {}

    def _render(match):
        condition, when_true, when_false = match.group(1).strip(), match.group(2), match.group(3) or ""
        equals = EQUALS_CONDITION.match(condition)
        if equals:
            field, expected = equals.groups()
            passed = _text(contact.get(field)) == expected
        else:
            passed = bool(contact.get(condition))
        return when_true if passed else when_false

    return IF_BLOCK_PATTERN.sub(_render, text)


class _TokenValues:
    """Collects token -> value for the tokens a template references"""

    def __init__(self, contact, trigger_data, repo, now):
        self.contact = contact or {}
        self.trigger_data = trigger_data or {}
        self.repo = repo
        self.now = now
        self.values: Dict[str, str] = {}

    def add_contact_fields(self):
        contact = self.contact
        for name in CONTACT_FIELDS:
            self.values[name] = _text(contact.get(name))

        full_name = f"{_text(contact.get('first_name'))} {_text(contact.get('last_name'))}".strip()
        self.values["full_name"] = full_name or "there"

        created = parse_timestamp(contact.get("created_at"))
        if created:
            self.values["created_date"] = format_short_date(created)
            self.values["created_date_long"] = format_long_date(created)

        updated = parse_timestamp(contact.get("updated_at"))
        if updated:
            self.values["days_since_last_contact"] = str(max((self.now - updated).days, 0))

    async def add_pipeline_stage(self, tokens: Set[str]):
        if "pipeline_stage" not in tokens or not self.contact.get("pipeline_stage_id"):
            return
        if "pipeline_stage_name" in self.contact:
            self.values["pipeline_stage"] = _text(self.contact.get("pipeline_stage_name"))
            return
        try:
            name = await self.repo.get_pipeline_stage_name(self.contact["pipeline_stage_id"])
            self.values["pipeline_stage"] = _text(name)
        except Exception as e:
            logger.error(f"Error fetching pipeline stage: {e}")
            self.values["pipeline_stage"] = ""

    async def add_assigned_user(self, tokens: Set[str]):
        wanted = tokens & {"assigned_to_name", "assigned_to_email"}
        if not wanted or not self.contact.get("assigned_to"):
            return
        try:
            user = self.contact.get("assigned_user")
            if user is None:
                user = await self.repo.get_user_profile(self.contact["assigned_to"])
        except Exception as e:
            logger.error(f"Error fetching assigned user: {e}")
            user = None
        user = user or {}
        self.values["assigned_to_name"] = (
            f"{_text(user.get('first_name'))} {_text(user.get('last_name'))}".strip()
        )
        self.values["assigned_to_email"] = _text(user.get("email"))

    async def add_custom_fields(self, tokens: Set[str]):
        wanted = {t for t in tokens if t.startswith("custom_field.")}
        if not wanted or not self.contact.get("id"):
            return
        try:
            fields = self.contact.get("custom_fields")
            if fields is None:
                fields = await self.repo.get_contact_custom_fields(self.contact["id"])
        except Exception as e:
            logger.error(f"Error fetching custom fields: {e}")
            for token in wanted:
                self.values[token] = ""
            return
        for name, value in fields.items():
            self.values[f"custom_field.{name}"] = _text(value)

    async def add_trigger_fields(self, tokens: Set[str]):
        data = self.trigger_data
        if not data:
            return

        for key, value in data.items():
            self.values[f"trigger.{key}"] = _text(value) if value else ""

        for token, id_key in STAGE_TOKENS.items():
            if token not in tokens or not data.get(id_key):
                continue
            try:
                name = await self.repo.get_pipeline_stage_name(data[id_key])
                self.values[token] = _text(name)
            except Exception as e:
                logger.error(f"Error fetching stage {data[id_key]}: {e}")
                self.values[token] = ""

        disposition_tokens = tokens & {"trigger.disposition", "trigger.disposition_description"}
        if disposition_tokens and data.get("disposition_id"):
            try:
                disposition = await self.repo.get_disposition(data["disposition_id"]) or {}
            except Exception as e:
                logger.error(f"Error fetching disposition: {e}")
                disposition = {}
            self.values["trigger.disposition"] = _text(disposition.get("name"))
            self.values["trigger.disposition_description"] = _text(disposition.get("description"))

        if data.get("activity_type"):
            self.values["trigger.activity_type"] = _text(data["activity_type"])

        if data.get("call_duration"):
            self.values.update(format_call_duration(data["call_duration"]) or {})


async def resolve_template_variables(
    template: str,
    contact: Optional[Dict[str, Any]],
    trigger_data: Optional[Dict[str, Any]] = None,
    repo=None,
    custom_mappings: Optional[Dict[str, Dict[str, Any]]] = None,
    now: Optional[datetime] = None
) -> str:
    """
    Personalize template text for one contact.

    Args:
        template: Subject or HTML body with {{token}} placeholders
        contact: Contact document (may already carry batch-fetched details)
        trigger_data: Event payload snapshot stored on the execution
        repo: AutomationRepository used for on-demand lookups
        custom_mappings: Bulk-campaign placeholder mappings; when given,
            only these literal replacements are applied
        now: Reference time for day counters
    """
    if not template:
        return template or ""

    if custom_mappings:
        return apply_custom_mappings(template, contact, trigger_data, custom_mappings)

    tokens = find_tokens(template)
    collector = _TokenValues(contact, trigger_data, repo, now or utc_now())
    collector.add_contact_fields()

    if tokens:
        await collector.add_pipeline_stage(tokens)
        await collector.add_assigned_user(tokens)
        await collector.add_custom_fields(tokens)
        await collector.add_trigger_fields(tokens)

    values = collector.values
    result = TOKEN_PATTERN.sub(lambda m: values.get(m.group(1).strip(), m.group(0)), template)
    return apply_conditional_blocks(result, contact)


async def batch_fetch_contact_data(contact_ids: Iterable[str], repo) -> Dict[str, Dict[str, Any]]:
    """Contacts with stage name, assigned user and custom fields, keyed by id"""
    try:
        return await repo.get_contacts_with_details(contact_ids)
    except Exception as e:
        logger.error(f"Error batch fetching contact data: {e}")
        return {}
