"""Shared fixtures: in-memory repository and a recording email service."""

import copy
import itertools
from datetime import datetime

import pytest

from routes.smtp_services import BaseEmailService, EmailResult

NOW = datetime(2024, 3, 13, 14, 0, 0)  # Wednesday, 14:00 UTC


class FakeAutomationRepository:
    """In-memory stand-in for AutomationRepository with the same async interface."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.rules = {}
        self.contacts = {}
        self.custom_fields = {}
        self.activities = []
        self.stages = {}
        self.dispositions = {}
        self.profiles = {}
        self.orgs = {}
        self.business_hours = []
        self.email_settings = {}
        self.templates = {}
        self.executions = {}
        self.cooldowns = {}
        self.ab_tests = []
        self.daily_limits = {}
        self.unsubscribes = {}
        self.suppressions = set()
        self.conversations = {}
        self.calls = []

    def _new_id(self, prefix):
        return f"{prefix}{next(self._ids)}"

    # ----- seeding helpers -----

    def add_rule(self, **fields):
        rule = {
            "id": self._new_id("rule"),
            "org_id": "org1",
            "name": "Rule",
            "trigger_type": "stage_change",
            "trigger_config": {},
            "conditions": [],
            "condition_logic": "AND",
            "email_template_id": "tpl1",
            "send_delay_minutes": 0,
            "max_sends_per_contact": None,
            "cooldown_period_days": None,
            "priority": 0,
            "is_active": True,
            "ab_test_enabled": False,
            "enforce_business_hours": False,
            "total_triggered": 0,
            "total_sent": 0,
            "total_failed": 0,
            "created_at": NOW,
        }
        rule.update(fields)
        self.rules[rule["id"]] = rule
        return rule

    def add_contact(self, **fields):
        contact = {
            "id": self._new_id("contact"),
            "org_id": "org1",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "created_at": NOW,
            "updated_at": NOW,
        }
        contact.update(fields)
        self.contacts[contact["id"]] = contact
        return contact

    def add_template(self, template_id="tpl1", subject="Hello {{first_name}}",
                     html_content="<html><body><p>Hi {{full_name}}</p></body></html>"):
        self.templates[template_id] = {"id": template_id, "subject": subject, "html_content": html_content}
        return self.templates[template_id]

    # ----- rules -----

    async def get_rule(self, rule_id):
        rule = self.rules.get(rule_id)
        return copy.deepcopy(rule) if rule else None

    async def get_rules(self, rule_ids):
        return {rid: copy.deepcopy(self.rules[rid]) for rid in rule_ids if rid in self.rules}

    async def find_active_rules(self, org_id, trigger_type):
        rules = [
            r for r in self.rules.values()
            if r["org_id"] == org_id and r["trigger_type"] == trigger_type and r["is_active"]
        ]
        rules.sort(key=lambda r: -r.get("priority", 0))
        return copy.deepcopy(rules)

    async def find_active_rules_by_trigger(self, trigger_type):
        return [copy.deepcopy(r) for r in self.rules.values()
                if r["trigger_type"] == trigger_type and r["is_active"]]

    async def list_rules(self, org_id, trigger_type=None, is_active=None):
        rules = [r for r in self.rules.values() if r["org_id"] == org_id]
        if trigger_type:
            rules = [r for r in rules if r["trigger_type"] == trigger_type]
        if is_active is not None:
            rules = [r for r in rules if r["is_active"] == is_active]
        return copy.deepcopy(rules)

    async def create_rule(self, doc):
        return self.add_rule(**doc)

    async def update_rule(self, rule_id, fields):
        if rule_id not in self.rules:
            return None
        self.rules[rule_id].update(fields)
        return copy.deepcopy(self.rules[rule_id])

    async def increment_rule_stat(self, rule_id, stat):
        self.rules[rule_id][f"total_{stat}"] += 1

    # ----- contacts -----

    async def get_contact(self, contact_id):
        contact = self.contacts.get(contact_id)
        return copy.deepcopy(contact) if contact else None

    async def get_contact_custom_fields(self, contact_id):
        self.calls.append(("get_contact_custom_fields", contact_id))
        return dict(self.custom_fields.get(contact_id, {}))

    async def get_contacts_with_details(self, contact_ids):
        found = {}
        for contact_id in contact_ids:
            contact = self.contacts.get(contact_id)
            if contact:
                detailed = copy.deepcopy(contact)
                detailed["custom_fields"] = dict(self.custom_fields.get(contact_id, {}))
                found[contact_id] = detailed
        return found

    async def count_activities(self, contact_id, activity_type, since):
        self.calls.append(("count_activities", contact_id, activity_type))
        return sum(
            1 for a in self.activities
            if a["contact_id"] == contact_id and a["activity_type"] == activity_type and a["created_at"] >= since
        )

    async def get_pipeline_stage_name(self, stage_id):
        self.calls.append(("get_pipeline_stage_name", stage_id))
        return self.stages.get(stage_id)

    async def get_disposition(self, disposition_id):
        self.calls.append(("get_disposition", disposition_id))
        return self.dispositions.get(disposition_id)

    async def get_user_profile(self, user_id):
        self.calls.append(("get_user_profile", user_id))
        return self.profiles.get(user_id)

    def _contact_page(self, matches, limit, after_id):
        page = sorted((c for c in self.contacts.values() if matches(c)), key=lambda c: c["id"])
        if after_id:
            page = [c for c in page if c["id"] > after_id]
        return [copy.deepcopy(c) for c in page[:limit]]

    async def find_contacts_updated_between(self, org_id, start, end, limit, after_id=None):
        return self._contact_page(
            lambda c: c["org_id"] == org_id and c.get("email") and start <= c["updated_at"] < end,
            limit, after_id,
        )

    async def find_contacts_by_date_field(self, org_id, field, start, end, limit, after_id=None):
        return self._contact_page(
            lambda c: c["org_id"] == org_id and c.get("email") and c.get(field) and start <= c[field] < end,
            limit, after_id,
        )

    # ----- templates & settings -----

    async def get_template(self, template_id):
        return copy.deepcopy(self.templates.get(template_id))

    async def get_templates(self, template_ids):
        return {t: copy.deepcopy(self.templates[t]) for t in template_ids if t in self.templates}

    async def get_org_settings(self, org_ids):
        found = {}
        for org_id in org_ids:
            hours = [row for row in self.business_hours if row["org_id"] == org_id]
            if org_id in self.orgs or hours:
                org = copy.deepcopy(self.orgs.get(org_id, {"id": org_id}))
                org["business_hours"] = hours
                found[org_id] = org
        return found

    async def get_email_settings(self, org_id):
        return copy.deepcopy(self.email_settings.get(org_id))

    async def get_email_settings_bulk(self, org_ids):
        return {o: copy.deepcopy(self.email_settings[o]) for o in org_ids if o in self.email_settings}

    async def get_active_ab_test(self, rule_id):
        for test in self.ab_tests:
            if test["rule_id"] == rule_id and test["status"] == "active":
                return copy.deepcopy(test)
        return None

    # ----- executions -----

    async def create_execution(self, doc):
        execution = {"retry_count": 0, "next_retry_at": None, "error_message": None, "sent_at": None, **doc}
        execution["id"] = self._new_id("exec")
        execution["created_at"] = NOW
        self.executions[execution["id"]] = execution
        return copy.deepcopy(execution)

    async def get_execution(self, execution_id):
        return copy.deepcopy(self.executions.get(execution_id))

    async def find_due_executions(self, now, limit):
        due = [e for e in self.executions.values()
               if e["status"] == "scheduled" and e.get("scheduled_for") and e["scheduled_for"] <= now]
        return copy.deepcopy(due[:limit])

    async def claim_execution(self, execution_id):
        execution = self.executions.get(execution_id)
        if not execution or execution["status"] != "scheduled":
            return None
        execution["status"] = "pending"
        return copy.deepcopy(execution)

    async def update_execution(self, execution_id, fields):
        self.executions[execution_id].update(fields)

    async def list_executions(self, rule_id, status=None, limit=50):
        found = [e for e in self.executions.values() if e["rule_id"] == rule_id]
        if status:
            found = [e for e in found if e["status"] == status]
        return copy.deepcopy(found[:limit])

    # ----- cooldowns & limits -----

    async def get_cooldown(self, rule_id, contact_id):
        return copy.deepcopy(self.cooldowns.get((rule_id, contact_id)))

    async def increment_cooldown(self, rule_id, contact_id, org_id, now=None):
        record = self.cooldowns.setdefault(
            (rule_id, contact_id), {"rule_id": rule_id, "contact_id": contact_id, "org_id": org_id, "send_count": 0}
        )
        record["send_count"] += 1
        record["last_sent_at"] = now or NOW
        return copy.deepcopy(record)

    async def get_daily_send_count(self, org_id, contact_id, now=None):
        day = (now or NOW).strftime("%Y-%m-%d")
        return self.daily_limits.get((org_id, contact_id, day), 0)

    async def check_and_increment_daily_limit(self, org_id, contact_id, max_per_day, now=None):
        key = (org_id, contact_id, (now or NOW).strftime("%Y-%m-%d"))
        if self.daily_limits.get(key, 0) >= max_per_day:
            return False
        self.daily_limits[key] = self.daily_limits.get(key, 0) + 1
        return True

    async def release_daily_limit(self, org_id, contact_id, now=None):
        key = (org_id, contact_id, (now or NOW).strftime("%Y-%m-%d"))
        if self.daily_limits.get(key, 0) > 0:
            self.daily_limits[key] -= 1

    # ----- compliance & tracking -----

    async def is_email_unsubscribed(self, org_id, email):
        return (org_id, email.lower()) in self.unsubscribes

    async def is_email_suppressed(self, org_id, email):
        return (org_id, email.lower()) in self.suppressions

    async def record_unsubscribe(self, doc):
        key = (doc["org_id"], doc["email"].lower())
        if key in self.unsubscribes:
            return False
        self.unsubscribes[key] = dict(doc)
        return True

    async def record_email_conversation(self, doc):
        conversation = {"open_count": 0, "click_count": 0, "cta_click_count": 0,
                        "opened_at": None, "first_clicked_at": None, **doc}
        conversation["id"] = self._new_id("conv")
        self.conversations[conversation["id"]] = conversation
        return copy.deepcopy(conversation)

    async def find_conversation_by_tracking_id(self, tracking_pixel_id):
        for conversation in self.conversations.values():
            if conversation["tracking_pixel_id"] == tracking_pixel_id:
                return copy.deepcopy(conversation)
        return None

    async def find_conversation_by_unsubscribe_token(self, token):
        for conversation in self.conversations.values():
            if conversation["unsubscribe_token"] == token:
                return copy.deepcopy(conversation)
        return None

    async def record_conversation_event(self, conversation_id, counters, first_seen_field, now=None):
        conversation = self.conversations[conversation_id]
        for name in counters:
            conversation[name] = conversation.get(name, 0) + 1
        if conversation.get(first_seen_field) is None:
            conversation[first_seen_field] = now or NOW


class FakeEmailService(BaseEmailService):
    """Records every message; fails or raises on demand."""

    def __init__(self):
        self.sent = []
        self.fail_with = None
        self.raise_with = None

    async def send(self, message):
        if self.raise_with is not None:
            raise self.raise_with
        if self.fail_with is not None:
            return EmailResult(success=False, error=self.fail_with, recipient=message.to)
        self.sent.append(message)
        return EmailResult(success=True, message_id=f"<msg{len(self.sent)}@test>", recipient=message.to)


@pytest.fixture
def repo():
    return FakeAutomationRepository()


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def dispatcher(repo, email_service):
    from tasks.automation_email_tasks import AutomationDispatcher

    return AutomationDispatcher(repo, email_service_factory=lambda settings_doc: email_service, clock=lambda: NOW)


@pytest.fixture
def scheduler(repo, dispatcher):
    from tasks.automation_scheduler import AutomationScheduler

    return AutomationScheduler(repo, dispatcher=dispatcher, clock=lambda: NOW)
