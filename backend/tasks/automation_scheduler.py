# backend/tasks/automation_scheduler.py
"""
Trigger handling: rule matching, gating and execution scheduling.

CRM event -> active rules for (org, trigger type) by priority -> trigger
config match -> cooldown gate -> conditions -> execution record. Rules
without a send delay are dispatched inline right after the record is
created; delayed ones wait for the periodic sweep.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from core.config import settings
from core.errors import (
    ContactNotFoundError,
    EmailSettingsMissingError,
    RuleNotFoundError,
    TemplateNotFoundError,
)
from core.time_utils import utc_now
from models.automation import TriggerEvent, TriggerType
from models.execution import ExecutionOutcome, ExecutionStatus
from tasks.ab_testing import choose_variant_for_rule
from tasks.automation_email_tasks import AutomationDispatcher, DispatchContext, daily_limit_for
from tasks.business_hours import org_timezone
from tasks.condition_evaluator import evaluate_conditions
from tasks.cooldown import can_send
from tasks.template_variables import resolve_template_variables
from tasks.trigger_matcher import matches_trigger

logger = logging.getLogger(__name__)


class AutomationScheduler:
    def __init__(
        self,
        repo,
        dispatcher: Optional[AutomationDispatcher] = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None
    ):
        self.repo = repo
        self.dispatcher = dispatcher or AutomationDispatcher(repo, clock=clock)
        self.clock = clock
        self.rng = rng

    # ============================================
    # EVENT ENTRY POINT
    # ============================================

    async def handle_trigger(
        self,
        event: TriggerEvent,
        rule_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        """Process one CRM event; rule_ids restricts matching to those rules"""
        trigger_type = event.trigger_type.value if isinstance(event.trigger_type, TriggerType) else event.trigger_type

        if trigger_type == TriggerType.TEST.value and event.rule_id:
            return await self.run_test(event)

        rules = await self.repo.find_active_rules(event.org_id, trigger_type)
        if rule_ids is not None:
            allowed = set(rule_ids)
            rules = [rule for rule in rules if rule["id"] in allowed]

        if not rules:
            logger.info(f"No matching rules for {trigger_type} in org {event.org_id}")
            return {"message": "No matching rules", "rules_processed": 0}

        logger.info(f"⚡ {trigger_type} for contact {event.contact_id}: {len(rules)} candidate rules")

        contact = await self.repo.get_contact(event.contact_id)
        if not contact:
            raise ContactNotFoundError(f"Contact not found: {event.contact_id}")

        orgs: Dict[str, Dict[str, Any]] = {}
        processed = 0
        for rule in rules:
            # A failing rule must not abort or replay the rules around it
            try:
                execution = await self._process_rule(rule, contact, trigger_type, event, orgs)
            except Exception as e:
                logger.error(f"❌ Rule {rule.get('name')} failed for contact {event.contact_id}: {e}")
                continue
            if execution is not None:
                processed += 1

        return {"message": "Automation processed", "rules_processed": processed}

    async def _org(self, org_id: str, orgs: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        if org_id not in orgs:
            orgs[org_id] = (await self.repo.get_org_settings([org_id])).get(org_id) or {}
        return orgs[org_id]

    async def _process_rule(
        self,
        rule: Dict[str, Any],
        contact: Dict[str, Any],
        trigger_type: str,
        event: TriggerEvent,
        orgs: Dict[str, Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        if not matches_trigger(trigger_type, rule.get("trigger_config"), event.trigger_data):
            logger.debug(f"Rule {rule.get('name')} trigger config doesn't match")
            return None

        if not await can_send(self.repo, rule, event.contact_id, now=self.clock()):
            return None

        org = await self._org(event.org_id, orgs)
        if rule.get("conditions"):
            met = await evaluate_conditions(
                self.repo,
                rule["conditions"],
                contact,
                logic=rule.get("condition_logic") or "AND",
                now=self.clock(),
                timezone=org_timezone(org)
            )
            if not met:
                logger.info(f"Rule {rule.get('name')} conditions not met")
                return None

        return await self.schedule(rule, contact, trigger_type, event.trigger_data, org=org)

    # ============================================
    # SCHEDULING
    # ============================================

    async def schedule(
        self,
        rule: Dict[str, Any],
        contact: Dict[str, Any],
        trigger_type: str,
        trigger_data: Optional[Dict[str, Any]],
        org: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Create the execution for a matched rule; None when skipped"""
        contact_id = contact["id"]
        if not (contact.get("email") or "").strip():
            logger.info(f"Contact {contact_id} has no email, skipping rule {rule['id']}")
            return None

        now = self.clock()

        # Read-only peek; the dispatcher does the authoritative increment
        if org is None:
            org = (await self.repo.get_org_settings([rule["org_id"]])).get(rule["org_id"]) or {}
        max_per_day = daily_limit_for(org)
        if await self.repo.get_daily_send_count(rule["org_id"], contact_id, now=now) >= max_per_day:
            logger.info(f"Contact {contact_id} already at daily limit ({max_per_day}), skipping rule {rule['id']}")
            return None

        delay = int(rule.get("send_delay_minutes") or 0)
        doc = {
            "org_id": rule["org_id"],
            "rule_id": rule["id"],
            "contact_id": contact_id,
            "trigger_type": trigger_type,
            "trigger_data": dict(trigger_data or {}),
            "status": (ExecutionStatus.SCHEDULED if delay > 0 else ExecutionStatus.PENDING).value,
            "scheduled_for": now + timedelta(minutes=delay),
            "email_template_id": rule.get("email_template_id"),
            "max_retries": settings.AUTOMATION_DEFAULT_MAX_RETRIES,
        }

        variant = await choose_variant_for_rule(self.repo, rule, rng=self.rng)
        if variant:
            doc.update(variant)

        execution = await self.repo.create_execution(doc)
        await self.repo.increment_rule_stat(rule["id"], "triggered")
        logger.info(f"📅 Execution {execution['id']} created for rule {rule.get('name')} ({doc['status']})")

        if delay == 0:
            await self.dispatcher.process_execution(execution, DispatchContext(
                rules={rule["id"]: rule},
                contacts={contact_id: contact},
            ))

        return execution

    # ============================================
    # TEST / PREVIEW
    # ============================================

    async def generate_preview(
        self,
        rule: Dict[str, Any],
        contact: Dict[str, Any],
        trigger_data: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        email_settings = await self.repo.get_email_settings(contact.get("org_id") or rule["org_id"])
        if not email_settings:
            raise EmailSettingsMissingError("Email settings not configured")

        template = await self.repo.get_template(rule.get("email_template_id")) if rule.get("email_template_id") else None
        if not template:
            raise TemplateNotFoundError("Email template not found")

        now = self.clock()
        subject = await resolve_template_variables(template.get("subject") or "", contact, trigger_data, self.repo, now=now)
        html = await resolve_template_variables(template.get("html_content") or "", contact, trigger_data, self.repo, now=now)

        return {
            "from_email": f"{email_settings.get('from_name') or ''} <{email_settings.get('from_email') or ''}>".strip(),
            "to_email": contact.get("email"),
            "subject": subject,
            "html_content": html,
        }

    async def run_test(self, event: TriggerEvent) -> Dict[str, Any]:
        """Preview a rule for a contact, or send it once through a throwaway execution"""
        logger.info(f"🧪 Test mode for rule {event.rule_id}")

        rule = await self.repo.get_rule(event.rule_id)
        if not rule:
            raise RuleNotFoundError(f"Rule not found: {event.rule_id}")

        contact = await self.repo.get_contact(event.contact_id)
        if not contact:
            raise ContactNotFoundError(f"Contact not found: {event.contact_id}")

        preview = await self.generate_preview(rule, contact, event.trigger_data)
        if event.preview:
            return preview

        execution = await self.repo.create_execution({
            "org_id": event.org_id,
            "rule_id": rule["id"],
            "contact_id": event.contact_id,
            "trigger_type": TriggerType.TEST.value,
            "trigger_data": dict(event.trigger_data or {}),
            "status": ExecutionStatus.PENDING.value,
            "scheduled_for": self.clock(),
            "email_template_id": rule.get("email_template_id"),
            "email_subject": preview["subject"],
            "max_retries": settings.AUTOMATION_DEFAULT_MAX_RETRIES,
        })
        outcome = await self.dispatcher.process_execution(execution, DispatchContext(
            rules={rule["id"]: rule},
            contacts={contact["id"]: contact},
        ))

        return {
            "success": outcome == ExecutionOutcome.SENT,
            "message": "Test email sent" if outcome == ExecutionOutcome.SENT else f"Test email {outcome.value}",
            "execution_id": execution["id"],
        }
