# backend/tasks/automation_email_tasks.py
"""
Automation email dispatch.

process_execution() runs one execution through the send pipeline:
eligibility checks, claim, template, personalization, instrumentation,
delivery and bookkeeping. process_due() is the periodic sweep over due
executions.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.config import settings
from core.errors import DeliveryError, PermanentDeliveryError
from core.security import generate_tracking_pixel_id, generate_unsubscribe_token
from core.time_utils import utc_now
from models.execution import ExecutionOutcome, ExecutionStatus, SweepSummary
from routes.smtp_services import EmailMessage, get_email_service, get_sender_identity
from tasks.business_hours import is_within_business_hours, next_business_window_start, org_timezone
from tasks.email_tracking import instrument_email_html, unsubscribe_url
from tasks.template_variables import batch_fetch_contact_data, resolve_template_variables

logger = logging.getLogger(__name__)


def retry_delay_minutes(retry_count: int) -> int:
    """5, 30, 120 minutes for attempts 0, 1, 2 with the default schedule"""
    delays = settings.AUTOMATION_RETRY_DELAYS_MINUTES
    return delays[min(retry_count, len(delays) - 1)]


def daily_limit_for(org: Optional[Dict[str, Any]]) -> int:
    value = (org or {}).get("max_automation_emails_per_day")
    return int(value) if value else settings.DEFAULT_MAX_AUTOMATION_EMAILS_PER_DAY


class DispatchContext:
    """Bulk-prefetched lookups shared by one sweep"""

    def __init__(self, rules=None, contacts=None, templates=None, orgs=None, email_settings=None):
        self.rules: Dict[str, Dict[str, Any]] = rules or {}
        self.contacts: Dict[str, Dict[str, Any]] = contacts or {}
        self.templates: Dict[str, Dict[str, Any]] = templates or {}
        self.orgs: Dict[str, Dict[str, Any]] = orgs or {}
        self.email_settings: Dict[str, Dict[str, Any]] = email_settings or {}


class AutomationDispatcher:
    def __init__(
        self,
        repo,
        email_service_factory: Callable[[Optional[Dict[str, Any]]], Any] = get_email_service,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repo = repo
        self.email_service_factory = email_service_factory
        self.clock = clock

    # ============================================
    # LOOKUPS
    # ============================================

    async def _rule(self, ctx: DispatchContext, rule_id: str) -> Optional[Dict[str, Any]]:
        if rule_id not in ctx.rules:
            ctx.rules[rule_id] = await self.repo.get_rule(rule_id)
        return ctx.rules[rule_id]

    async def _contact(self, ctx: DispatchContext, contact_id: str) -> Optional[Dict[str, Any]]:
        if contact_id not in ctx.contacts:
            ctx.contacts[contact_id] = await self.repo.get_contact(contact_id)
        return ctx.contacts[contact_id]

    async def _template(self, ctx: DispatchContext, template_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not template_id:
            return None
        if template_id not in ctx.templates:
            ctx.templates[template_id] = await self.repo.get_template(template_id)
        return ctx.templates[template_id]

    async def _org(self, ctx: DispatchContext, org_id: str) -> Dict[str, Any]:
        if org_id not in ctx.orgs:
            found = await self.repo.get_org_settings([org_id])
            ctx.orgs[org_id] = found.get(org_id) or {"id": org_id, "business_hours": []}
        return ctx.orgs[org_id]

    async def _email_settings(self, ctx: DispatchContext, org_id: str) -> Optional[Dict[str, Any]]:
        if org_id not in ctx.email_settings:
            ctx.email_settings[org_id] = await self.repo.get_email_settings(org_id)
        return ctx.email_settings[org_id]

    # ============================================
    # SINGLE EXECUTION
    # ============================================

    async def process_execution(
        self,
        execution: Dict[str, Any],
        ctx: Optional[DispatchContext] = None
    ) -> ExecutionOutcome:
        """
        Run one execution through validation and delivery.

        Returns sent, failed (terminal), skipped (deferred or claimed
        elsewhere) or retrying (transient failure with retries left).
        """
        ctx = ctx or DispatchContext()
        execution_id = execution["id"]

        try:
            return await self._dispatch(execution, ctx)
        except PermanentDeliveryError as e:
            await self._fail_permanently(execution_id, e.reason)
            return ExecutionOutcome.FAILED
        except Exception as e:
            logger.error(f"❌ Failed to send email for execution {execution_id}: {e}")
            return await self._schedule_retry(execution, str(e))

    async def _dispatch(self, execution: Dict[str, Any], ctx: DispatchContext) -> ExecutionOutcome:
        now = self.clock()

        rule = await self._rule(ctx, execution["rule_id"])
        if not rule:
            raise PermanentDeliveryError("Automation rule not found")

        contact = await self._contact(ctx, execution["contact_id"])
        if not contact:
            raise PermanentDeliveryError("Contact not found")

        # 1. Email address
        email = (contact.get("email") or "").strip()
        if not email:
            raise PermanentDeliveryError("Contact has no email address")

        org_id = contact.get("org_id") or execution["org_id"]
        org = await self._org(ctx, org_id)

        # 2. Daily limit (atomic check-and-increment)
        max_per_day = daily_limit_for(org)
        if not await self.repo.check_and_increment_daily_limit(org_id, execution["contact_id"], max_per_day, now=now):
            raise PermanentDeliveryError(f"Daily email limit reached ({max_per_day} emails per day)")

        # The slot only counts an email that actually went out
        try:
            outcome = await self._deliver(execution, ctx, rule, contact, email, org_id, org, now)
        except Exception:
            await self._release_daily_slot(org_id, execution["contact_id"], now)
            raise
        if outcome != ExecutionOutcome.SENT:
            await self._release_daily_slot(org_id, execution["contact_id"], now)
        return outcome

    async def _release_daily_slot(self, org_id: str, contact_id: str, now: datetime) -> None:
        try:
            await self.repo.release_daily_limit(org_id, contact_id, now=now)
        except Exception as e:
            logger.error(f"Failed to release daily limit slot for contact {contact_id}: {e}")

    async def _deliver(
        self,
        execution: Dict[str, Any],
        ctx: DispatchContext,
        rule: Dict[str, Any],
        contact: Dict[str, Any],
        email: str,
        org_id: str,
        org: Dict[str, Any],
        now: datetime
    ) -> ExecutionOutcome:
        execution_id = execution["id"]

        # 3. Unsubscribes
        if await self.repo.is_email_unsubscribed(org_id, email):
            raise PermanentDeliveryError("Recipient has unsubscribed from automation emails")

        # 4. Suppressions
        if await self.repo.is_email_suppressed(org_id, email):
            raise PermanentDeliveryError("Email is on suppression list")

        # 5. Business hours
        if rule.get("enforce_business_hours"):
            tz_name = org_timezone(org)
            if not is_within_business_hours(org.get("business_hours") or [], now, tz_name):
                resume_at = next_business_window_start(now, tz_name)
                await self.repo.update_execution(execution_id, {
                    "status": ExecutionStatus.SCHEDULED.value,
                    "scheduled_for": resume_at,
                })
                logger.info(f"🕘 Execution {execution_id} outside business hours, rescheduled to {resume_at}")
                return ExecutionOutcome.SKIPPED

        # 6. Claim
        if execution.get("status") == ExecutionStatus.SCHEDULED.value:
            if await self.repo.claim_execution(execution_id) is None:
                logger.info(f"Execution {execution_id} already claimed by another worker")
                return ExecutionOutcome.SKIPPED

        # 7. Template (A/B variant template is stored on the execution)
        template = await self._template(ctx, execution.get("email_template_id") or rule.get("email_template_id"))
        if not template:
            raise PermanentDeliveryError("Template not found")

        # 8. Personalization
        trigger_data = execution.get("trigger_data") or {}
        subject_template = execution.get("ab_subject_override") or template.get("subject") or ""
        subject = await resolve_template_variables(subject_template, contact, trigger_data, self.repo, now=now)
        html = await resolve_template_variables(template.get("html_content") or "", contact, trigger_data, self.repo, now=now)

        # 9. Instrumentation
        tracking_pixel_id = generate_tracking_pixel_id(execution_id)
        unsubscribe_token = generate_unsubscribe_token()
        html = instrument_email_html(html, tracking_pixel_id, unsubscribe_token)

        # 10. Delivery
        email_settings = await self._email_settings(ctx, org_id)
        from_email, from_name, reply_to = get_sender_identity(email_settings)
        service = self.email_service_factory(email_settings)
        result = await service.send(EmailMessage(
            to=email,
            subject=subject,
            html=html,
            from_email=from_email,
            from_name=from_name,
            reply_to=reply_to,
            contact_id=execution["contact_id"],
            tracking_pixel_id=tracking_pixel_id,
            unsubscribe_token=unsubscribe_token,
            unsubscribe_url=unsubscribe_url(unsubscribe_token),
        ))
        if not result.success:
            raise DeliveryError(result.error or "Email delivery failed")

        # 11. Bookkeeping
        sent_at = self.clock()
        await self.repo.update_execution(execution_id, {
            "status": ExecutionStatus.SENT.value,
            "sent_at": sent_at,
            "email_subject": subject,
            "error_message": None,
            "next_retry_at": None,
        })
        await self.repo.increment_rule_stat(execution["rule_id"], "sent")
        await self.repo.increment_cooldown(execution["rule_id"], execution["contact_id"], org_id, now=sent_at)
        await self.repo.record_email_conversation({
            "org_id": org_id,
            "contact_id": execution["contact_id"],
            "execution_id": execution_id,
            "rule_id": execution["rule_id"],
            "to_email": email,
            "from_email": from_email,
            "subject": subject,
            "message_id": result.message_id,
            "tracking_pixel_id": tracking_pixel_id,
            "unsubscribe_token": unsubscribe_token,
            "sent_at": sent_at,
        })

        logger.info(f"✅ Sent automation email for execution {execution_id} to {email}")
        return ExecutionOutcome.SENT

    async def _fail_permanently(self, execution_id: str, reason: str) -> None:
        logger.warning(f"🚫 Execution {execution_id} failed: {reason}")
        await self.repo.update_execution(execution_id, {
            "status": ExecutionStatus.FAILED.value,
            "error_message": reason,
        })

    async def _schedule_retry(self, execution: Dict[str, Any], message: str) -> ExecutionOutcome:
        execution_id = execution["id"]
        retry_count = execution.get("retry_count") or 0
        max_retries = execution.get("max_retries") or settings.AUTOMATION_DEFAULT_MAX_RETRIES

        if retry_count < max_retries:
            next_retry = self.clock() + timedelta(minutes=retry_delay_minutes(retry_count))
            await self.repo.update_execution(execution_id, {
                "status": ExecutionStatus.SCHEDULED.value,
                "retry_count": retry_count + 1,
                "next_retry_at": next_retry,
                "scheduled_for": next_retry,
                "error_message": f"{message} (retry {retry_count + 1}/{max_retries})",
            })
            logger.info(f"🔄 Scheduled retry {retry_count + 1} for execution {execution_id} at {next_retry}")
            return ExecutionOutcome.RETRYING

        await self.repo.update_execution(execution_id, {
            "status": ExecutionStatus.FAILED.value,
            "error_message": f"{message} (failed after {retry_count} retries)",
        })
        await self.repo.increment_rule_stat(execution["rule_id"], "failed")
        logger.error(f"❌ Execution {execution_id} failed after {retry_count} retries")
        return ExecutionOutcome.FAILED

    # ============================================
    # SWEEP
    # ============================================

    async def prefetch(self, executions: List[Dict[str, Any]]) -> DispatchContext:
        """Load everything a batch references in a handful of queries"""
        rules = await self.repo.get_rules(e["rule_id"] for e in executions)
        contacts = await batch_fetch_contact_data([e["contact_id"] for e in executions], self.repo)
        template_ids = [e.get("email_template_id") for e in executions]
        template_ids += [r.get("email_template_id") for r in rules.values()]
        templates = await self.repo.get_templates(template_ids)
        org_ids = [e["org_id"] for e in executions]
        orgs = await self.repo.get_org_settings(org_ids)
        email_settings = await self.repo.get_email_settings_bulk(org_ids)

        for org_id in set(org_ids):
            orgs.setdefault(org_id, {"id": org_id, "business_hours": []})
            email_settings.setdefault(org_id, None)

        return DispatchContext(
            rules=rules,
            contacts=contacts,
            templates=templates,
            orgs=orgs,
            email_settings=email_settings
        )

    async def process_due(self, limit: Optional[int] = None, concurrency: Optional[int] = None) -> SweepSummary:
        """Send every due scheduled execution, in parallel groups"""
        limit = limit or settings.AUTOMATION_BATCH_LIMIT
        concurrency = concurrency or settings.AUTOMATION_BATCH_CONCURRENCY
        summary = SweepSummary()

        executions = await self.repo.find_due_executions(self.clock(), limit)
        if not executions:
            return summary

        logger.info(f"📬 Processing {len(executions)} due automation executions")
        ctx = await self.prefetch(executions)

        for start in range(0, len(executions), concurrency):
            group = executions[start:start + concurrency]
            results = await asyncio.gather(
                *(self.process_execution(execution, ctx) for execution in group),
                return_exceptions=True
            )
            for execution, result in zip(group, results):
                summary.processed += 1
                if isinstance(result, Exception):
                    logger.error(f"❌ Unhandled error for execution {execution['id']}: {result}")
                    summary.failed += 1
                elif result == ExecutionOutcome.SENT:
                    summary.sent += 1
                elif result == ExecutionOutcome.SKIPPED:
                    summary.skipped += 1
                elif result == ExecutionOutcome.RETRYING:
                    summary.retried += 1
                else:
                    summary.failed += 1

        logger.info(
            f"✅ Sweep completed: {summary.sent} sent, {summary.failed} failed, "
            f"{summary.skipped} skipped, {summary.retried} retrying"
        )
        return summary
