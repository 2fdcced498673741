# backend/tasks/automation_tasks.py
"""
Celery entry points for the automation engine.

Each task runs its coroutine with asyncio.run on a fresh Motor client,
since a Motor client is bound to the event loop that created it.
"""
from celery import shared_task
import asyncio
import logging

from core.errors import AutomationError
from database import create_async_client
from models.automation import TriggerEvent
from repositories.automation_repo import build_repository
from tasks.automation_email_tasks import AutomationDispatcher
from tasks.automation_scheduler import AutomationScheduler
from tasks.time_triggers import scan_time_triggers

logger = logging.getLogger(__name__)


async def _run_with_repository(handler):
    client = create_async_client(app_name="crm_automation_worker")
    try:
        return await handler(build_repository(client))
    finally:
        client.close()


@shared_task(
    name="tasks.process_automation_trigger",
    bind=True,
    max_retries=3,
    default_retry_delay=60
)
def process_automation_trigger(self, event: dict):
    """Match and schedule rules for one CRM event (same payload as the HTTP endpoint)"""
    trigger_event = TriggerEvent.model_validate(event)

    async def _handle(repo):
        return await AutomationScheduler(repo).handle_trigger(trigger_event)

    try:
        result = asyncio.run(_run_with_repository(_handle))
        logger.info(f"⚡ Trigger {trigger_event.trigger_type} for {trigger_event.contact_id}: {result}")
        return result
    except AutomationError as exc:
        # Only infrastructure failures are retried
        logger.warning(f"🚫 Automation trigger rejected for contact {trigger_event.contact_id}: {exc}")
        return {"message": str(exc), "rules_processed": 0}
    except Exception as exc:
        logger.error(f"❌ Automation trigger failed for contact {trigger_event.contact_id}: {exc}")
        raise self.retry(exc=exc)


@shared_task(name="tasks.process_due_automations")
def process_due_automations():
    """Periodic sweep over due scheduled executions"""

    async def _sweep(repo):
        return await AutomationDispatcher(repo).process_due()

    summary = asyncio.run(_run_with_repository(_sweep))
    return summary.model_dump()


@shared_task(name="tasks.scan_automation_time_triggers")
def scan_automation_time_triggers():
    """Daily scan emitting inactivity and time_based events"""

    async def _scan(repo):
        return await scan_time_triggers(repo, AutomationScheduler(repo))

    return asyncio.run(_run_with_repository(_scan))
