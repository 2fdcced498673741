# backend/routes/automation.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError

from core.errors import (
    AutomationError,
    ContactNotFoundError,
    EmailSettingsMissingError,
    RuleNotFoundError,
    TemplateNotFoundError,
)
from models.automation import (
    AutomationRule,
    AutomationRuleCreate,
    AutomationRuleUpdate,
    TriggerEvent,
    TriggerType,
    parse_trigger_config,
)
from models.execution import AutomationExecution, ExecutionStatus
from repositories.automation_repo import AutomationRepository, get_repository
from tasks.automation_email_tasks import AutomationDispatcher
from tasks.automation_scheduler import AutomationScheduler

router = APIRouter(prefix="/automation")
logger = logging.getLogger(__name__)


def get_scheduler(repo: AutomationRepository = Depends(get_repository)) -> AutomationScheduler:
    return AutomationScheduler(repo)


def get_dispatcher(repo: AutomationRepository = Depends(get_repository)) -> AutomationDispatcher:
    return AutomationDispatcher(repo)


def _http_error(e: AutomationError) -> HTTPException:
    if isinstance(e, (RuleNotFoundError, ContactNotFoundError, TemplateNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, EmailSettingsMissingError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


async def _get_rule_or_404(repo: AutomationRepository, rule_id: str) -> dict:
    rule = await repo.get_rule(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Automation rule not found")
    return rule


# ===========================
# TRIGGER
# ===========================

@router.post("/trigger")
async def trigger_automation(event: TriggerEvent, scheduler: AutomationScheduler = Depends(get_scheduler)):
    """
    Inbound CRM event. triggerType "test" with a ruleId previews the rule
    (preview=true) or sends it once to the contact.
    """
    if event.trigger_type == TriggerType.TEST and not event.rule_id:
        raise HTTPException(status_code=400, detail="ruleId is required for test mode")

    try:
        return await scheduler.handle_trigger(event)
    except AutomationError as e:
        logger.error(f"Automation trigger error: {e}")
        raise _http_error(e)


@router.post("/process-due")
async def process_due_automations(dispatcher: AutomationDispatcher = Depends(get_dispatcher)):
    """Run one dispatch sweep now"""
    summary = await dispatcher.process_due()
    return {"message": "Scheduled emails processed", **summary.model_dump()}


# ===========================
# RULES
# ===========================

@router.post("/rules", status_code=201)
async def create_automation_rule(
    rule_data: AutomationRuleCreate,
    repo: AutomationRepository = Depends(get_repository)
):
    try:
        trigger_config = rule_data.validated_trigger_config()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid trigger config: {e.errors()}")

    if not await repo.get_template(rule_data.email_template_id):
        raise HTTPException(status_code=400, detail=f"Template {rule_data.email_template_id} not found")

    doc = rule_data.model_dump(mode="json")
    doc["trigger_config"] = trigger_config
    rule = await repo.create_rule(doc)

    logger.info(f"📝 Automation rule created: {rule['id']} ({rule['name']})")
    return {
        "id": rule["id"],
        "message": "Automation rule created successfully",
        "is_active": rule["is_active"],
    }


@router.get("/rules")
async def list_automation_rules(
    org_id: str,
    trigger_type: Optional[TriggerType] = None,
    is_active: Optional[bool] = None,
    repo: AutomationRepository = Depends(get_repository)
):
    rules = await repo.list_rules(
        org_id,
        trigger_type=trigger_type.value if trigger_type else None,
        is_active=is_active
    )
    return {"rules": [AutomationRule.model_validate(r).model_dump(mode="json") for r in rules], "total": len(rules)}


@router.get("/rules/{rule_id}")
async def get_automation_rule(rule_id: str, repo: AutomationRepository = Depends(get_repository)):
    rule = await _get_rule_or_404(repo, rule_id)
    return AutomationRule.model_validate(rule).model_dump(mode="json")


@router.put("/rules/{rule_id}")
async def update_automation_rule(
    rule_id: str,
    rule_data: AutomationRuleUpdate,
    repo: AutomationRepository = Depends(get_repository)
):
    rule = await _get_rule_or_404(repo, rule_id)
    fields = rule_data.model_dump(mode="json", exclude_unset=True)

    if "trigger_config" in fields:
        try:
            typed = parse_trigger_config(rule["trigger_type"], fields["trigger_config"])
            fields["trigger_config"] = typed.model_dump(exclude={"trigger_type"}, exclude_none=True)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid trigger config: {e.errors()}")

    if fields.get("email_template_id") and not await repo.get_template(fields["email_template_id"]):
        raise HTTPException(status_code=400, detail=f"Template {fields['email_template_id']} not found")

    if not fields:
        return {"message": "No changes", "id": rule_id}

    await repo.update_rule(rule_id, fields)
    return {"message": "Automation rule updated successfully", "id": rule_id}


@router.post("/rules/{rule_id}/toggle")
async def toggle_automation_rule(rule_id: str, repo: AutomationRepository = Depends(get_repository)):
    rule = await _get_rule_or_404(repo, rule_id)
    updated = await repo.update_rule(rule_id, {"is_active": not rule.get("is_active", False)})
    state = "activated" if updated["is_active"] else "deactivated"
    logger.info(f"Automation rule {rule_id} {state}")
    return {"id": rule_id, "is_active": updated["is_active"], "message": f"Automation rule {state}"}


@router.get("/rules/{rule_id}/executions")
async def list_rule_executions(
    rule_id: str,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    repo: AutomationRepository = Depends(get_repository)
):
    """Execution history for monitoring, newest first"""
    await _get_rule_or_404(repo, rule_id)
    executions = await repo.list_executions(rule_id, status=status.value if status else None, limit=limit)
    return {
        "executions": [AutomationExecution.model_validate(e).model_dump(mode="json") for e in executions],
        "total": len(executions),
    }


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str, repo: AutomationRepository = Depends(get_repository)):
    execution = await repo.get_execution(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return AutomationExecution.model_validate(execution).model_dump(mode="json")
