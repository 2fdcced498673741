# backend/routes/tracking.py
"""
Open pixel and click redirect endpoints for automation emails.

Both always answer with the pixel / a redirect, even when the tracking id
is unknown, so recipients never see broken images or dead links.
"""
import base64
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import RedirectResponse, Response

from core.time_utils import utc_now
from models.automation import TriggerEvent, TriggerType
from repositories.automation_repo import AutomationRepository, get_repository
from routes.automation import get_scheduler
from tasks.automation_scheduler import AutomationScheduler

router = APIRouter(prefix="/email-tracking", tags=["email-tracking"])
logger = logging.getLogger(__name__)

TRACKING_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)
PIXEL_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}


def _pixel_response() -> Response:
    return Response(content=TRACKING_PIXEL, media_type="image/png", headers=PIXEL_HEADERS)


def _safe_target(url: Optional[str]) -> str:
    if url and url.lower().startswith(("http://", "https://")):
        return url
    return "/"


async def emit_engagement_event(scheduler: AutomationScheduler, conversation: dict, engagement_type: str,
                                engaged_at, url: Optional[str] = None) -> None:
    """Feed an open/click back into rule matching as an email_engagement event"""
    sent_at = conversation.get("sent_at")
    trigger_data = {
        "engagement_type": engagement_type,
        "conversation_id": conversation["id"],
        "rule_id": conversation.get("rule_id"),
        "sent_at": sent_at.isoformat() if hasattr(sent_at, "isoformat") else sent_at,
        f"{engagement_type}_at": engaged_at.isoformat(),
    }
    if url:
        trigger_data["url"] = url

    try:
        await scheduler.handle_trigger(TriggerEvent(
            org_id=conversation["org_id"],
            trigger_type=TriggerType.EMAIL_ENGAGEMENT,
            contact_id=conversation["contact_id"],
            trigger_data=trigger_data,
        ))
    except Exception as e:
        logger.error(f"Engagement trigger failed for conversation {conversation['id']}: {e}")


@router.get("/open")
async def track_open(
    background_tasks: BackgroundTasks,
    id: str = Query(...),
    repo: AutomationRepository = Depends(get_repository),
    scheduler: AutomationScheduler = Depends(get_scheduler)
):
    try:
        conversation = await repo.find_conversation_by_tracking_id(id)
        if not conversation:
            logger.warning(f"Unknown tracking id on open: {id}")
            return _pixel_response()

        now = utc_now()
        await repo.record_conversation_event(conversation["id"], ["open_count"], "opened_at", now=now)
        background_tasks.add_task(emit_engagement_event, scheduler, conversation, "opened", now)
    except Exception as e:
        logger.error(f"Open tracking error for {id}: {e}")

    return _pixel_response()


@router.get("/click")
async def track_click(
    background_tasks: BackgroundTasks,
    id: str = Query(...),
    url: Optional[str] = None,
    cta: int = 0,
    repo: AutomationRepository = Depends(get_repository),
    scheduler: AutomationScheduler = Depends(get_scheduler)
):
    target = _safe_target(url)
    try:
        conversation = await repo.find_conversation_by_tracking_id(id)
        if not conversation:
            logger.warning(f"Unknown tracking id on click: {id}")
            return RedirectResponse(url="/", status_code=302)

        now = utc_now()
        counters = ["click_count", "cta_click_count"] if cta else ["click_count"]
        await repo.record_conversation_event(conversation["id"], counters, "first_clicked_at", now=now)
        background_tasks.add_task(emit_engagement_event, scheduler, conversation, "clicked", now, target)
    except Exception as e:
        logger.error(f"Click tracking error for {id}: {e}")

    return RedirectResponse(url=target, status_code=302)
