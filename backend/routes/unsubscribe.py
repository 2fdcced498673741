import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse

from repositories.automation_repo import AutomationRepository, get_repository

router = APIRouter(tags=["unsubscribe"])
logger = logging.getLogger(__name__)


UNSUBSCRIBE_SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Unsubscribed</title>
    <style>
        body {{ font-family: Arial, sans-serif; display: flex; justify-content: center; align-items: center; min-height: 100vh; margin: 0; background: #f5f5f5; }}
        .card {{ background: white; padding: 40px; border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); text-align: center; max-width: 400px; }}
        h1 {{ color: #333; font-size: 24px; }}
        p {{ color: #666; line-height: 1.6; }}
        .email {{ font-weight: bold; color: #333; }}
        .check {{ font-size: 48px; margin-bottom: 16px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="check">&#10003;</div>
        <h1>Successfully Unsubscribed</h1>
        <p><span class="email">{email}</span> will no longer receive automated emails from us.</p>
    </div>
</body>
</html>"""

UNSUBSCRIBE_ERROR_HTML = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Unsubscribe Error</title>
    <style>
        body { font-family: Arial, sans-serif; display: flex; justify-content: center; align-items: center; min-height: 100vh; margin: 0; background: #f5f5f5; }
        .card { background: white; padding: 40px; border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); text-align: center; max-width: 400px; }
        h1 { color: #cc0000; font-size: 24px; }
        p { color: #666; line-height: 1.6; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Invalid Link</h1>
        <p>This unsubscribe link is invalid or has expired. If you continue to receive unwanted emails, please contact us directly.</p>
    </div>
</body>
</html>"""


async def process_unsubscribe(
    repo: AutomationRepository,
    token: str,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None
) -> Optional[dict]:
    """Record the opt-out for the conversation behind token; None for unknown tokens"""
    conversation = await repo.find_conversation_by_unsubscribe_token(token)
    if not conversation:
        return None

    created = await repo.record_unsubscribe({
        "org_id": conversation["org_id"],
        "email": conversation["to_email"],
        "contact_id": conversation.get("contact_id"),
        "source": "automation",
        "unsubscribe_token": token,
        "user_agent": user_agent,
        "ip_address": ip_address,
    })

    if created:
        logger.info(f"Unsubscribe processed for {conversation['to_email']} (org: {conversation['org_id']})")
    else:
        logger.info(f"{conversation['to_email']} was already unsubscribed")
    return conversation


@router.get("/unsubscribe", response_class=HTMLResponse)
async def unsubscribe_via_link(
    request: Request,
    token: Optional[str] = None,
    repo: AutomationRepository = Depends(get_repository)
):
    if not token:
        return HTMLResponse(content=UNSUBSCRIBE_ERROR_HTML, status_code=400)

    conversation = await process_unsubscribe(
        repo,
        token,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.headers.get("x-forwarded-for") or (request.client.host if request.client else None)
    )
    if not conversation:
        return HTMLResponse(content=UNSUBSCRIBE_ERROR_HTML, status_code=404)

    return HTMLResponse(
        content=UNSUBSCRIBE_SUCCESS_HTML.format(email=html.escape(conversation["to_email"])),
        status_code=200
    )
