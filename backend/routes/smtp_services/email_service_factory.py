# backend/routes/smtp_services/email_service_factory.py
from typing import Any, Dict, Optional, Tuple

from core.config import settings
from core.errors import DeliveryError
from core.security import decrypt_password
from .base_email_service import BaseEmailService
from .smtp_email_service import SMTPEmailService


def get_email_service(settings_doc: Optional[Dict[str, Any]]) -> BaseEmailService:
    """
    Takes an org's email_settings document and returns an email service.
    Orgs without their own SMTP server use the global fallback settings.
    """
    if settings_doc and settings_doc.get("smtp_server"):
        encrypted_password = settings_doc.get("password")
        return SMTPEmailService(
            smtp_server=settings_doc["smtp_server"],
            smtp_port=int(settings_doc.get("smtp_port") or 587),
            username=settings_doc.get("username"),
            password=decrypt_password(encrypted_password) if encrypted_password else None,
            use_tls=settings_doc.get("use_tls", True),
            timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS
        )

    fallback = settings.get_smtp_fallback_config()
    if not fallback.get("smtp_server"):
        raise DeliveryError("SMTP settings missing")

    return SMTPEmailService(
        smtp_server=fallback["smtp_server"],
        smtp_port=fallback["smtp_port"],
        username=fallback.get("username"),
        password=fallback.get("password"),
        use_tls=fallback.get("use_tls", True),
        timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS
    )


def get_sender_identity(settings_doc: Optional[Dict[str, Any]]) -> Tuple[str, str, Optional[str]]:
    """(from_email, from_name, reply_to) for an org"""
    settings_doc = settings_doc or {}
    return (
        settings_doc.get("from_email") or settings.DEFAULT_SENDER_EMAIL,
        settings_doc.get("from_name") or settings.DEFAULT_SENDER_NAME,
        settings_doc.get("reply_to"),
    )
