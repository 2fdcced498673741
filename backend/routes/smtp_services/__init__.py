# backend/routes/smtp_services/__init__.py
from .base_email_service import BaseEmailService, EmailMessage, EmailResult
from .smtp_email_service import SMTPEmailService
from .email_service_factory import get_email_service, get_sender_identity

__all__ = [
    'BaseEmailService',
    'EmailMessage',
    'EmailResult',
    'SMTPEmailService',
    'get_email_service',
    'get_sender_identity',
]
