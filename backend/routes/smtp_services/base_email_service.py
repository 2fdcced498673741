# backend/routes/smtp_services/base_email_service.py
from typing import Optional
from dataclasses import dataclass


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    from_email: str
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    contact_id: Optional[str] = None
    tracking_pixel_id: Optional[str] = None
    unsubscribe_token: Optional[str] = None
    unsubscribe_url: Optional[str] = None

    @property
    def from_header(self) -> str:
        return f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    recipient: Optional[str] = None


class BaseEmailService:
    async def send(self, message: EmailMessage) -> EmailResult:
        raise NotImplementedError("send must be implemented by subclasses")
