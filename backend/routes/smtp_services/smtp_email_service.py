# backend/routes/smtp_services/smtp_email_service.py
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from .base_email_service import BaseEmailService, EmailMessage, EmailResult

logger = logging.getLogger(__name__)


class SMTPEmailService(BaseEmailService):
    def __init__(self, smtp_server: str, smtp_port: int, username: str, password: str,
                 use_tls: bool = True, timeout: int = 30):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_mime(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = message.from_header
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg["Message-ID"] = make_msgid()
        if message.reply_to:
            msg.add_header('reply-to', message.reply_to)
        if message.unsubscribe_url:
            msg.add_header('List-Unsubscribe', f"<{message.unsubscribe_url}>")
        msg.attach(MIMEText(message.html, "html"))
        return msg

    def _send_sync(self, message: EmailMessage) -> EmailResult:
        try:
            msg = self.build_mime(message)
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(message.from_email, [message.to], msg.as_string())

            return EmailResult(success=True, message_id=msg["Message-ID"], recipient=message.to)

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"❌ SMTP send to {message.to} failed: {e}")
            return EmailResult(success=False, error=str(e), recipient=message.to)

    async def send(self, message: EmailMessage) -> EmailResult:
        # smtplib blocks; keep it off the event loop
        return await asyncio.to_thread(self._send_sync, message)
