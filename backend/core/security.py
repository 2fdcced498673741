# core/security.py
import logging
import secrets
import uuid

from cryptography.fernet import Fernet, InvalidToken

from core.config import settings

logger = logging.getLogger(__name__)


def _get_cipher() -> Fernet:
    master_key = settings.MASTER_ENCRYPTION_KEY
    if not master_key:
        raise ValueError("MASTER_ENCRYPTION_KEY required")
    return Fernet(master_key.encode())


def decrypt_password(encrypted_password: str) -> str:
    """Utility function to decrypt password"""
    if not encrypted_password:
        return ""
    try:
        return _get_cipher().decrypt(encrypted_password.encode()).decode()
    except InvalidToken:
        logger.error("Stored SMTP password could not be decrypted")
        return ""


def generate_tracking_pixel_id(execution_id: str) -> str:
    """Unique id for the open pixel and click redirects of one email"""
    return f"{execution_id}_{uuid.uuid4().hex[:12]}"


def generate_unsubscribe_token() -> str:
    return secrets.token_urlsafe(24)
