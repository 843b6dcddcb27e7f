"""Security utilities for launch sharing and webhook verification.

WHAT:
    - Password hashing for password-protected public launch recaps
    - HMAC-SHA256 verification of signed purchase webhooks
    - Unguessable share tokens

WHY:
    Recap pages are public URLs; the optional password must never be stored
    in plaintext. Purchase webhooks write revenue data and must come from
    our own platform adapters.
"""

import base64
import hashlib
import hmac
import logging
import secrets
from typing import Optional

from passlib.hash import pbkdf2_sha256

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash a plaintext share password."""
    return pbkdf2_sha256.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a plaintext share password against its hash."""
    return pbkdf2_sha256.verify(password, password_hash)


def generate_share_token() -> str:
    """Return a URL-safe token for a public launch recap."""
    return secrets.token_urlsafe(24)


def compute_webhook_signature(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of the raw request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    """Verify that a purchase webhook was signed with the shared secret.

    Args:
        secret: PURCHASE_WEBHOOK_SECRET
        body: Raw request body bytes
        signature: X-CourseSignal-Hmac-Sha256 header value

    Returns:
        True if the signature is valid, False otherwise
    """
    if not secret:
        logger.error("[WEBHOOK] PURCHASE_WEBHOOK_SECRET not configured")
        return False

    if not signature:
        logger.warning("[WEBHOOK] Missing HMAC header")
        return False

    # Constant-time comparison
    is_valid = hmac.compare_digest(compute_webhook_signature(secret, body), signature)
    if not is_valid:
        logger.warning("[WEBHOOK] Invalid HMAC signature")
    return is_valid
