"""
Webhook authenticity checks.

Finix signs each webhook with HMAC-SHA256 over the raw request body and
sends the hex digest in the ``Finix-Signature`` header. Some deployments
also configure legacy Basic credentials on the webhook endpoint.
"""
import base64
import binascii
import hashlib
import hmac
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    is_production: bool,
) -> bool:
    """
    Verify a webhook signature with a constant-time comparison.

    When no secret is configured the check is skipped outside production
    and refused in production.

    Args:
        payload: Raw, unparsed request body
        signature: Value of the ``Finix-Signature`` header
        secret: Configured webhook secret
        is_production: Whether the service runs in a production posture

    Returns:
        bool: True if the request may be accepted
    """
    if not secret or not secret.strip():
        if is_production:
            logger.error("webhook_secret_missing_in_production")
            return False
        logger.warning("webhook_signature_check_skipped", reason="no secret configured")
        return True

    if not signature or not signature.strip():
        logger.error("webhook_signature_missing")
        return False

    expected = compute_signature(payload, secret)
    return hmac.compare_digest(signature.strip().lower().encode(), expected.encode())


def verify_basic_auth(
    authorization: Optional[str], username: str, password: str
) -> bool:
    """
    Check a ``Basic`` Authorization header against configured credentials.

    Args:
        authorization: Raw Authorization header
        username: Expected user
        password: Expected password

    Returns:
        bool: True if the credentials match
    """
    if not authorization or not authorization.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(authorization[len("Basic "):], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    user, _, supplied = decoded.partition(":")
    user_ok = hmac.compare_digest(user.encode(), username.encode())
    password_ok = hmac.compare_digest(supplied.encode(), password.encode())
    return user_ok and password_ok
