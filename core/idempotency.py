"""
Idempotency keys for outbound processor calls.

Every mutating Finix call carries an idempotency key both as the
``Finix-Idempotency-Key`` header and as ``idempotency_id`` in the body.
Keys derived here are deterministic: a client that retries a request with
the same idempotency id re-sends byte-identical keys for every step, so the
processor can collapse the duplicates.
"""
import hashlib
import re
import secrets
import uuid
from typing import Optional

import structlog

from core.errors import ValidationError

logger = structlog.get_logger(__name__)

MAX_KEY_LENGTH = 255
_ALLOWED = re.compile(r"^[A-Za-z0-9._:\-]+$")


class IdempotencyManager:
    """Validates caller-supplied idempotency ids and derives per-step keys."""

    @staticmethod
    def validate(idempotency_id: Optional[str]) -> str:
        """
        Validate a caller-supplied idempotency id.

        Args:
            idempotency_id: Raw value from the request

        Returns:
            str: The stripped id

        Raises:
            ValidationError: If the id is missing or malformed
        """
        value = (idempotency_id or "").strip()
        if not value:
            raise ValidationError("idempotency_id is required")
        # Leave room for the step suffix added by derive()
        if len(value) > MAX_KEY_LENGTH - 32:
            raise ValidationError("idempotency_id is too long")
        if not _ALLOWED.match(value):
            raise ValidationError(
                "idempotency_id may only contain letters, digits, '.', '_', ':' and '-'"
            )
        return value

    @staticmethod
    def derive(idempotency_id: str, step: Optional[str] = None) -> str:
        """
        Derive the key for one step of a multi-call operation.

        The bare id is used for the primary call of an operation; auxiliary
        calls get a stable suffix so two different endpoints never share a key.

        Args:
            idempotency_id: Validated caller id
            step: Step name (e.g. ``capture``)

        Returns:
            str: Deterministic key
        """
        key = idempotency_id if not step else f"{idempotency_id}-{step}"
        if len(key) > MAX_KEY_LENGTH:
            digest = hashlib.sha256(key.encode()).hexdigest()[:32]
            key = f"{key[: MAX_KEY_LENGTH - 33]}-{digest}"
        return key

    @staticmethod
    def generate(prefix: str) -> str:
        """Generate a fresh random key for a server-initiated operation."""
        return f"{prefix}-{uuid.uuid4().hex}"


def new_fraud_session_id() -> str:
    """Fresh fraud-detection session id (``fs_`` + 32 hex chars)."""
    return f"fs_{secrets.token_hex(16)}"
