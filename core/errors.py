"""
Error taxonomy for order, payment and refund operations.

Every error carries a stable machine-readable code and a human-readable
message; the API layer maps each class to an HTTP status.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base exception for domain errors surfaced to clients."""

    code = "MARKETPLACE_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize error.

        Args:
            message: Human-readable message
            details: Optional structured context for the client
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for an API error body."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(MarketplaceError):
    """Bad input or an unmet precondition. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400


class AuthorizationError(MarketplaceError):
    """The acting user may not perform this operation."""

    code = "AUTHORIZATION_ERROR"
    status_code = 403


class NotFoundError(MarketplaceError):
    """A referenced entity does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class PaymentError(MarketplaceError):
    """
    The processor declined or failed a payment step.

    Carries the canonical failure code so clients can pick a remediation
    message, plus any processor ids obtained before the failure.
    """

    code = "PAYMENT_ERROR"
    status_code = 402

    def __init__(
        self,
        message: str,
        failure_code: str,
        authorization_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize payment error.

        Args:
            message: Failure message, usually the processor's own wording
            failure_code: Canonical failure code (see core.failure_codes)
            authorization_id: Authorization created before the failure, if any
            transfer_id: Transfer created before the failure, if any
            details: Extra context
        """
        merged = dict(details or {})
        merged.update(
            failure_code=failure_code,
            authorization_id=authorization_id,
            transfer_id=transfer_id,
        )
        super().__init__(message, merged)
        self.failure_code = failure_code
        self.authorization_id = authorization_id
        self.transfer_id = transfer_id


class RetryableWebhookError(Exception):
    """A webhook could not be applied yet; the event must be retried later."""

    pass


class WebhookPayloadError(Exception):
    """A webhook payload is malformed; retrying cannot help."""

    pass
