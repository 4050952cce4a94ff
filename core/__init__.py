"""Core order lifecycle logic."""
from .errors import (
    AuthorizationError,
    MarketplaceError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from .idempotency import IdempotencyManager

__all__ = [
    "AuthorizationError",
    "IdempotencyManager",
    "MarketplaceError",
    "NotFoundError",
    "PaymentError",
    "ValidationError",
]
