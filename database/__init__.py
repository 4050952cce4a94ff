"""Database package for the marketplace escrow service."""
from .connection import get_db, init_db
from .models import (
    AuditLog,
    Base,
    Listing,
    MerchantOnboarding,
    Order,
    OutboxEvent,
    RefundRequest,
    UserProfile,
    WebhookEvent,
)

__all__ = [
    "AuditLog",
    "Base",
    "Listing",
    "MerchantOnboarding",
    "Order",
    "OutboxEvent",
    "RefundRequest",
    "UserProfile",
    "WebhookEvent",
    "get_db",
    "init_db",
]
