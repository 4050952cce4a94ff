"""Append-only audit trail for privileged order and refund transitions."""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AuditLog
from database.types import utcnow

logger = structlog.get_logger(__name__)

REFUND_REQUESTED = "REFUND_REQUESTED"
REFUND_APPROVED = "REFUND_APPROVED"
REFUND_DENIED = "REFUND_DENIED"
REFUND_CANCELLED = "REFUND_CANCELLED"
PRODUCT_RETURN_SUBMITTED = "PRODUCT_RETURN_SUBMITTED"
PRODUCT_RETURN_CONFIRMED = "PRODUCT_RETURN_CONFIRMED"
ORDER_CANCELLED = "ORDER_CANCELLED"
ORDER_SHIPPED = "ORDER_SHIPPED"
ORDER_DELIVERED = "ORDER_DELIVERED"

# Role of whoever is allowed to perform each action
ACTION_ROLES: Dict[str, str] = {
    REFUND_REQUESTED: "buyer",
    REFUND_CANCELLED: "buyer",
    PRODUCT_RETURN_SUBMITTED: "buyer",
    ORDER_CANCELLED: "buyer",
    ORDER_DELIVERED: "buyer",
    REFUND_APPROVED: "seller",
    REFUND_DENIED: "seller",
    PRODUCT_RETURN_CONFIRMED: "seller",
    ORDER_SHIPPED: "seller",
}


class RequestContext:
    """Client details captured for audit rows."""

    def __init__(self, ip_address: Optional[str] = None, user_agent: Optional[str] = None):
        self.ip_address = ip_address
        self.user_agent = user_agent


class AuditLogger:
    """Writes AuditLog rows. Rows are never updated or deleted."""

    def record(
        self,
        db: AsyncSession,
        action: str,
        actor_id: str,
        resource_type: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
        idempotency_id: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> AuditLog:
        """
        Add an audit row to the caller's transaction.

        Args:
            db: Database session
            action: One of the action constants above
            actor_id: Acting user (or ``system``)
            resource_type: e.g. ``refund_request``, ``order``
            resource_id: Id of the affected resource
            details: Structured detail payload
            context: Client IP and user agent
            idempotency_id: Idempotency id of the triggering request
            actor_role: Override for the role derived from ``action``

        Returns:
            AuditLog: The pending row
        """
        entry = AuditLog(
            action=action,
            actor_id=actor_id,
            actor_role=actor_role or ACTION_ROLES.get(action, "system"),
            resource_type=resource_type,
            resource_id=str(resource_id),
            details=details or {},
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            idempotency_id=idempotency_id,
            created_at=utcnow(),
        )
        db.add(entry)

        logger.info(
            "audit_log_recorded",
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=str(resource_id),
        )
        return entry
