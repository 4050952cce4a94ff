"""
Order state machine and the buyer/seller operations that walk it.

Every status change is a conditional UPDATE whose WHERE clause names the
statuses the transition may start from. The synchronous payment pipeline and
the webhook worker race on the same rows; the database, not the caller's
stale in-memory copy, decides whether a transition still applies.
"""
import uuid
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core import audit
from core.audit import AuditLogger, RequestContext
from core.errors import AuthorizationError, NotFoundError, ValidationError
from database.models import Order
from database.types import as_utc, utcnow
from integrations.collaborators import ChatService, NotificationService, chat_channel_id
from integrations.listings import ListingStore
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Edges of the order lifecycle. ``paid`` is reached only from webhook and
# reconciliation paths; the synchronous pipeline stops at ``processing``.
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "reserved": frozenset({"processing", "expired", "cancelled"}),
    "pending": frozenset({"paid", "cancelled"}),
    "processing": frozenset({"pending", "paid", "cancelled", "refunded"}),
    "paid": frozenset({"shipped", "refunded"}),
    "shipped": frozenset({"completed", "refunded"}),
    "completed": frozenset({"refunded"}),
    "expired": frozenset(),
    "cancelled": frozenset(),
    "refunded": frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Statuses from which a full refund marks the order refunded
REFUNDABLE_STATUSES = ("paid", "processing", "shipped", "completed")


def can_transition(current: str, target: str) -> bool:
    """Whether ``current -> target`` is an edge of the lifecycle."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_for(target: str) -> FrozenSet[str]:
    """All statuses that may move to ``target``."""
    return frozenset(
        status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


async def transition_order(
    db: AsyncSession,
    order: Order,
    target: str,
    values: Optional[Dict[str, Any]] = None,
    allowed_from: Optional[Iterable[str]] = None,
) -> bool:
    """
    Move an order to ``target`` if its stored status still permits it.

    Args:
        db: Database session
        order: Order to transition (refreshed in place on success)
        target: Target status
        values: Extra columns written in the same statement
        allowed_from: Narrower set of source statuses for this call site

    Returns:
        bool: True if this call performed the transition

    Raises:
        ValueError: If ``allowed_from`` names an edge outside the lifecycle
    """
    legal = sources_for(target)
    sources = frozenset(allowed_from) if allowed_from is not None else legal
    if not sources <= legal:
        raise ValueError(
            f"Illegal order transition to {target} from {sorted(sources - legal)}"
        )

    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.status.in_(sorted(sources)))
        .values(status=target, updated_at=utcnow(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    changed = result.rowcount == 1
    await db.refresh(order)

    logger.info(
        "order_transition",
        order_id=str(order.id),
        target=target,
        applied=changed,
        current_status=order.status,
    )
    return changed


async def update_order_fields(db: AsyncSession, order: Order, **values: Any) -> None:
    """Write non-status columns without touching the lifecycle."""
    stmt = (
        update(Order)
        .where(Order.id == order.id)
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)
    await db.refresh(order)


async def merge_metadata(db: AsyncSession, order: Order, **entries: Any) -> None:
    """Merge breadcrumbs into the order's metadata bag."""
    await db.refresh(order)
    merged = dict(order.metadata_ or {})
    merged.update(entries)
    await update_order_fields(db, order, metadata_=merged)


async def load_order(db: AsyncSession, order_id: uuid.UUID | str) -> Order:
    """
    Fetch an order or raise NotFoundError.

    Raises:
        ValidationError: If ``order_id`` is not a UUID
        NotFoundError: If no such order exists
    """
    try:
        key = order_id if isinstance(order_id, uuid.UUID) else uuid.UUID(str(order_id))
    except ValueError:
        raise ValidationError("Invalid order ID format")
    result = await db.execute(select(Order).where(Order.id == key))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found", {"order_id": str(order_id)})
    return order


def require_buyer(order: Order, buyer_id: str) -> None:
    if order.buyer_id != buyer_id:
        logger.warning(
            "order_access_denied",
            order_id=str(order.id),
            requested_by=buyer_id,
            role="buyer",
        )
        raise AuthorizationError(
            "You are not authorized to access this order",
            {"order_id": str(order.id)},
        )


def require_seller(order: Order, seller_id: str) -> None:
    if order.seller_id != seller_id:
        logger.warning(
            "order_access_denied",
            order_id=str(order.id),
            requested_by=seller_id,
            role="seller",
        )
        raise AuthorizationError(
            "Only the seller can perform this action",
            {"order_id": str(order.id)},
        )


async def ensure_reservation_active(
    db: AsyncSession,
    order: Order,
    listing_store: Optional[ListingStore] = None,
) -> None:
    """
    Reclaim a lapsed reservation the first time anything touches it.

    Nothing expires reservations in the background; every buyer-facing
    operation calls this guard first. The expiry is committed before the
    error is raised so it survives the request's rollback.

    Raises:
        ValidationError: If the reservation has lapsed
    """
    if order.status == "expired":
        raise ValidationError(
            "Reservation has expired for this order", {"order_id": str(order.id)}
        )
    if order.status != "reserved":
        return
    expires_at = as_utc(order.reservation_expires_at)
    now = utcnow()
    if expires_at is None or expires_at > now:
        return

    listing_store = listing_store or ListingStore()
    expired = await transition_order(
        db, order, "expired", values={"expired_at": now}, allowed_from=("reserved",)
    )
    if not expired and order.status != "expired":
        # Payment moved the order on concurrently
        return
    if expired:
        await listing_store.release(db, order.listing_id, order.id)
        metrics.record_reservation_expired()
    await db.commit()

    logger.warning(
        "reservation_expired",
        order_id=str(order.id),
        listing_id=str(order.listing_id),
        expired_at=expires_at.isoformat(),
    )
    raise ValidationError(
        "Reservation has expired for this order",
        {"order_id": str(order.id), "expired_at": expires_at.isoformat()},
    )


def _iso(value: Any) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def serialize_order(order: Order) -> Dict[str, Any]:
    """API representation of an order."""
    return {
        "order_id": str(order.id),
        "listing_id": str(order.listing_id),
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "status": order.status,
        "amount": order.amount,
        "currency": order.currency,
        "listing_snapshot": order.listing_snapshot,
        "fraud_session_id": order.fraud_session_id,
        "payment_method": order.payment_method,
        "finix_buyer_identity_id": order.finix_buyer_identity_id,
        "finix_payment_instrument_id": order.finix_payment_instrument_id,
        "finix_authorization_id": order.finix_authorization_id,
        "finix_transfer_id": order.finix_transfer_id,
        "tracking_number": order.tracking_number,
        "tracking_carrier": order.tracking_carrier,
        "tracking_url": order.tracking_url,
        "reserved_at": _iso(order.reserved_at),
        "reservation_expires_at": _iso(order.reservation_expires_at),
        "paid_at": _iso(order.paid_at),
        "shipped_at": _iso(order.shipped_at),
        "delivered_at": _iso(order.delivered_at),
        "completed_at": _iso(order.completed_at),
        "cancelled_at": _iso(order.cancelled_at),
        "refunded_at": _iso(order.refunded_at),
        "metadata": order.metadata_ or {},
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }


class OrderService:
    """Post-payment order operations and order queries."""

    def __init__(
        self,
        listing_store: Optional[ListingStore] = None,
        notifications: Optional[NotificationService] = None,
        chat: Optional[ChatService] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.listing_store = listing_store or ListingStore()
        self.notifications = notifications or NotificationService()
        self.chat = chat or ChatService()
        self.audit = audit_logger or AuditLogger()

    async def upload_tracking(
        self,
        db: AsyncSession,
        order_id: uuid.UUID | str,
        seller_id: str,
        tracking_number: str,
        carrier: Optional[str] = None,
        tracking_url: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """
        Record shipment of a paid order (``paid -> shipped``).

        Raises:
            ValidationError: If tracking is missing or the order is not paid
            AuthorizationError: If the caller is not the seller
        """
        tracking_number = (tracking_number or "").strip()
        if not tracking_number:
            raise ValidationError("tracking_number is required")

        order = await load_order(db, order_id)
        require_seller(order, seller_id)

        if order.status != "paid":
            raise ValidationError(
                f"Cannot ship order with status: {order.status}",
                {"order_id": str(order.id), "status": order.status},
            )

        now = utcnow()
        shipped = await transition_order(
            db,
            order,
            "shipped",
            values={
                "tracking_number": tracking_number,
                "tracking_carrier": carrier,
                "tracking_url": tracking_url,
                "shipped_at": now,
            },
        )
        if not shipped:
            raise ValidationError(
                f"Cannot ship order with status: {order.status}",
                {"order_id": str(order.id), "status": order.status},
            )

        self.audit.record(
            db,
            audit.ORDER_SHIPPED,
            actor_id=seller_id,
            resource_type="order",
            resource_id=str(order.id),
            details={"tracking_number": tracking_number, "carrier": carrier},
            context=context,
        )
        self.chat.post_system_message(
            db,
            chat_channel_id(order.listing_id, order.buyer_id),
            {"type": "order_shipped", "order_id": str(order.id)},
            seller_id,
        )
        snapshot = order.listing_snapshot or {}
        self.notifications.notify(
            db,
            order.buyer_id,
            "order_shipped",
            title="Order Shipped!",
            body=(
                f"Your order for {snapshot.get('brand', '')} "
                f"{snapshot.get('model', '')} has been shipped."
            ),
            data={"order_id": str(order.id), "tracking_number": tracking_number, "carrier": carrier},
            action_url=f"/orders/{order.id}",
        )
        await db.commit()

        logger.info(
            "order_shipped",
            order_id=str(order.id),
            tracking_number=tracking_number,
            carrier=carrier,
        )
        return {
            "order_id": str(order.id),
            "status": order.status,
            "tracking_number": tracking_number,
            "tracking_carrier": carrier,
            "shipped_at": _iso(order.shipped_at),
            "message": "Tracking information uploaded successfully",
        }

    async def confirm_delivery(
        self,
        db: AsyncSession,
        order_id: uuid.UUID | str,
        buyer_id: str,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Buyer confirms receipt (``shipped -> completed``)."""
        order = await load_order(db, order_id)
        require_buyer(order, buyer_id)

        if order.status != "shipped":
            raise ValidationError(
                f"Cannot confirm delivery for order with status: {order.status}",
                {"order_id": str(order.id), "status": order.status},
            )

        now = utcnow()
        completed = await transition_order(
            db, order, "completed", values={"delivered_at": now, "completed_at": now}
        )
        if not completed:
            raise ValidationError(
                f"Cannot confirm delivery for order with status: {order.status}",
                {"order_id": str(order.id), "status": order.status},
            )

        self.audit.record(
            db,
            audit.ORDER_DELIVERED,
            actor_id=buyer_id,
            resource_type="order",
            resource_id=str(order.id),
        )
        channel = chat_channel_id(order.listing_id, order.buyer_id)
        self.chat.post_system_message(
            db, channel, {"type": "order_completed", "order_id": str(order.id)}, buyer_id
        )
        self.chat.post_system_message(
            db, channel, {"type": "listing_sold", "order_id": str(order.id)}, buyer_id
        )
        snapshot = order.listing_snapshot or {}
        self.notifications.notify(
            db,
            order.seller_id,
            "order_completed",
            title="Order Completed",
            body=(
                f"Buyer has confirmed delivery for {snapshot.get('brand', '')} "
                f"{snapshot.get('model', '')}. Funds will be released."
            ),
            data={"order_id": str(order.id)},
            action_url=f"/orders/{order.id}",
        )
        await db.commit()

        logger.info("order_delivery_confirmed", order_id=str(order.id))
        return {
            "order_id": str(order.id),
            "status": order.status,
            "delivered_at": _iso(order.delivered_at),
            "message": "Delivery confirmed. Funds will be released to the seller.",
        }

    async def cancel_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID | str,
        buyer_id: str,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """
        Buyer abandons a reservation (``reserved -> cancelled``).

        Orders past the reservation stage have money in flight and go through
        the refund workflow instead.
        """
        order = await load_order(db, order_id)
        require_buyer(order, buyer_id)

        if order.status != "reserved":
            raise ValidationError(
                f"Cannot cancel order with status: {order.status}",
                {"order_id": str(order.id), "status": order.status},
            )

        cancelled = await transition_order(
            db,
            order,
            "cancelled",
            values={"cancelled_at": utcnow()},
            allowed_from=("reserved",),
        )
        if not cancelled:
            raise ValidationError(
                f"Cannot cancel order with status: {order.status}",
                {"order_id": str(order.id), "status": order.status},
            )

        await self.listing_store.release(db, order.listing_id, order.id)
        self.audit.record(
            db,
            audit.ORDER_CANCELLED,
            actor_id=buyer_id,
            resource_type="order",
            resource_id=str(order.id),
            details={"listing_id": str(order.listing_id)},
            context=context,
        )
        await db.commit()

        logger.info("order_cancelled", order_id=str(order.id), buyer_id=buyer_id)
        return {
            "order_id": str(order.id),
            "status": order.status,
            "cancelled_at": _iso(order.cancelled_at),
            "message": "Order cancelled and listing released",
        }

    async def get_order(
        self, db: AsyncSession, order_id: uuid.UUID | str, user_id: str
    ) -> Dict[str, Any]:
        """Fetch one order; only its buyer or seller may read it."""
        order = await load_order(db, order_id)
        if user_id not in (order.buyer_id, order.seller_id):
            raise AuthorizationError(
                "You are not authorized to view this order",
                {"order_id": str(order.id)},
            )
        return serialize_order(order)

    async def get_dispute(
        self, db: AsyncSession, order_id: uuid.UUID | str, user_id: str
    ) -> Dict[str, Any]:
        """Chargeback details for an order; buyer or seller only."""
        order = await load_order(db, order_id)
        if user_id not in (order.buyer_id, order.seller_id):
            raise AuthorizationError(
                "You are not authorized to view this order",
                {"order_id": str(order.id)},
            )
        if not order.dispute_id:
            return {"order_id": str(order.id), "has_dispute": False}
        return {
            "order_id": str(order.id),
            "has_dispute": True,
            "dispute_id": order.dispute_id,
            "dispute_state": order.dispute_state,
            "dispute_reason": order.dispute_reason,
            "dispute_amount": order.dispute_amount,
            "respond_by": _iso(order.dispute_respond_by),
            "created_at": _iso(order.dispute_created_at),
        }

    async def list_buyer_orders(
        self,
        db: AsyncSession,
        buyer_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        return await self._list_orders(db, Order.buyer_id == buyer_id, status, limit, offset)

    async def list_seller_orders(
        self,
        db: AsyncSession,
        seller_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        return await self._list_orders(db, Order.seller_id == seller_id, status, limit, offset)

    async def _list_orders(
        self,
        db: AsyncSession,
        owner_clause: Any,
        status: Optional[str],
        limit: int,
        offset: int,
    ) -> List[Dict[str, Any]]:
        stmt = select(Order).where(owner_clause)
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc()).limit(limit).offset(offset)
        result = await db.execute(stmt)
        return [serialize_order(order) for order in result.scalars().all()]
