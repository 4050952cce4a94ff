"""SQLAlchemy database models for the marketplace order lifecycle."""
import uuid
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from database.types import JSONType, utcnow

ORDER_STATUSES = (
    "reserved",
    "pending",
    "processing",
    "paid",
    "shipped",
    "completed",
    "cancelled",
    "expired",
    "refunded",
)

REFUND_STATUSES = (
    "pending",
    "return_requested",
    "return_received",
    "executed",
    "denied",
    "cancelled",
)

# Statuses in which a refund request still blocks a new one for the same order
ACTIVE_REFUND_STATUSES = ("pending", "return_requested", "return_received")

WEBHOOK_EVENT_STATUSES = ("pending", "processing", "processed", "failed")

ONBOARDING_STATES = ("PENDING", "PROVISIONING", "UPDATE_REQUESTED", "REJECTED", "APPROVED")


def _in_clause(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Listing(Base):
    """
    Local record of a marketplace listing.

    The catalog itself lives in an adjacent system; this table carries the
    fields the order lifecycle reads and the reservation marker, which is the
    one piece of state shared between competing buyers.
    """

    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    brand: Mapped[str] = mapped_column(String(120), nullable=False)
    model: Mapped[str] = mapped_column(String(120), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(120), nullable=True)
    condition: Mapped[str | None] = mapped_column(String(50), nullable=True)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    images: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    thumbnail: Mapped[str | None] = mapped_column(Text, nullable=True)
    reserved_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reserved_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reserved_by_order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="listing_positive_price"),
        CheckConstraint(
            "status IN ('active', 'sold', 'inactive')", name="valid_listing_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of Listing."""
        return (
            f"<Listing(id={self.id}, seller_id={self.seller_id}, "
            f"status={self.status}, reserved_until={self.reserved_until})>"
        )


class UserProfile(Base):
    """Read-only view of buyer profile data used to prefill processor identities."""

    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    location: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    onboarding_location: Mapped[Dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True
    )

    def __repr__(self) -> str:
        """String representation of UserProfile."""
        return f"<UserProfile(id={self.id})>"


class Order(Base):
    """
    One reservation/purchase attempt of a listing by a buyer.

    The synchronous payment pipeline and the webhook worker both write to
    this row, always through status-conditional updates.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    listing_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="reserved")
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reservation_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    fraud_session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    finix_buyer_identity_id: Mapped[str | None] = mapped_column(String(64))
    finix_payment_instrument_id: Mapped[str | None] = mapped_column(String(64), index=True)
    finix_authorization_id: Mapped[str | None] = mapped_column(String(64), index=True)
    finix_transfer_id: Mapped[str | None] = mapped_column(String(64), index=True)
    payment_method: Mapped[str | None] = mapped_column(String(10))

    tracking_number: Mapped[str | None] = mapped_column(String(120))
    tracking_carrier: Mapped[str | None] = mapped_column(String(60))
    tracking_url: Mapped[str | None] = mapped_column(Text)

    # Chargeback raised against the payment transfer, from dispute webhooks
    dispute_id: Mapped[str | None] = mapped_column(String(64), index=True)
    dispute_state: Mapped[str | None] = mapped_column(String(20))
    dispute_reason: Mapped[str | None] = mapped_column(String(60))
    dispute_amount: Mapped[int | None] = mapped_column(BigInteger)
    dispute_respond_by: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispute_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="order_positive_amount"),
        CheckConstraint(_in_clause("status", ORDER_STATUSES), name="valid_order_status"),
        CheckConstraint(
            "payment_method IS NULL OR payment_method IN ('card', 'bank', 'token')",
            name="valid_payment_method",
        ),
        Index("idx_orders_buyer_created", "buyer_id", "created_at"),
        Index("idx_orders_seller_created", "seller_id", "created_at"),
        Index("idx_orders_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, listing_id={self.listing_id}, "
            f"buyer_id={self.buyer_id}, status={self.status})>"
        )


class RefundRequest(Base):
    """
    Buyer-initiated refund against a settled order.

    At most one request per order may be in an active status; the partial
    unique index enforces that at the storage layer as well.
    """

    __tablename__ = "refund_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    requested_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    original_transfer_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    buyer_reason: Mapped[str] = mapped_column(Text, nullable=False)
    seller_response_reason: Mapped[str | None] = mapped_column(Text)

    product_returned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    return_tracking_number: Mapped[str | None] = mapped_column(String(120))
    return_carrier: Mapped[str | None] = mapped_column(String(60))
    return_shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    product_return_confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    return_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    finix_transfer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    finix_reversal_id: Mapped[str | None] = mapped_column(String(64))
    finix_reversal_state: Mapped[str | None] = mapped_column(String(20))
    idempotency_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    approved_by: Mapped[str | None] = mapped_column(String(64))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    denied_by: Mapped[str | None] = mapped_column(String(64))
    denied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("requested_amount >= 1", name="refund_positive_amount"),
        CheckConstraint(
            "requested_amount <= original_transfer_amount", name="refund_within_original"
        ),
        CheckConstraint(_in_clause("status", REFUND_STATUSES), name="valid_refund_status"),
        Index(
            "uq_refund_requests_active_order",
            "order_id",
            unique=True,
            postgresql_where=text(_in_clause("status", ACTIVE_REFUND_STATUSES)),
            sqlite_where=text(_in_clause("status", ACTIVE_REFUND_STATUSES)),
        ),
    )

    def __repr__(self) -> str:
        """String representation of RefundRequest."""
        return (
            f"<RefundRequest(id={self.id}, order_id={self.order_id}, "
            f"amount={self.requested_amount}, status={self.status})>"
        )


class AuditLog(Base):
    """
    Append-only trail of privileged state transitions.

    Rows are written once and never updated or deleted.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_role: Mapped[str] = mapped_column(String(10), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(40), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    idempotency_id: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "actor_role IN ('buyer', 'seller', 'admin', 'system')", name="valid_actor_role"
        ),
        Index("idx_audit_logs_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        """String representation of AuditLog."""
        return (
            f"<AuditLog(id={self.id}, action={self.action}, "
            f"resource={self.resource_type}:{self.resource_id})>"
        )


class WebhookEvent(Base):
    """
    Processing record for one Finix webhook event.

    The processor-assigned event id is unique, which makes replays of the
    same event collapse onto a single row.
    """

    __tablename__ = "finix_webhook_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    event_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity: Mapped[str] = mapped_column(String(60), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    result: Mapped[Dict[str, Any] | None] = mapped_column(JSONType)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # Lease start of the current claim; a crashed worker leaves it behind
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            _in_clause("status", WEBHOOK_EVENT_STATUSES), name="valid_webhook_status"
        ),
        Index("idx_webhook_events_status_received", "status", "received_at"),
    )

    def __repr__(self) -> str:
        """String representation of WebhookEvent."""
        return (
            f"<WebhookEvent(event_id={self.event_id}, type={self.event_type}, "
            f"status={self.status}, attempts={self.attempt_count})>"
        )


class MerchantOnboarding(Base):
    """
    Seller-side merchant account tracking.

    Rows are created by the onboarding system; this service only advances
    them from processor webhooks and reads them to find a payee.
    """

    __tablename__ = "merchant_onboardings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    form_id: Mapped[str | None] = mapped_column(String(64), unique=True)
    identity_id: Mapped[str | None] = mapped_column(String(64), index=True)
    merchant_id: Mapped[str | None] = mapped_column(String(64), index=True)
    verification_id: Mapped[str | None] = mapped_column(String(64))
    onboarding_state: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    verification_state: Mapped[str | None] = mapped_column(String(20))
    onboarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            _in_clause("onboarding_state", ONBOARDING_STATES), name="valid_onboarding_state"
        ),
    )

    def __repr__(self) -> str:
        """String representation of MerchantOnboarding."""
        return (
            f"<MerchantOnboarding(user_id={self.user_id}, merchant_id={self.merchant_id}, "
            f"state={self.onboarding_state})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notifications and chat system messages are written in the same
    transaction as the order change and published by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(40), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
