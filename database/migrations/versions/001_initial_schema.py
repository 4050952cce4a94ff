"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = (
    "'reserved', 'pending', 'processing', 'paid', 'shipped', "
    "'completed', 'cancelled', 'expired', 'refunded'"
)
REFUND_STATUSES = (
    "'pending', 'return_requested', 'return_received', 'executed', 'denied', 'cancelled'"
)
ACTIVE_REFUND_STATUSES = "'pending', 'return_requested', 'return_received'"


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    """Upgrade database schema."""
    # Listings (reservation marker lives here)
    op.create_table(
        "listings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("brand", sa.String(length=120), nullable=False),
        sa.Column("model", sa.String(length=120), nullable=False),
        sa.Column("reference", sa.String(length=120), nullable=True),
        sa.Column("condition", sa.String(length=50), nullable=True),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("images", _jsonb(), nullable=False),
        sa.Column("thumbnail", sa.Text(), nullable=True),
        sa.Column("reserved_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reserved_by_user_id", sa.String(length=64), nullable=True),
        sa.Column("reserved_by_order_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("price > 0", name="listing_positive_price"),
        sa.CheckConstraint(
            "status IN ('active', 'sold', 'inactive')", name="valid_listing_status"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_listings_seller_id"), "listings", ["seller_id"], unique=False)

    # User profiles (read-only view)
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("first_name", sa.String(length=120), nullable=True),
        sa.Column("last_name", sa.String(length=120), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("location", _jsonb(), nullable=True),
        sa.Column("onboarding_location", _jsonb(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # Orders
    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("listing_id", sa.Uuid(), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("listing_snapshot", _jsonb(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reservation_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fraud_session_id", sa.String(length=64), nullable=False),
        sa.Column("finix_buyer_identity_id", sa.String(length=64), nullable=True),
        sa.Column("finix_payment_instrument_id", sa.String(length=64), nullable=True),
        sa.Column("finix_authorization_id", sa.String(length=64), nullable=True),
        sa.Column("finix_transfer_id", sa.String(length=64), nullable=True),
        sa.Column("payment_method", sa.String(length=10), nullable=True),
        sa.Column("tracking_number", sa.String(length=120), nullable=True),
        sa.Column("tracking_carrier", sa.String(length=60), nullable=True),
        sa.Column("tracking_url", sa.Text(), nullable=True),
        sa.Column("dispute_id", sa.String(length=64), nullable=True),
        sa.Column("dispute_state", sa.String(length=20), nullable=True),
        sa.Column("dispute_reason", sa.String(length=60), nullable=True),
        sa.Column("dispute_amount", sa.BigInteger(), nullable=True),
        sa.Column("dispute_respond_by", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", _jsonb(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="order_positive_amount"),
        sa.CheckConstraint(f"status IN ({ORDER_STATUSES})", name="valid_order_status"),
        sa.CheckConstraint(
            "payment_method IS NULL OR payment_method IN ('card', 'bank', 'token')",
            name="valid_payment_method",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_orders_listing_id"), "orders", ["listing_id"], unique=False)
    op.create_index(op.f("ix_orders_buyer_id"), "orders", ["buyer_id"], unique=False)
    op.create_index(op.f("ix_orders_seller_id"), "orders", ["seller_id"], unique=False)
    op.create_index(op.f("ix_orders_created_at"), "orders", ["created_at"], unique=False)
    op.create_index(
        op.f("ix_orders_finix_payment_instrument_id"),
        "orders",
        ["finix_payment_instrument_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_orders_finix_authorization_id"),
        "orders",
        ["finix_authorization_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_orders_finix_transfer_id"), "orders", ["finix_transfer_id"], unique=False
    )
    op.create_index(op.f("ix_orders_dispute_id"), "orders", ["dispute_id"], unique=False)
    op.create_index("idx_orders_buyer_created", "orders", ["buyer_id", "created_at"])
    op.create_index("idx_orders_seller_created", "orders", ["seller_id", "created_at"])
    op.create_index("idx_orders_status_updated", "orders", ["status", "updated_at"])

    # Refund requests
    op.create_table(
        "refund_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("requested_amount", sa.BigInteger(), nullable=False),
        sa.Column("original_transfer_amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("buyer_reason", sa.Text(), nullable=False),
        sa.Column("seller_response_reason", sa.Text(), nullable=True),
        sa.Column("product_returned", sa.Boolean(), nullable=False),
        sa.Column("return_tracking_number", sa.String(length=120), nullable=True),
        sa.Column("return_carrier", sa.String(length=60), nullable=True),
        sa.Column("return_shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("product_return_confirmed", sa.Boolean(), nullable=False),
        sa.Column("return_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("finix_transfer_id", sa.String(length=64), nullable=False),
        sa.Column("finix_reversal_id", sa.String(length=64), nullable=True),
        sa.Column("finix_reversal_state", sa.String(length=20), nullable=True),
        sa.Column("idempotency_id", sa.String(length=255), nullable=False),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("denied_by", sa.String(length=64), nullable=True),
        sa.Column("denied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("requested_amount >= 1", name="refund_positive_amount"),
        sa.CheckConstraint(
            "requested_amount <= original_transfer_amount", name="refund_within_original"
        ),
        sa.CheckConstraint(f"status IN ({REFUND_STATUSES})", name="valid_refund_status"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_id"),
    )
    op.create_index(
        op.f("ix_refund_requests_order_id"), "refund_requests", ["order_id"], unique=False
    )
    op.create_index(
        op.f("ix_refund_requests_buyer_id"), "refund_requests", ["buyer_id"], unique=False
    )
    op.create_index(
        op.f("ix_refund_requests_seller_id"), "refund_requests", ["seller_id"], unique=False
    )
    op.create_index(
        op.f("ix_refund_requests_created_at"), "refund_requests", ["created_at"], unique=False
    )
    # At most one active request per order
    op.create_index(
        "uq_refund_requests_active_order",
        "refund_requests",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text(f"status IN ({ACTIVE_REFUND_STATUSES})"),
    )

    # Audit log (append-only)
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("actor_role", sa.String(length=10), nullable=False),
        sa.Column("resource_type", sa.String(length=40), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=False),
        sa.Column("details", _jsonb(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("idempotency_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "actor_role IN ('buyer', 'seller', 'admin', 'system')", name="valid_actor_role"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audit_logs_action"), "audit_logs", ["action"], unique=False)
    op.create_index(op.f("ix_audit_logs_actor_id"), "audit_logs", ["actor_id"], unique=False)
    op.create_index(
        op.f("ix_audit_logs_created_at"), "audit_logs", ["created_at"], unique=False
    )
    op.create_index(
        "idx_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"], unique=False
    )

    # Webhook processing records
    op.create_table(
        "finix_webhook_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=60), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", _jsonb(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'processed', 'failed')",
            name="valid_webhook_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index(
        op.f("ix_finix_webhook_events_event_type"),
        "finix_webhook_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_webhook_events_status_received",
        "finix_webhook_events",
        ["status", "received_at"],
        unique=False,
    )

    # Merchant onboarding
    op.create_table(
        "merchant_onboardings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("form_id", sa.String(length=64), nullable=True),
        sa.Column("identity_id", sa.String(length=64), nullable=True),
        sa.Column("merchant_id", sa.String(length=64), nullable=True),
        sa.Column("verification_id", sa.String(length=64), nullable=True),
        sa.Column("onboarding_state", sa.String(length=20), nullable=False),
        sa.Column("verification_state", sa.String(length=20), nullable=True),
        sa.Column("onboarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "onboarding_state IN ('PENDING', 'PROVISIONING', 'UPDATE_REQUESTED', "
            "'REJECTED', 'APPROVED')",
            name="valid_onboarding_state",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("form_id"),
    )
    op.create_index(
        op.f("ix_merchant_onboardings_user_id"), "merchant_onboardings", ["user_id"]
    )
    op.create_index(
        op.f("ix_merchant_onboardings_identity_id"), "merchant_onboardings", ["identity_id"]
    )
    op.create_index(
        op.f("ix_merchant_onboardings_merchant_id"), "merchant_onboardings", ["merchant_id"]
    )

    # Transactional outbox
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", sa.String(length=64), nullable=False),
        sa.Column("aggregate_type", sa.String(length=40), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"), "outbox_events", ["published"], unique=False
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        "idx_outbox_aggregate",
        "outbox_events",
        ["aggregate_id", "aggregate_type"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("outbox_events")
    op.drop_table("merchant_onboardings")
    op.drop_table("finix_webhook_events")
    op.drop_table("audit_logs")
    op.drop_table("refund_requests")
    op.drop_table("orders")
    op.drop_table("user_profiles")
    op.drop_table("listings")
