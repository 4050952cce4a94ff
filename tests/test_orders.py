"""
Tests for the order state machine and post-payment operations.
"""
from typing import Any

import pytest
from sqlalchemy import select

from core.errors import AuthorizationError, NotFoundError, ValidationError
from core.orders import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    OrderService,
    can_transition,
    ensure_reservation_active,
    sources_for,
    transition_order,
)
from database.models import AuditLog


class TestStateMachine:
    """Lifecycle edges."""

    @pytest.mark.unit
    def test_paid_never_reached_from_cancelled_or_expired(self) -> None:
        """Test terminal statuses have no outgoing edges."""
        assert TERMINAL_STATUSES == {"expired", "cancelled", "refunded"}
        assert not can_transition("cancelled", "paid")
        assert not can_transition("expired", "processing")

    @pytest.mark.unit
    def test_expected_edges(self) -> None:
        """Test the edges payment, webhooks and refunds rely on."""
        assert can_transition("reserved", "processing")
        assert can_transition("processing", "pending")
        assert can_transition("pending", "paid")
        assert can_transition("paid", "shipped")
        assert can_transition("shipped", "completed")
        assert can_transition("completed", "refunded")
        assert not can_transition("paid", "processing")
        assert not can_transition("pending", "processing")

    @pytest.mark.unit
    def test_reserved_orders_must_pass_through_processing(self) -> None:
        """Test a reservation cannot settle without the pipeline recording its transfer."""
        assert not can_transition("reserved", "paid")
        assert not can_transition("reserved", "pending")
        assert ALLOWED_TRANSITIONS["reserved"] == {"processing", "expired", "cancelled"}

    @pytest.mark.unit
    def test_sources_for_paid(self) -> None:
        """Test which statuses settle into paid."""
        assert sources_for("paid") == {"pending", "processing"}
        assert set(ALLOWED_TRANSITIONS) >= sources_for("refunded")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_applies_once(self, test_db: Any, factory: Any) -> None:
        """Test a conditional transition does not re-apply."""
        order = await factory.order(status="processing")

        assert await transition_order(test_db, order, "paid") is True
        assert order.status == "paid"
        assert await transition_order(test_db, order, "paid") is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_refuses_illegal_sources(self, test_db: Any, factory: Any) -> None:
        """Test call sites cannot widen the lifecycle."""
        order = await factory.order(status="cancelled")

        with pytest.raises(ValueError):
            await transition_order(test_db, order, "paid", allowed_from=("cancelled",))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_copy_cannot_regress_status(self, test_db: Any, factory: Any) -> None:
        """Test a transition decided on stale data is refused by the database."""
        order = await factory.order(status="processing")
        await transition_order(test_db, order, "paid")

        # Caller still believes the order is processing
        order.status = "processing"
        assert await transition_order(test_db, order, "pending") is False
        assert order.status == "paid"


class TestReservationExpiry:
    """Lazy expiry of lapsed reservations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lapsed_reservation_expires_and_releases(self, test_db: Any, factory: Any) -> None:
        """Test the first touch after expiry expires the order and frees the listing."""
        listing = await factory.listing()
        order = await factory.order(listing=listing, expires_in_minutes=-1)

        with pytest.raises(ValidationError, match="expired"):
            await ensure_reservation_active(test_db, order)

        assert order.status == "expired"
        assert order.expired_at is not None
        await test_db.refresh(listing)
        assert listing.reserved_by_order_id is None

        # Later touches keep failing without re-releasing
        with pytest.raises(ValidationError, match="expired"):
            await ensure_reservation_active(test_db, order)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_live_reservation_passes(self, test_db: Any, factory: Any) -> None:
        """Test an unexpired reservation is left alone."""
        order = await factory.order(expires_in_minutes=10)
        await ensure_reservation_active(test_db, order)
        assert order.status == "reserved"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_reserved_orders_ignore_expiry(self, test_db: Any, factory: Any) -> None:
        """Test orders past reservation are never expired."""
        order = await factory.order(status="processing", expires_in_minutes=-60)
        await ensure_reservation_active(test_db, order)
        assert order.status == "processing"


class TestOrderService:
    """Test suite for OrderService."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upload_tracking(self, test_db: Any, factory: Any) -> None:
        """Test the seller ships a paid order."""
        order = await factory.order(status="paid")

        result = await OrderService().upload_tracking(
            test_db, order.id, "seller-1", " 1Z999 ", carrier="UPS"
        )

        assert result["status"] == "shipped"
        assert result["tracking_number"] == "1Z999"
        audit = (await test_db.execute(select(AuditLog))).scalar_one()
        assert audit.action == "ORDER_SHIPPED"
        assert audit.actor_role == "seller"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upload_tracking_requires_paid(self, test_db: Any, factory: Any) -> None:
        """Test an unpaid order cannot ship."""
        order = await factory.order(status="processing")

        with pytest.raises(ValidationError, match="Cannot ship order with status: processing"):
            await OrderService().upload_tracking(test_db, order.id, "seller-1", "1Z999")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upload_tracking_seller_only(self, test_db: Any, factory: Any) -> None:
        """Test only the seller may ship."""
        order = await factory.order(status="paid")

        with pytest.raises(AuthorizationError):
            await OrderService().upload_tracking(test_db, order.id, "buyer-1", "1Z999")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_delivery(self, test_db: Any, factory: Any) -> None:
        """Test the buyer completes a shipped order."""
        order = await factory.order(status="shipped")

        result = await OrderService().confirm_delivery(test_db, order.id, "buyer-1")

        assert result["status"] == "completed"
        assert result["delivered_at"] is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_reserved_order_releases_listing(self, test_db: Any, factory: Any) -> None:
        """Test cancelling a reservation puts the listing back on sale."""
        listing = await factory.listing()
        order = await factory.order(listing=listing)

        result = await OrderService().cancel_order(test_db, order.id, "buyer-1")

        assert result["status"] == "cancelled"
        await test_db.refresh(listing)
        assert listing.reserved_until is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_paid_order_refused(self, test_db: Any, factory: Any) -> None:
        """Test orders with money in flight go through refunds instead."""
        order = await factory.order(status="paid")

        with pytest.raises(ValidationError, match="Cannot cancel"):
            await OrderService().cancel_order(test_db, order.id, "buyer-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_order_access(self, test_db: Any, factory: Any) -> None:
        """Test only buyer and seller may read an order."""
        order = await factory.order()
        service = OrderService()

        assert (await service.get_order(test_db, order.id, "buyer-1"))["order_id"] == str(order.id)
        assert (await service.get_order(test_db, order.id, "seller-1"))["status"] == "reserved"
        with pytest.raises(AuthorizationError):
            await service.get_order(test_db, order.id, "stranger")
        with pytest.raises(ValidationError):
            await service.get_order(test_db, "bogus", "buyer-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_missing_order(self, test_db: Any) -> None:
        """Test an unknown order is NOT_FOUND."""
        with pytest.raises(NotFoundError):
            await OrderService().get_order(
                test_db, "00000000-0000-0000-0000-000000000000", "buyer-1"
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_orders_by_role_and_status(self, test_db: Any, factory: Any) -> None:
        """Test buyer and seller listings filter by owner and status."""
        await factory.order(status="paid")
        await factory.order(status="cancelled")
        await factory.order(buyer_id="buyer-2", status="paid")
        service = OrderService()

        assert len(await service.list_buyer_orders(test_db, "buyer-1")) == 2
        paid = await service.list_buyer_orders(test_db, "buyer-1", status="paid")
        assert [o["status"] for o in paid] == ["paid"]
        assert len(await service.list_seller_orders(test_db, "seller-1")) == 3
