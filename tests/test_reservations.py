"""
Tests for listing reservation.
"""
import uuid
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import func, select

from core.errors import AuthorizationError, NotFoundError, ValidationError
from core.reservations import ReservationManager
from database.models import Listing, Order, OutboxEvent
from database.types import as_utc, utcnow
from integrations.listings import ListingStore


class TestReservationManager:
    """Test suite for ReservationManager."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_success(self, test_db: Any, factory: Any) -> None:
        """Test a buyer reserves an available listing."""
        listing = await factory.listing(price=99000)
        manager = ReservationManager()

        result = await manager.reserve(test_db, str(listing.id), "buyer-1")

        assert result["status"] == "reserved"
        assert result["amount"] == 99000
        assert result["fraud_session_id"].startswith("fs_")
        assert result["listing"]["title"] == "Omega Speedmaster"
        assert result["listing"]["image"] == "https://img.example/1.jpg"

        await test_db.refresh(listing)
        assert listing.reserved_by_user_id == "buyer-1"
        assert str(listing.reserved_by_order_id) == result["order_id"]
        expires = as_utc(listing.reserved_until)
        assert timedelta(minutes=119) < expires - utcnow() <= timedelta(minutes=120)

        events = (await test_db.execute(select(OutboxEvent.event_type))).scalars().all()
        assert sorted(events) == ["listing_reserved", "listing_reserved"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_own_listing_forbidden(self, test_db: Any, factory: Any) -> None:
        """Test sellers cannot buy their own listing."""
        listing = await factory.listing(seller_id="seller-1")

        with pytest.raises(AuthorizationError, match="own listing"):
            await ReservationManager().reserve(test_db, listing.id, "seller-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_missing_listing(self, test_db: Any) -> None:
        """Test an unknown listing is NOT_FOUND."""
        with pytest.raises(NotFoundError):
            await ReservationManager().reserve(test_db, uuid.uuid4(), "buyer-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_invalid_listing_id(self, test_db: Any) -> None:
        """Test a malformed listing id is a validation error."""
        with pytest.raises(ValidationError, match="Invalid listing ID"):
            await ReservationManager().reserve(test_db, "not-a-uuid", "buyer-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_sold_listing(self, test_db: Any, factory: Any) -> None:
        """Test a sold listing cannot be reserved."""
        listing = await factory.listing(status="sold")

        with pytest.raises(ValidationError, match="not available"):
            await ReservationManager().reserve(test_db, listing.id, "buyer-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_already_reserved_reports_minutes(self, test_db: Any, factory: Any) -> None:
        """Test a live reservation blocks other buyers with the minutes left."""
        listing = await factory.listing()
        await factory.order(listing=listing, buyer_id="buyer-1", expires_in_minutes=30)

        with pytest.raises(ValidationError) as exc_info:
            await ReservationManager().reserve(test_db, listing.id, "buyer-2")

        assert "already reserved" in exc_info.value.message
        assert exc_info.value.details["minutes_left"] in (30, 31)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lapsed_reservation_can_be_reclaimed(self, test_db: Any, factory: Any) -> None:
        """Test an expired marker does not block a new buyer."""
        listing = await factory.listing()
        await factory.order(listing=listing, buyer_id="buyer-1", expires_in_minutes=-5)

        result = await ReservationManager().reserve(test_db, listing.id, "buyer-2")

        assert result["buyer_id"] == "buyer-2"
        await test_db.refresh(listing)
        assert listing.reserved_by_user_id == "buyer-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_rejected_while_payment_held(self, test_db: Any, factory: Any) -> None:
        """Test a listing pinned by an in-flight payment turns away other buyers."""
        listing = await factory.listing()
        order = await factory.order(listing=listing, buyer_id="buyer-1")
        await ListingStore().hold_for_payment(test_db, listing.id, order.id)
        await test_db.commit()
        await test_db.refresh(listing)

        with pytest.raises(ValidationError, match="payment in progress"):
            await ReservationManager().reserve(test_db, listing.id, "buyer-2")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lost_claim_deletes_order(self, test_db: Any, factory: Any, mocker: Any) -> None:
        """Test a buyer who loses the conditional claim leaves no order behind."""
        listing = await factory.listing()
        store = ListingStore()
        mocker.patch.object(store, "conditional_reserve", return_value=False)

        with pytest.raises(ValidationError, match="may have just been reserved"):
            await ReservationManager(listing_store=store).reserve(test_db, listing.id, "buyer-2")

        count = await test_db.scalar(select(func.count()).select_from(Order))
        assert count == 0


class TestListingStore:
    """Conditional writes to the reservation marker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_claim_loses(self, test_db: Any, factory: Any) -> None:
        """Test only one of two claims on the same listing succeeds."""
        listing = await factory.listing()
        store = ListingStore()
        until = utcnow() + timedelta(minutes=120)

        first = await store.conditional_reserve(test_db, listing.id, "buyer-1", uuid.uuid4(), until)
        second = await store.conditional_reserve(test_db, listing.id, "buyer-2", uuid.uuid4(), until)

        assert first is True
        assert second is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_only_for_owning_order(self, test_db: Any, factory: Any) -> None:
        """Test a stale order cannot release a marker another order holds."""
        listing = await factory.listing()
        order = await factory.order(listing=listing)
        store = ListingStore()

        assert await store.release(test_db, listing.id, uuid.uuid4()) is False
        assert await store.release(test_db, listing.id, order.id) is True

        row = await test_db.get(Listing, listing.id)
        await test_db.refresh(row)
        assert row.reserved_until is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mark_sold_skips_listing_held_by_other_order(
        self, test_db: Any, factory: Any
    ) -> None:
        """Test a late settlement does not sell a listing someone else reserved."""
        listing = await factory.listing()
        await factory.order(listing=listing, buyer_id="buyer-2")
        store = ListingStore()

        assert await store.mark_sold(test_db, listing.id, uuid.uuid4()) is False
        await test_db.refresh(listing)
        assert listing.status == "active"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_hold_outlives_reservation_window(
        self, test_db: Any, factory: Any
    ) -> None:
        """Test a held listing cannot be claimed after its window lapses until released."""
        listing = await factory.listing()
        order = await factory.order(listing=listing, expires_in_minutes=-5)
        store = ListingStore()
        until = utcnow() + timedelta(minutes=120)

        assert await store.hold_for_payment(test_db, listing.id, order.id) is True
        assert (
            await store.conditional_reserve(test_db, listing.id, "buyer-2", uuid.uuid4(), until)
            is False
        )

        assert await store.release(test_db, listing.id, order.id) is True
        assert (
            await store.conditional_reserve(test_db, listing.id, "buyer-2", uuid.uuid4(), until)
            is True
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hold_requires_owning_order(self, test_db: Any, factory: Any) -> None:
        """Test an order that lost the marker cannot pin it."""
        listing = await factory.listing()
        await factory.order(listing=listing, buyer_id="buyer-2")

        assert await ListingStore().hold_for_payment(test_db, listing.id, uuid.uuid4()) is False
