"""
Listing collaborator: reads listings and owns every write to the reservation marker.

The marker (``reserved_until``, ``reserved_by_user_id``, ``reserved_by_order_id``)
is the one piece of state competing buyers share, so every write here is a
single conditional UPDATE keyed on the marker's current value.
"""
import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Listing
from database.types import utcnow

logger = structlog.get_logger(__name__)


class ListingStore:
    """Conditional-write access to the listings table."""

    async def get(self, db: AsyncSession, listing_id: uuid.UUID) -> Optional[Listing]:
        """Fetch a listing by id."""
        result = await db.execute(select(Listing).where(Listing.id == listing_id))
        return result.scalar_one_or_none()

    async def conditional_reserve(
        self,
        db: AsyncSession,
        listing_id: uuid.UUID,
        buyer_id: str,
        order_id: uuid.UUID,
        reserved_until: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Claim the listing for an order in one atomic conditional UPDATE.

        The predicate (listing active, marker absent or lapsed, no payment
        hold) and the effect (stamp the marker) are evaluated by the database
        as one statement, so two concurrent claims can never both succeed.

        Args:
            db: Database session
            listing_id: Listing to claim
            buyer_id: Reserving buyer
            order_id: Order that will hold the reservation
            reserved_until: End of the reservation window
            now: Current time (injectable for tests)

        Returns:
            bool: True if this call won the claim
        """
        now = now or utcnow()
        stmt = (
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.status == "active",
                or_(
                    and_(
                        Listing.reserved_until.is_(None),
                        Listing.reserved_by_order_id.is_(None),
                    ),
                    Listing.reserved_until <= now,
                ),
            )
            .values(
                reserved_until=reserved_until,
                reserved_by_user_id=buyer_id,
                reserved_by_order_id=order_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        claimed = result.rowcount == 1

        logger.info(
            "listing_conditional_reserve",
            listing_id=str(listing_id),
            order_id=str(order_id),
            claimed=claimed,
        )
        return claimed

    async def hold_for_payment(
        self, db: AsyncSession, listing_id: uuid.UUID, order_id: uuid.UUID
    ) -> bool:
        """
        Pin the marker for ``order_id`` once its money is moving.

        Clearing ``reserved_until`` while keeping ``reserved_by_order_id``
        turns the timed reservation into an open-ended hold: the window no
        longer lapses, so no other buyer can claim the listing until the
        transfer settles (``mark_sold``) or fails (``release``).

        Returns:
            bool: True if the marker still belonged to ``order_id``
        """
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id, Listing.reserved_by_order_id == order_id)
            .values(reserved_until=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        held = result.rowcount == 1
        log = logger.info if held else logger.warning
        log(
            "listing_held_for_payment",
            listing_id=str(listing_id),
            order_id=str(order_id),
            held=held,
        )
        return held

    async def release(
        self, db: AsyncSession, listing_id: uuid.UUID, order_id: uuid.UUID
    ) -> bool:
        """
        Clear the reservation marker, but only while it still points at ``order_id``.

        A lapsed reservation may already have been re-claimed by another buyer;
        releasing unconditionally would hand their listing back to the market.

        Returns:
            bool: True if the marker was cleared
        """
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id, Listing.reserved_by_order_id == order_id)
            .values(
                reserved_until=None,
                reserved_by_user_id=None,
                reserved_by_order_id=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        released = result.rowcount == 1
        logger.info(
            "listing_reservation_released",
            listing_id=str(listing_id),
            order_id=str(order_id),
            released=released,
        )
        return released

    async def set_active(self, db: AsyncSession, listing_id: uuid.UUID) -> bool:
        """Return a listing to sale and clear any reservation marker."""
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id)
            .values(
                status="active",
                reserved_until=None,
                reserved_by_user_id=None,
                reserved_by_order_id=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        logger.info("listing_set_active", listing_id=str(listing_id))
        return result.rowcount == 1

    async def mark_sold(
        self, db: AsyncSession, listing_id: uuid.UUID, order_id: uuid.UUID
    ) -> bool:
        """
        Mark the listing sold once money has moved for ``order_id``.

        Only applies while the listing is still reserved by that order or
        unreserved; a listing already held by a different order is left alone.
        """
        stmt = (
            update(Listing)
            .where(
                Listing.id == listing_id,
                or_(
                    Listing.reserved_by_order_id == order_id,
                    Listing.reserved_by_order_id.is_(None),
                ),
            )
            .values(
                status="sold",
                reserved_until=None,
                reserved_by_user_id=None,
                reserved_by_order_id=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        sold = result.rowcount == 1
        if not sold:
            logger.warning(
                "listing_mark_sold_skipped",
                listing_id=str(listing_id),
                order_id=str(order_id),
            )
        return sold
