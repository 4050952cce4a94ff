"""
Reservation manager.

A buyer claims a listing for a bounded window before paying. There is no lock
manager: the claim is one conditional UPDATE on the listing's reservation
marker, and a buyer who loses that race has their just-created order removed.
"""
import math
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.errors import AuthorizationError, NotFoundError, ValidationError
from core.idempotency import new_fraud_session_id
from core.orders import serialize_order
from database.models import Listing, Order
from database.types import as_utc, utcnow
from integrations.collaborators import ChatService, NotificationService, chat_channel_id
from integrations.listings import ListingStore
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def build_listing_snapshot(listing: Listing) -> Dict[str, Any]:
    """Freeze the commercial details of a listing at reservation time."""
    images = list(listing.images or [])
    return {
        "brand": listing.brand,
        "model": listing.model,
        "reference": listing.reference,
        "condition": listing.condition,
        "price": listing.price,
        "images": images,
        "thumbnail": listing.thumbnail or (images[0] if images else None),
    }


class ReservationManager:
    """Creates orders by atomically claiming listings."""

    def __init__(
        self,
        listing_store: Optional[ListingStore] = None,
        notifications: Optional[NotificationService] = None,
        chat: Optional[ChatService] = None,
    ):
        """
        Initialize reservation manager.

        Args:
            listing_store: Optional listing collaborator
            notifications: Optional notification collaborator
            chat: Optional chat collaborator
        """
        self.settings = get_settings()
        self.listing_store = listing_store or ListingStore()
        self.notifications = notifications or NotificationService()
        self.chat = chat or ChatService()

    async def reserve(
        self, db: AsyncSession, listing_id: uuid.UUID | str, buyer_id: str
    ) -> Dict[str, Any]:
        """
        Reserve a listing for a buyer.

        Flow:
        1. Validate the listing exists, is for sale and is not the buyer's own
        2. Reject if a live reservation is already present
        3. Create the order in ``reserved``
        4. Claim the listing with one conditional UPDATE
        5. On a lost claim, delete the order and reject

        Args:
            db: Database session
            listing_id: Listing to reserve
            buyer_id: Reserving buyer

        Returns:
            Dict[str, Any]: Reservation response

        Raises:
            ValidationError: Listing unavailable or already reserved
            AuthorizationError: Buyer owns the listing
            NotFoundError: Listing does not exist
        """
        if not listing_id:
            raise ValidationError("listing_id is required")
        try:
            listing_key = (
                listing_id if isinstance(listing_id, uuid.UUID) else uuid.UUID(str(listing_id))
            )
        except ValueError:
            raise ValidationError("Invalid listing ID format")

        logger.info("reservation_started", listing_id=str(listing_key), buyer_id=buyer_id)

        listing = await self.listing_store.get(db, listing_key)
        if listing is None:
            metrics.record_reservation("not_found")
            raise NotFoundError("Listing not found", {"listing_id": str(listing_key)})

        if listing.seller_id == buyer_id:
            metrics.record_reservation("own_listing")
            logger.warning("reservation_own_listing", listing_id=str(listing_key), buyer_id=buyer_id)
            raise AuthorizationError(
                "You cannot purchase your own listing", {"listing_id": str(listing_key)}
            )

        if listing.status != "active":
            metrics.record_reservation("unavailable")
            raise ValidationError(
                "Listing is not available for purchase",
                {"listing_id": str(listing_key), "status": listing.status},
            )

        if listing.reserved_by_order_id is not None and listing.reserved_until is None:
            metrics.record_reservation("already_reserved")
            logger.warning(
                "reservation_rejected_payment_in_progress",
                listing_id=str(listing_key),
                buyer_id=buyer_id,
            )
            raise ValidationError(
                "Listing has a payment in progress for another buyer",
                {"listing_id": str(listing_key)},
            )

        now = utcnow()
        reserved_until = as_utc(listing.reserved_until)
        if reserved_until is not None and reserved_until > now:
            minutes_left = math.ceil((reserved_until - now).total_seconds() / 60)
            metrics.record_reservation("already_reserved")
            logger.warning(
                "reservation_rejected_already_reserved",
                listing_id=str(listing_key),
                buyer_id=buyer_id,
                minutes_left=minutes_left,
            )
            raise ValidationError(
                "Listing is already reserved for another buyer. "
                f"Please try again in {minutes_left} minutes.",
                {"listing_id": str(listing_key), "minutes_left": minutes_left},
            )

        expires_at = now + timedelta(minutes=self.settings.reservation_hold_minutes)
        order = Order(
            id=uuid.uuid4(),
            listing_id=listing.id,
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            listing_snapshot=build_listing_snapshot(listing),
            amount=listing.price,
            currency=listing.currency or "USD",
            status="reserved",
            reserved_at=now,
            reservation_expires_at=expires_at,
            fraud_session_id=new_fraud_session_id(),
            metadata_={},
        )
        db.add(order)
        await db.flush()

        claimed = await self.listing_store.conditional_reserve(
            db, listing.id, buyer_id, order.id, expires_at, now=now
        )
        if not claimed:
            await db.delete(order)
            await db.commit()
            metrics.record_reservation("lost_race")
            logger.warning(
                "reservation_lost_race",
                listing_id=str(listing_key),
                buyer_id=buyer_id,
                order_id=str(order.id),
            )
            raise ValidationError(
                "Failed to reserve listing; it may have just been reserved by another "
                "buyer. Please try again.",
                {"listing_id": str(listing_key)},
            )

        self.chat.post_system_message(
            db,
            chat_channel_id(listing.id, buyer_id),
            {"type": "listing_reserved", "order_id": str(order.id)},
            buyer_id,
        )
        self.notifications.notify(
            db,
            listing.seller_id,
            "listing_reserved",
            title="Listing Reserved",
            body=f"Your {listing.brand} {listing.model} has been reserved by a buyer.",
            data={"listing_id": str(listing.id), "order_id": str(order.id)},
            action_url=f"/orders/{order.id}",
        )
        await db.commit()

        metrics.record_reservation("success")
        logger.info(
            "order_reserved",
            order_id=str(order.id),
            listing_id=str(listing.id),
            buyer_id=buyer_id,
            reservation_expires_at=expires_at.isoformat(),
        )

        response = serialize_order(order)
        response["listing"] = {
            "title": f"{listing.brand} {listing.model}".strip(),
            "image": order.listing_snapshot.get("thumbnail"),
            "price": listing.price,
            "condition": listing.condition,
        }
        return response
