"""
Tokenization step: prepares everything a client needs to tokenize a card or
bank account directly against Finix, creating the buyer identity on first use.
"""
import uuid
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.errors import ValidationError
from core.failure_codes import payment_error_from_finix
from core.idempotency import IdempotencyManager
from core.orders import (
    ensure_reservation_active,
    load_order,
    merge_metadata,
    require_buyer,
    update_order_fields,
)
from integrations.collaborators import UserDirectory
from integrations.finix_client import FinixClient, FinixError
from integrations.listings import ListingStore

logger = structlog.get_logger(__name__)

SUPPORTED_CURRENCIES = ("USD", "CAD")
CANADA = ("CA", "CAN", "CANADA")


@dataclass
class PrefillOverrides:
    """Buyer-supplied values that take priority over stored profile data."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    currency: Optional[str] = None
    payment_type: Optional[str] = None


def normalize_country(country: Optional[str]) -> str:
    """Finix identities accept ``USA`` or ``CAN``; anything else is treated as US."""
    if country and country.strip().upper() in CANADA:
        return "CAN"
    return "USA"


def _first(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


def merge_identity_fields(
    overrides: PrefillOverrides,
    profile: Any,
) -> Dict[str, Optional[str]]:
    """
    Resolve identity fields: request overrides, then onboarding address,
    then the stored profile address.
    """
    onboarding = (getattr(profile, "onboarding_location", None) or {}) if profile else {}
    location = (getattr(profile, "location", None) or {}) if profile else {}

    def address(key: str) -> Optional[str]:
        return _first(getattr(overrides, key), onboarding.get(key), location.get(key))

    return {
        "first_name": _first(overrides.first_name, getattr(profile, "first_name", None)),
        "last_name": _first(overrides.last_name, getattr(profile, "last_name", None)),
        "email": _first(overrides.email, getattr(profile, "email", None)),
        "phone": _first(overrides.phone, getattr(profile, "phone", None)),
        "line1": address("line1"),
        "line2": address("line2"),
        "city": address("city"),
        "region": address("region"),
        "postal_code": address("postal_code"),
        "country": normalize_country(address("country")),
    }


def resolve_currency(
    override: Optional[str], buyer_country: Optional[str], order_currency: str
) -> str:
    """Explicit USD/CAD override, else CAD for Canadian buyers, else the order's currency."""
    if override and override.strip().upper() in SUPPORTED_CURRENCIES:
        return override.strip().upper()
    if buyer_country and normalize_country(buyer_country) == "CAN":
        return "CAD"
    return order_currency


class TokenizationService:
    """Builds the tokenization configuration for an order."""

    def __init__(
        self,
        finix_client: Optional[FinixClient] = None,
        users: Optional[UserDirectory] = None,
        listing_store: Optional[ListingStore] = None,
    ):
        self.settings = get_settings()
        self._finix_client = finix_client
        self.users = users or UserDirectory()
        self.listing_store = listing_store or ListingStore()

    @property
    def finix_client(self) -> FinixClient:
        if self._finix_client is None:
            self._finix_client = FinixClient()
        return self._finix_client

    async def get_tokenization_config(
        self,
        db: AsyncSession,
        order_id: uuid.UUID | str,
        buyer_id: str,
        idempotency_id: Optional[str],
        overrides: Optional[PrefillOverrides] = None,
    ) -> Dict[str, Any]:
        """
        Return the client-side tokenization configuration.

        Args:
            db: Database session
            order_id: Order being paid
            buyer_id: Requesting user
            idempotency_id: Required; keys buyer identity creation
            overrides: Prefill values from the request body

        Returns:
            Dict[str, Any]: application id, identity id, fraud session, amount, currency

        Raises:
            ValidationError: Missing idempotency id, expired reservation, unknown user
            AuthorizationError: Requester is not the buyer
            NotFoundError: Order does not exist
            PaymentError: Identity creation failed at Finix
        """
        key = IdempotencyManager.validate(idempotency_id)
        overrides = overrides or PrefillOverrides()

        order = await load_order(db, order_id)
        require_buyer(order, buyer_id)
        await ensure_reservation_active(db, order, self.listing_store)

        if order.status != "reserved":
            raise ValidationError(
                f"Cannot start payment for order with status: {order.status}",
                {"order_id": str(order.id), "status": order.status},
            )

        if overrides.payment_type in ("card", "bank"):
            await merge_metadata(db, order, payment_type_hint=overrides.payment_type)

        profile = await self.users.get_profile(db, buyer_id)
        identity_fields = merge_identity_fields(overrides, profile)

        identity_id = order.finix_buyer_identity_id
        if not identity_id:
            if profile is None:
                logger.warning("tokenization_user_not_found", order_id=str(order.id), buyer_id=buyer_id)
                raise ValidationError("User not found", {"buyer_id": buyer_id})

            logger.info(
                "creating_finix_buyer_identity",
                order_id=str(order.id),
                has_first_name=bool(identity_fields["first_name"]),
                has_email=bool(identity_fields["email"]),
                has_postal_code=bool(identity_fields["postal_code"]),
                has_line1=bool(identity_fields["line1"]),
                country=identity_fields["country"],
            )
            try:
                identity_id = await self.finix_client.create_buyer_identity(
                    idempotency_key=IdempotencyManager.derive(key, "identity"),
                    **identity_fields,
                )
            except FinixError as e:
                raise payment_error_from_finix(e, {"order_id": str(order.id)})
            await update_order_fields(db, order, finix_buyer_identity_id=identity_id)
        else:
            logger.info(
                "reusing_finix_buyer_identity",
                order_id=str(order.id),
                finix_buyer_identity_id=identity_id,
            )

        currency = resolve_currency(
            overrides.currency, identity_fields["country"], order.currency
        )
        if currency != order.currency:
            logger.info(
                "order_currency_updated",
                order_id=str(order.id),
                old_currency=order.currency,
                new_currency=currency,
                reason="explicit_override" if overrides.currency else "buyer_location",
            )
            await update_order_fields(db, order, currency=currency)

        await db.commit()

        return {
            "order_id": str(order.id),
            "application_id": self.settings.application_id_for(currency),
            "buyer_identity_id": identity_id,
            "fraud_session_id": order.fraud_session_id,
            "amount": order.amount,
            "currency": currency,
            "require_address": True,
            "payment_types": ["PAYMENT_CARD", "BANK_ACCOUNT"],
        }


def overrides_from_dict(data: Dict[str, Any]) -> PrefillOverrides:
    """Build overrides from a request body, ignoring unknown keys."""
    names = {f.name for f in fields(PrefillOverrides)}
    return PrefillOverrides(**{k: v for k, v in data.items() if k in names})
