"""
Payment pipeline: identity -> instrument -> verification -> money movement.

Orchestrates one payment attempt for a reserved order:
1. Validate input, buyer and reservation
2. Resolve the seller's approved merchant account
3. Create (from a token) or fetch (saved) the payment instrument
4. Hard-fail on AVS / CVV / bank-account validation failures
5. Card: authorize then capture. Bank account: one direct transfer
6. Move the order to ``processing`` and record the processor ids

The order never becomes ``paid`` here. Finix reports settled money through
``transfer.updated``, which the webhook worker applies.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFoundError, PaymentError, ValidationError
from core.failure_codes import (
    AVS_MISMATCH,
    CVV_MISMATCH,
    INVALID_BANK_ACCOUNT_VALIDATION_CHECK,
    PROCESSING_ERROR,
    TRANSFER_CANCELED,
    TRANSFER_FAILED,
    payment_error_from_finix,
)
from core.idempotency import IdempotencyManager
from core.orders import (
    ensure_reservation_active,
    load_order,
    merge_metadata,
    require_buyer,
    transition_order,
    update_order_fields,
)
from database.models import MerchantOnboarding, Order
from database.types import utcnow
from integrations.collaborators import ChatService, NotificationService, chat_channel_id
from integrations.finix_client import FinixClient, FinixError, PaymentInstrument
from integrations.listings import ListingStore
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALREADY_PAID_STATUSES = ("paid", "shipped", "completed")
IN_FLIGHT_STATUSES = ("processing", "pending")


@dataclass(frozen=True)
class TokenSource:
    """A single-use Finix.js token, optionally with billing address overrides."""

    token: str
    address: Dict[str, Optional[str]] = field(default_factory=dict)

    source_type = "token"


@dataclass(frozen=True)
class SavedInstrumentSource:
    """A payment instrument the buyer already owns at Finix."""

    payment_instrument_id: str

    source_type = "saved_instrument"


PaymentSource = Union[TokenSource, SavedInstrumentSource]


def resolve_payment_source(
    payment_token: Optional[str] = None,
    payment_instrument_id: Optional[str] = None,
    address: Optional[Dict[str, Optional[str]]] = None,
) -> PaymentSource:
    """
    Pick the payment source from request fields.

    Raises:
        ValidationError: Unless exactly one of token / instrument id is given
    """
    token = (payment_token or "").strip()
    instrument_id = (payment_instrument_id or "").strip()
    if token and instrument_id:
        raise ValidationError(
            "Provide either payment_token or payment_instrument_id, not both"
        )
    if token:
        return TokenSource(token=token, address={k: v for k, v in (address or {}).items() if v})
    if instrument_id:
        return SavedInstrumentSource(payment_instrument_id=instrument_id)
    raise ValidationError(
        "payment_token or payment_instrument_id is required for payment processing"
    )


def payment_method_for(source: PaymentSource, instrument: PaymentInstrument) -> str:
    """``bank`` for bank accounts, ``token`` for fresh tokens, ``card`` for saved cards."""
    if instrument.is_bank_account:
        return "bank"
    if isinstance(source, TokenSource):
        return "token"
    return "card"


@dataclass
class MovementResult:
    """Processor ids and state after the money-movement step."""

    transfer_id: str
    state: str
    authorization_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class PaymentPipeline:
    """Runs payments for reserved orders against Finix."""

    def __init__(
        self,
        finix_client: Optional[FinixClient] = None,
        listing_store: Optional[ListingStore] = None,
        notifications: Optional[NotificationService] = None,
        chat: Optional[ChatService] = None,
    ):
        """
        Initialize payment pipeline.

        Args:
            finix_client: Optional Finix client (created lazily)
            listing_store: Optional listing collaborator
            notifications: Optional notification collaborator
            chat: Optional chat collaborator
        """
        self._finix_client = finix_client
        self.listing_store = listing_store or ListingStore()
        self.notifications = notifications or NotificationService()
        self.chat = chat or ChatService()

        logger.info("payment_pipeline_initialized")

    @property
    def finix_client(self) -> FinixClient:
        if self._finix_client is None:
            self._finix_client = FinixClient()
        return self._finix_client

    async def _resolve_merchant_id(self, db: AsyncSession, order: Order) -> str:
        listing = await self.listing_store.get(db, order.listing_id)
        if listing is None:
            logger.error(
                "payment_listing_not_found",
                order_id=str(order.id),
                listing_id=str(order.listing_id),
            )
            raise NotFoundError("Associated listing not found")

        stmt = (
            select(MerchantOnboarding)
            .where(
                MerchantOnboarding.user_id == listing.seller_id,
                MerchantOnboarding.onboarding_state == "APPROVED",
                MerchantOnboarding.merchant_id.is_not(None),
            )
            .order_by(MerchantOnboarding.updated_at.desc())
            .limit(1)
        )
        onboarding = (await db.execute(stmt)).scalar_one_or_none()
        if onboarding is None:
            logger.error(
                "payment_seller_without_merchant",
                order_id=str(order.id),
                seller_id=listing.seller_id,
            )
            raise ValidationError(
                "Seller does not have a valid merchant account to process payments"
            )
        return onboarding.merchant_id

    async def _record_failure(
        self, db: AsyncSession, order: Order, error: PaymentError, step: str
    ) -> None:
        """Persist the failure on the order; it survives the request's rollback."""
        await merge_metadata(
            db,
            order,
            last_payment_failure={
                "step": step,
                "failure_code": error.failure_code,
                "failure_message": error.message,
                "authorization_id": error.authorization_id,
                "transfer_id": error.transfer_id,
                "at": utcnow().isoformat(),
            },
        )
        await db.commit()

    async def _obtain_instrument(
        self,
        order: Order,
        source: PaymentSource,
        key: str,
        fraud_session_id: Optional[str],
    ) -> PaymentInstrument:
        if isinstance(source, TokenSource):
            logger.info(
                "creating_payment_instrument_from_token",
                order_id=str(order.id),
                buyer_identity_id=order.finix_buyer_identity_id,
            )
            return await self.finix_client.create_payment_instrument(
                token=source.token,
                identity_id=order.finix_buyer_identity_id,
                idempotency_key=IdempotencyManager.derive(key, "pi"),
                fraud_session_id=fraud_session_id,
                address=source.address,
                tags={"order_id": str(order.id), "source_type": source.source_type},
            )

        logger.info(
            "using_saved_payment_instrument",
            order_id=str(order.id),
            payment_instrument_id=source.payment_instrument_id,
        )
        return await self.finix_client.get_payment_instrument(source.payment_instrument_id)

    async def _verify_instrument(
        self, order: Order, instrument: PaymentInstrument
    ) -> PaymentInstrument:
        """
        Fetch verification results and refuse instruments that failed them.

        Raises:
            PaymentError: AVS / CVV mismatch, invalid bank account, or lookup failure
        """
        try:
            verified = await self.finix_client.get_payment_instrument(instrument.id)
        except FinixError as e:
            logger.error(
                "payment_instrument_verification_lookup_failed",
                order_id=str(order.id),
                payment_instrument_id=instrument.id,
                error=str(e),
            )
            raise PaymentError(
                "Unable to validate payment instrument",
                failure_code=PROCESSING_ERROR,
                details={"payment_instrument_id": instrument.id, "raw_error": str(e)},
            )

        details = {
            "payment_instrument_id": verified.id,
            "avs_result": verified.address_verification,
            "cvv_result": verified.security_code_verification,
        }
        if verified.address_verification == "NO_MATCH":
            raise PaymentError(
                "Address verification failed for this card",
                failure_code=AVS_MISMATCH,
                details=details,
            )
        if verified.security_code_verification == "UNMATCHED":
            raise PaymentError(
                "Security code verification failed",
                failure_code=CVV_MISMATCH,
                details=details,
            )
        if verified.is_bank_account:
            check = verified.bank_account_validation_check
            if check == "INVALID":
                raise PaymentError(
                    "Bank account validation failed",
                    failure_code=INVALID_BANK_ACCOUNT_VALIDATION_CHECK,
                    details={**details, "bank_account_validation_check": check},
                )
            if check in ("INCONCLUSIVE", "NOT_ATTEMPTED"):
                logger.warning(
                    "bank_account_validation_inconclusive",
                    order_id=str(order.id),
                    payment_instrument_id=verified.id,
                    bank_account_validation_check=check,
                )
        return verified

    async def _move_money(
        self,
        order: Order,
        instrument: PaymentInstrument,
        merchant_id: str,
        key: str,
        fraud_session_id: Optional[str],
        tags: Dict[str, str],
    ) -> MovementResult:
        if instrument.is_bank_account:
            # ACH (USD) / EFT (CAD): Finix picks the rail from the instrument
            transfer = await self.finix_client.create_transfer(
                amount=order.amount,
                currency=order.currency,
                merchant_id=merchant_id,
                source=instrument.id,
                idempotency_key=key,
                fraud_session_id=fraud_session_id,
                tags=tags,
            )
            return MovementResult(
                transfer_id=transfer.id,
                state=transfer.state,
                failure_code=transfer.failure_code,
                failure_message=transfer.failure_message,
            )

        authorization = await self.finix_client.authorize_payment(
            amount=order.amount,
            currency=order.currency,
            merchant_id=merchant_id,
            payment_instrument_id=instrument.id,
            idempotency_key=key,
            fraud_session_id=fraud_session_id,
            tags=tags,
        )
        logger.info(
            "payment_authorized",
            order_id=str(order.id),
            authorization_id=authorization.id,
            state=authorization.state,
        )
        try:
            capture = await self.finix_client.capture_payment(
                authorization_id=authorization.id,
                idempotency_key=IdempotencyManager.derive(key, "capture"),
                capture_amount=order.amount,
            )
        except FinixError as e:
            if not e.resource_id:
                e.resource_id = authorization.id
            e.response_data = e.response_data or {
                "_embedded": {"authorizations": [{"id": authorization.id, "message": e.message}]}
            }
            raise
        return MovementResult(
            transfer_id=capture.transfer_id,
            state=capture.state,
            authorization_id=authorization.id,
        )

    async def process_payment(
        self,
        db: AsyncSession,
        order_id: uuid.UUID | str,
        buyer_id: str,
        idempotency_id: Optional[str],
        source: PaymentSource,
        fraud_session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run one payment attempt.

        Args:
            db: Database session
            order_id: Order to pay
            buyer_id: Paying user
            idempotency_id: Required; forwarded to every Finix call
            source: Token or saved instrument
            fraud_session_id: Overrides the order's fraud session id

        Returns:
            Dict[str, Any]: Payment response with status ``processing``

        Raises:
            ValidationError: Bad input or failed precondition
            AuthorizationError: Requester is not the buyer
            NotFoundError: Order or listing missing
            PaymentError: Finix declined or failed a step
        """
        key = IdempotencyManager.validate(idempotency_id)
        start = time.time()

        order = await load_order(db, order_id)
        require_buyer(order, buyer_id)
        await ensure_reservation_active(db, order, self.listing_store)

        if order.status in ALREADY_PAID_STATUSES:
            raise ValidationError("Order has already been paid", {"status": order.status})
        if order.status in IN_FLIGHT_STATUSES:
            previous = (order.metadata_ or {}).get("payment_idempotency_id")
            if previous == key:
                logger.info("payment_idempotent_return", order_id=str(order.id))
                return self._response(order)
            raise ValidationError(
                "A payment is already in progress for this order",
                {"status": order.status},
            )
        if order.status != "reserved":
            raise ValidationError(
                f"Cannot process payment for order with status: {order.status}",
                {"status": order.status},
            )

        merchant_id = await self._resolve_merchant_id(db, order)

        if not order.finix_buyer_identity_id:
            raise ValidationError(
                "Buyer identity not found. Please request tokenization config first."
            )

        if fraud_session_id and fraud_session_id != order.fraud_session_id:
            await update_order_fields(db, order, fraud_session_id=fraud_session_id)
        effective_fraud_session_id = order.fraud_session_id

        logger.info(
            "payment_processing_started",
            order_id=str(order.id),
            source_type=source.source_type,
            amount=order.amount,
            currency=order.currency,
        )

        step = "instrument"
        instrument: Optional[PaymentInstrument] = None
        try:
            instrument = await self._obtain_instrument(
                order, source, key, effective_fraud_session_id
            )
            step = "verification"
            instrument = await self._verify_instrument(order, instrument)

            step = "transfer" if instrument.is_bank_account else "authorization"
            movement = await self._move_money(
                order,
                instrument,
                merchant_id,
                key,
                effective_fraud_session_id,
                tags={
                    "order_id": str(order.id),
                    "payment_method": payment_method_for(source, instrument),
                    "source_type": source.source_type,
                },
            )
        except FinixError as e:
            error = payment_error_from_finix(
                e,
                {"payment_instrument_id": instrument.id if instrument else None},
                authorization_id=e.resource_id if step == "authorization" else None,
                transfer_id=e.resource_id if step == "transfer" else None,
            )
            await self._fail(db, order, error, step, instrument, start)
            raise error from e
        except PaymentError as error:
            await self._fail(db, order, error, step, instrument, start)
            raise

        if movement.state in ("FAILED", "CANCELED"):
            code = TRANSFER_FAILED if movement.state == "FAILED" else TRANSFER_CANCELED
            message = (
                movement.failure_message or "Transfer failed"
                if movement.state == "FAILED"
                else "Payment was canceled by the processor. Please contact support."
            )
            error = PaymentError(
                message,
                failure_code=movement.failure_code or code,
                authorization_id=movement.authorization_id,
                transfer_id=movement.transfer_id,
                details={"payment_instrument_id": instrument.id},
            )
            await self._fail(db, order, error, "capture", instrument, start)
            raise error
        if movement.state == "UNKNOWN":
            logger.warning(
                "transfer_state_unknown_awaiting_webhook",
                order_id=str(order.id),
                transfer_id=movement.transfer_id,
            )

        now = utcnow()
        payment_method = payment_method_for(source, instrument)
        correlation = {
            "finix_payment_instrument_id": instrument.id,
            "finix_transfer_id": movement.transfer_id,
            "payment_method": payment_method,
        }
        if movement.authorization_id:
            correlation["finix_authorization_id"] = movement.authorization_id
            correlation["authorized_at"] = now

        moved = await transition_order(
            db, order, "processing", values=correlation, allowed_from=("reserved",)
        )
        if not moved:
            # A webhook for this transfer already advanced the order
            await update_order_fields(db, order, **correlation)
            logger.info(
                "payment_status_already_advanced",
                order_id=str(order.id),
                status=order.status,
            )
        else:
            await self.listing_store.hold_for_payment(db, order.listing_id, order.id)

        await merge_metadata(
            db,
            order,
            transfer_state=movement.state,
            transfer_created_at=now.isoformat(),
            instrument_type=instrument.instrument_type,
            source_type=source.source_type,
            payment_idempotency_id=key,
            last_payment_failure=None,
        )

        self.chat.post_system_message(
            db,
            chat_channel_id(order.listing_id, order.buyer_id),
            {"type": "order_paid", "amount": order.amount, "order_id": str(order.id)},
            buyer_id,
        )
        snapshot = order.listing_snapshot or {}
        self.notifications.notify(
            db,
            order.seller_id,
            "order_paid",
            title="Payment Received",
            body=(
                f"Payment of {order.amount / 100:,.2f} {order.currency} received for "
                f"{snapshot.get('brand', '')} {snapshot.get('model', '')}"
            ),
            data={"order_id": str(order.id), "amount": order.amount},
            action_url=f"/orders/{order.id}",
        )
        await db.commit()

        metrics.record_payment(
            "success", instrument.instrument_type, order.amount, time.time() - start
        )
        logger.info(
            "payment_submitted_awaiting_transfer",
            order_id=str(order.id),
            authorization_id=movement.authorization_id,
            transfer_id=movement.transfer_id,
            transfer_state=movement.state,
        )
        return self._response(order)

    async def _fail(
        self,
        db: AsyncSession,
        order: Order,
        error: PaymentError,
        step: str,
        instrument: Optional[PaymentInstrument],
        start: float,
    ) -> None:
        """Record and count a payment failure; the caller raises it."""
        await self._record_failure(db, order, error, step)
        metrics.record_payment(
            "failed",
            instrument.instrument_type if instrument else "unknown",
            order.amount,
            time.time() - start,
            failure_code=error.failure_code,
        )
        logger.error(
            "payment_declined",
            order_id=str(order.id),
            step=step,
            failure_code=error.failure_code,
            authorization_id=error.authorization_id,
            transfer_id=error.transfer_id,
        )

    @staticmethod
    def _response(order: Order) -> Dict[str, Any]:
        meta = order.metadata_ or {}
        return {
            "order_id": str(order.id),
            "status": order.status,
            "finix_payment_instrument_id": order.finix_payment_instrument_id,
            "finix_authorization_id": order.finix_authorization_id,
            "finix_transfer_id": order.finix_transfer_id,
            "transfer_state": meta.get("transfer_state"),
            "payment_method": order.payment_method,
            "amount": order.amount,
            "currency": order.currency,
            "message": "Payment submitted. Awaiting confirmation from the processor.",
        }
