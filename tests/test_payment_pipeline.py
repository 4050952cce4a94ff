"""
Tests for the payment pipeline.
"""
import uuid
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import select

from core.errors import PaymentError, ValidationError
from core.payment_pipeline import (
    PaymentPipeline,
    SavedInstrumentSource,
    TokenSource,
    payment_method_for,
    resolve_payment_source,
)
from core.reservations import ReservationManager
from database.models import Listing, OutboxEvent
from database.types import utcnow
from integrations.finix_client import (
    Authorization,
    CaptureResult,
    FinixError,
    FinixErrorType,
    PaymentInstrument,
    Transfer,
)
from integrations.listings import ListingStore

CARD = PaymentInstrument(
    id="PIcard",
    instrument_type="PAYMENT_CARD",
    address_verification="POSTAL_CODE_AND_STREET_MATCH",
    security_code_verification="MATCHED",
)
BANK = PaymentInstrument(
    id="PIbank",
    instrument_type="BANK_ACCOUNT",
    bank_account_validation_check="VALID",
)


@pytest.fixture
def card_finix(finix: Any) -> Any:
    """Finix double that accepts a card payment."""
    finix.create_payment_instrument.return_value = CARD
    finix.get_payment_instrument.return_value = CARD
    finix.authorize_payment.return_value = Authorization(id="AU1", state="SUCCEEDED", amount=125000)
    finix.capture_payment.return_value = CaptureResult(
        authorization_id="AU1", transfer_id="TR1", state="PENDING", amount=125000
    )
    return finix


async def payable_order(factory: Any, **kwargs: Any) -> Any:
    await factory.merchant()
    return await factory.order(finix_buyer_identity_id="IDbuyer", **kwargs)


class TestPaymentSource:
    """Request field validation."""

    @pytest.mark.unit
    def test_exactly_one_source(self) -> None:
        """Test token and instrument id are mutually exclusive and one is required."""
        with pytest.raises(ValidationError, match="not both"):
            resolve_payment_source("TK1", "PI1")
        with pytest.raises(ValidationError, match="is required"):
            resolve_payment_source(None, "  ")

    @pytest.mark.unit
    def test_token_source_drops_empty_address_fields(self) -> None:
        """Test only populated address overrides are kept."""
        source = resolve_payment_source("TK1", address={"postal_code": "94105", "line1": None})
        assert source == TokenSource(token="TK1", address={"postal_code": "94105"})

    @pytest.mark.unit
    def test_payment_method(self) -> None:
        """Test bank accounts are bank, fresh tokens token, saved cards card."""
        assert payment_method_for(TokenSource(token="TK1"), BANK) == "bank"
        assert payment_method_for(TokenSource(token="TK1"), CARD) == "token"
        assert payment_method_for(SavedInstrumentSource("PIcard"), CARD) == "card"


class TestPaymentPipeline:
    """Test suite for PaymentPipeline."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_payment_ends_in_processing(
        self, test_db: Any, factory: Any, card_finix: Any
    ) -> None:
        """Test a card is authorized and captured but the order is not paid yet."""
        order = await payable_order(factory)
        pipeline = PaymentPipeline(finix_client=card_finix)

        result = await pipeline.process_payment(
            test_db, order.id, "buyer-1", "pay-1", TokenSource(token="TKabc")
        )

        assert result["status"] == "processing"
        assert result["finix_authorization_id"] == "AU1"
        assert result["finix_transfer_id"] == "TR1"
        assert result["payment_method"] == "token"
        assert result["transfer_state"] == "PENDING"

        assert card_finix.create_payment_instrument.call_args.kwargs["idempotency_key"] == "pay-1-pi"
        authorize = card_finix.authorize_payment.call_args.kwargs
        assert authorize["idempotency_key"] == "pay-1"
        assert authorize["merchant_id"] == "MUseller0001"
        assert authorize["fraud_session_id"] == order.fraud_session_id
        assert card_finix.capture_payment.call_args.kwargs["idempotency_key"] == "pay-1-capture"

        await test_db.refresh(order)
        assert order.status == "processing"
        assert order.paid_at is None
        assert order.metadata_["payment_idempotency_id"] == "pay-1"

        notified = (await test_db.execute(select(OutboxEvent.event_type))).scalars().all()
        assert "order_paid" in notified

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processing_order_keeps_listing_after_window(
        self, test_db: Any, factory: Any, card_finix: Any
    ) -> None:
        """Test a listing whose payment is in flight stays off the market past the hold window."""
        order = await payable_order(factory)
        await PaymentPipeline(finix_client=card_finix).process_payment(
            test_db, order.id, "buyer-1", "pay-hold", TokenSource(token="TKabc")
        )

        listing = await test_db.get(Listing, order.listing_id)
        await test_db.refresh(listing)
        assert listing.reserved_until is None
        assert listing.reserved_by_order_id == order.id

        with pytest.raises(ValidationError):
            await ReservationManager().reserve(test_db, order.listing_id, "buyer-2")
        later = utcnow() + timedelta(hours=6)
        claimed = await ListingStore().conditional_reserve(
            test_db, order.listing_id, "buyer-2", uuid.uuid4(), later, now=later
        )
        assert claimed is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bank_payment_uses_direct_transfer(
        self, test_db: Any, factory: Any, finix: Any
    ) -> None:
        """Test a bank account is debited with one transfer and no authorization."""
        order = await payable_order(factory)
        finix.create_payment_instrument.return_value = BANK
        finix.get_payment_instrument.return_value = BANK
        finix.create_transfer.return_value = Transfer(id="TRach", state="PENDING", amount=125000)

        result = await PaymentPipeline(finix_client=finix).process_payment(
            test_db, order.id, "buyer-1", "pay-bank", TokenSource(token="TKbank")
        )

        assert result["status"] == "processing"
        assert result["payment_method"] == "bank"
        assert result["finix_transfer_id"] == "TRach"
        assert finix.create_transfer.call_args.kwargs["idempotency_key"] == "pay-bank"
        finix.authorize_payment.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_saved_card(self, test_db: Any, factory: Any, card_finix: Any) -> None:
        """Test a saved instrument skips instrument creation."""
        order = await payable_order(factory)

        result = await PaymentPipeline(finix_client=card_finix).process_payment(
            test_db, order.id, "buyer-1", "pay-saved", SavedInstrumentSource("PIcard")
        )

        assert result["payment_method"] == "card"
        card_finix.create_payment_instrument.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_avs_mismatch_blocks_authorization(
        self, test_db: Any, factory: Any, finix: Any
    ) -> None:
        """Test an AVS failure stops the payment before any money moves."""
        order = await payable_order(factory)
        finix.create_payment_instrument.return_value = CARD
        finix.get_payment_instrument.return_value = PaymentInstrument(
            id="PIcard", instrument_type="PAYMENT_CARD", address_verification="NO_MATCH"
        )

        with pytest.raises(PaymentError) as exc_info:
            await PaymentPipeline(finix_client=finix).process_payment(
                test_db, order.id, "buyer-1", "pay-avs", TokenSource(token="TK1")
            )

        assert exc_info.value.failure_code == "AVS_MISMATCH"
        finix.authorize_payment.assert_not_awaited()
        await test_db.refresh(order)
        assert order.status == "reserved"
        assert order.metadata_["last_payment_failure"]["step"] == "verification"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_bank_account(self, test_db: Any, factory: Any, finix: Any) -> None:
        """Test a failed bank validation check is refused."""
        order = await payable_order(factory)
        invalid = PaymentInstrument(
            id="PIbank", instrument_type="BANK_ACCOUNT", bank_account_validation_check="INVALID"
        )
        finix.create_payment_instrument.return_value = invalid
        finix.get_payment_instrument.return_value = invalid

        with pytest.raises(PaymentError) as exc_info:
            await PaymentPipeline(finix_client=finix).process_payment(
                test_db, order.id, "buyer-1", "pay-inv", TokenSource(token="TK1")
            )
        assert exc_info.value.failure_code == "INVALID_BANK_ACCOUNT_VALIDATION_CHECK"
        finix.create_transfer.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline_is_recorded(self, test_db: Any, factory: Any, card_finix: Any) -> None:
        """Test a declined authorization maps its failure code and is persisted."""
        order = await payable_order(factory)
        card_finix.authorize_payment.side_effect = FinixError(
            "Payment declined: Insufficient funds",
            FinixErrorType.PERMANENT,
            response_data={
                "_embedded": {
                    "authorizations": [
                        {
                            "id": "AUdecl",
                            "failure_code": "INSUFFICIENT_FUNDS",
                            "failure_message": "Insufficient funds",
                        }
                    ]
                }
            },
            failure_code="INSUFFICIENT_FUNDS",
            resource_id="AUdecl",
        )

        with pytest.raises(PaymentError) as exc_info:
            await PaymentPipeline(finix_client=card_finix).process_payment(
                test_db, order.id, "buyer-1", "pay-decl", TokenSource(token="TK1")
            )

        error = exc_info.value
        assert error.failure_code == "INSUFFICIENT_FUNDS"
        assert error.authorization_id == "AUdecl"
        await test_db.refresh(order)
        assert order.status == "reserved"
        failure = order.metadata_["last_payment_failure"]
        assert failure["failure_code"] == "INSUFFICIENT_FUNDS"
        assert failure["step"] == "authorization"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_capture_transfer(self, test_db: Any, factory: Any, card_finix: Any) -> None:
        """Test a capture whose transfer is already FAILED is reported as TRANSFER_FAILED."""
        order = await payable_order(factory)
        card_finix.capture_payment.return_value = CaptureResult(
            authorization_id="AU1", transfer_id="TRbad", state="FAILED", amount=125000
        )

        with pytest.raises(PaymentError) as exc_info:
            await PaymentPipeline(finix_client=card_finix).process_payment(
                test_db, order.id, "buyer-1", "pay-cap", TokenSource(token="TK1")
            )
        assert exc_info.value.failure_code == "TRANSFER_FAILED"
        assert exc_info.value.transfer_id == "TRbad"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_capture_keeps_authorization_id(
        self, test_db: Any, factory: Any, card_finix: Any
    ) -> None:
        """Test a capture refused with an error body still reports the authorization to void."""
        order = await payable_order(factory)
        card_finix.capture_payment.side_effect = FinixError(
            "Finix capture_payment failed with HTTP 422",
            FinixErrorType.PERMANENT,
            status_code=422,
            response_data={
                "_embedded": {
                    "errors": [{"code": "UNPROCESSABLE_ENTITY", "message": "Capture rejected"}]
                }
            },
        )

        with pytest.raises(PaymentError) as exc_info:
            await PaymentPipeline(finix_client=card_finix).process_payment(
                test_db, order.id, "buyer-1", "pay-cap422", TokenSource(token="TK1")
            )

        assert exc_info.value.authorization_id == "AU1"
        await test_db.refresh(order)
        failure = order.metadata_["last_payment_failure"]
        assert failure["authorization_id"] == "AU1"
        assert failure["step"] == "authorization"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_with_same_key_returns_previous_result(
        self, test_db: Any, factory: Any, card_finix: Any
    ) -> None:
        """Test a client retry does not charge twice; a new key is refused."""
        order = await payable_order(factory)
        pipeline = PaymentPipeline(finix_client=card_finix)
        first = await pipeline.process_payment(
            test_db, order.id, "buyer-1", "pay-r", TokenSource(token="TK1")
        )

        again = await pipeline.process_payment(
            test_db, order.id, "buyer-1", "pay-r", TokenSource(token="TK1")
        )
        assert again["finix_transfer_id"] == first["finix_transfer_id"]
        assert card_finix.authorize_payment.await_count == 1

        with pytest.raises(ValidationError, match="already in progress"):
            await pipeline.process_payment(
                test_db, order.id, "buyer-1", "pay-other", TokenSource(token="TK1")
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_order_rejected(self, test_db: Any, factory: Any, finix: Any) -> None:
        """Test an already paid order cannot be paid again."""
        order = await factory.order(status="paid")
        with pytest.raises(ValidationError, match="already been paid"):
            await PaymentPipeline(finix_client=finix).process_payment(
                test_db, order.id, "buyer-1", "pay-x", TokenSource(token="TK1")
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_seller_without_merchant(self, test_db: Any, factory: Any, finix: Any) -> None:
        """Test the seller must have an approved merchant account."""
        await factory.merchant(onboarding_state="PROVISIONING")
        order = await factory.order(finix_buyer_identity_id="IDbuyer")
        with pytest.raises(ValidationError, match="merchant account"):
            await PaymentPipeline(finix_client=finix).process_payment(
                test_db, order.id, "buyer-1", "pay-x", TokenSource(token="TK1")
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requires_identity(self, test_db: Any, factory: Any, finix: Any) -> None:
        """Test tokenization must run before payment."""
        await factory.merchant()
        order = await factory.order()
        with pytest.raises(ValidationError, match="Buyer identity not found"):
            await PaymentPipeline(finix_client=finix).process_payment(
                test_db, order.id, "buyer-1", "pay-x", TokenSource(token="TK1")
            )
