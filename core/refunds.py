"""
Dual-approval refund workflow.

States: pending -> return_requested -> return_received -> executed, with
denial from any active state and buyer cancellation (a hard delete) before
the product is received. Money moves only in ``approve``, through a Finix
transfer reversal keyed by the request's own idempotency id.
"""
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core import audit
from core.audit import AuditLogger, RequestContext
from core.errors import AuthorizationError, NotFoundError, ValidationError
from core.failure_codes import payment_error_from_finix
from core.idempotency import IdempotencyManager
from core.orders import REFUNDABLE_STATUSES, load_order, merge_metadata, transition_order
from database.models import ACTIVE_REFUND_STATUSES, REFUND_STATUSES, RefundRequest
from database.types import as_utc, utcnow
from integrations.collaborators import NotificationService
from integrations.finix_client import FinixClient, FinixError
from integrations.listings import ListingStore
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MIN_REASON_LENGTH = 10


def _require_reason(reason: Optional[str], action: str) -> str:
    cleaned = (reason or "").strip()
    if len(cleaned) < MIN_REASON_LENGTH:
        raise ValidationError(
            f"A valid reason (minimum {MIN_REASON_LENGTH} characters) is required {action}"
        )
    return cleaned


def parse_refund_amount(value: Any, original_amount: int) -> int:
    """
    Resolve the requested refund in minor units.

    ``None`` means the full original amount. Integers are minor units; a
    number with a fractional part is read as major units (``12.5`` -> 1250).

    Raises:
        ValidationError: Non-numeric, < 1, or above the original amount
    """
    if value is None:
        amount = original_amount
    else:
        if isinstance(value, bool):
            raise ValidationError("Invalid refund_amount value")
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError("Invalid refund_amount value")
        if not parsed.is_finite():
            raise ValidationError("Invalid refund_amount value")
        if parsed == parsed.to_integral_value():
            amount = int(parsed)
        else:
            amount = int((parsed * 100).quantize(Decimal("1")))

    if amount < 1:
        raise ValidationError("refund_amount must be an integer >= 1 (in minor units)")
    if amount > original_amount:
        raise ValidationError(
            f"Refund amount cannot exceed original transfer amount ({original_amount})"
        )
    return amount


def serialize_refund(request: RefundRequest) -> Dict[str, Any]:
    """API representation of a refund request."""

    def iso(value: Any) -> Optional[str]:
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "refund_request_id": str(request.id),
        "order_id": str(request.order_id),
        "buyer_id": request.buyer_id,
        "seller_id": request.seller_id,
        "status": request.status,
        "requested_amount": request.requested_amount,
        "original_transfer_amount": request.original_transfer_amount,
        "currency": request.currency,
        "buyer_reason": request.buyer_reason,
        "seller_response_reason": request.seller_response_reason,
        "product_returned": request.product_returned,
        "return_tracking_number": request.return_tracking_number,
        "return_carrier": request.return_carrier,
        "product_return_confirmed": request.product_return_confirmed,
        "finix_transfer_id": request.finix_transfer_id,
        "finix_reversal_id": request.finix_reversal_id,
        "finix_reversal_state": request.finix_reversal_state,
        "approved_by": request.approved_by,
        "approved_at": iso(request.approved_at),
        "denied_by": request.denied_by,
        "denied_at": iso(request.denied_at),
        "executed_at": iso(request.executed_at),
        "created_at": iso(request.created_at),
    }


class RefundService:
    """Buyer/seller refund operations."""

    def __init__(
        self,
        finix_client: Optional[FinixClient] = None,
        listing_store: Optional[ListingStore] = None,
        notifications: Optional[NotificationService] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._finix_client = finix_client
        self.listing_store = listing_store or ListingStore()
        self.notifications = notifications or NotificationService()
        self.audit = audit_logger or AuditLogger()

    @property
    def finix_client(self) -> FinixClient:
        if self._finix_client is None:
            self._finix_client = FinixClient()
        return self._finix_client

    async def _load(self, db: AsyncSession, refund_request_id: uuid.UUID | str) -> RefundRequest:
        try:
            key = (
                refund_request_id
                if isinstance(refund_request_id, uuid.UUID)
                else uuid.UUID(str(refund_request_id))
            )
        except ValueError:
            raise ValidationError("Invalid refund request ID format")
        result = await db.execute(select(RefundRequest).where(RefundRequest.id == key))
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("Refund request not found")
        return request

    async def _advance(
        self,
        db: AsyncSession,
        request: RefundRequest,
        from_statuses: tuple,
        values: Dict[str, Any],
    ) -> bool:
        """Conditional status write on a refund request."""
        stmt = (
            update(RefundRequest)
            .where(RefundRequest.id == request.id, RefundRequest.status.in_(from_statuses))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.refresh(request)
        return result.rowcount == 1

    async def request_refund(
        self,
        db: AsyncSession,
        order_id: uuid.UUID | str,
        buyer_id: str,
        reason: Optional[str],
        refund_amount: Any = None,
        idempotency_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """
        Open a refund request against a settled order.

        Raises:
            ValidationError: Short reason, active request exists, transfer not
                settled, bad amount or duplicate idempotency id
            AuthorizationError: Requester is not the buyer
        """
        cleaned_reason = _require_reason(reason, "for refund requests")
        order = await load_order(db, order_id)
        if order.buyer_id != buyer_id:
            raise AuthorizationError(
                "Only the buyer can request refunds for their purchased items",
                {"order_id": str(order.id)},
            )

        active = await db.execute(
            select(RefundRequest.id).where(
                RefundRequest.order_id == order.id,
                RefundRequest.status.in_(ACTIVE_REFUND_STATUSES),
            )
        )
        if active.first() is not None:
            raise ValidationError(
                "A refund request is already pending for this order. "
                "Wait for seller review or cancellation."
            )

        if not order.finix_transfer_id:
            raise ValidationError("No transfer found for this order to refund")

        try:
            transfer = await self.finix_client.get_transfer(order.finix_transfer_id)
        except FinixError as e:
            raise payment_error_from_finix(e, {"order_id": str(order.id)})
        if transfer.state != "SUCCEEDED":
            logger.warning(
                "refund_request_transfer_not_settled",
                order_id=str(order.id),
                transfer_id=order.finix_transfer_id,
                state=transfer.state,
            )
            raise ValidationError(
                "Transfer must be SUCCEEDED before requesting refund",
                {"transfer_state": transfer.state},
            )

        original_amount = transfer.amount or order.amount
        amount = parse_refund_amount(refund_amount, original_amount)
        if idempotency_id:
            idempotency_id = IdempotencyManager.validate(idempotency_id)
        else:
            idempotency_id = IdempotencyManager.generate("refund")

        request = RefundRequest(
            id=uuid.uuid4(),
            order_id=order.id,
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            requested_amount=amount,
            original_transfer_amount=original_amount,
            currency=order.currency,
            buyer_reason=cleaned_reason,
            status="pending",
            product_returned=False,
            product_return_confirmed=False,
            finix_transfer_id=order.finix_transfer_id,
            idempotency_id=idempotency_id,
        )
        db.add(request)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.warning(
                "refund_request_duplicate",
                order_id=str(order_id),
                idempotency_id=idempotency_id,
            )
            raise ValidationError(
                "A refund request with this idempotency_id already exists, "
                "or another request is active for this order"
            )

        self.audit.record(
            db,
            audit.REFUND_REQUESTED,
            actor_id=buyer_id,
            resource_type="order",
            resource_id=str(order.id),
            details={
                "refund_request_id": str(request.id),
                "requested_amount": amount,
                "reason": cleaned_reason,
                "transfer_id": order.finix_transfer_id,
            },
            context=context,
            idempotency_id=idempotency_id,
        )
        await merge_metadata(
            db,
            order,
            pending_refund_request={
                "request_id": str(request.id),
                "requested_at": utcnow().isoformat(),
                "amount": amount,
            },
        )
        self.notifications.notify(
            db,
            order.seller_id,
            "refund_requested",
            title="Refund Requested",
            body="The buyer has requested a refund for their order.",
            data={"order_id": str(order.id), "refund_request_id": str(request.id)},
            action_url=f"/refund-requests/{request.id}",
        )
        await db.commit()

        metrics.record_refund_action("requested")
        logger.info(
            "refund_requested",
            order_id=str(order.id),
            refund_request_id=str(request.id),
            amount=amount,
        )
        response = serialize_refund(request)
        response["message"] = (
            "Refund request submitted. Please return the product and await seller approval."
        )
        return response

    async def submit_product_return(
        self,
        db: AsyncSession,
        refund_request_id: uuid.UUID | str,
        buyer_id: str,
        tracking_number: Optional[str],
        carrier: Optional[str] = None,
        return_notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Buyer ships the product back (``pending -> return_requested``)."""
        request = await self._load(db, refund_request_id)
        if request.buyer_id != buyer_id:
            raise AuthorizationError(
                "Only the buyer can submit return information",
                {"refund_request_id": str(request.id)},
            )
        tracking = (tracking_number or "").strip()
        if not tracking:
            raise ValidationError("tracking_number is required")
        if request.product_returned:
            raise ValidationError("Return information has already been submitted")
        if request.status != "pending":
            raise ValidationError(
                f"Cannot submit return for this request. Current status: {request.status}"
            )

        values: Dict[str, Any] = {
            "status": "return_requested",
            "product_returned": True,
            "return_tracking_number": tracking,
            "return_carrier": carrier,
            "return_shipped_at": utcnow(),
        }
        if return_notes and return_notes.strip():
            values["buyer_reason"] = f"{request.buyer_reason}\n\nReturn Notes: {return_notes.strip()}"

        if not await self._advance(db, request, ("pending",), values):
            raise ValidationError(
                f"Cannot submit return for this request. Current status: {request.status}"
            )

        self.audit.record(
            db,
            audit.PRODUCT_RETURN_SUBMITTED,
            actor_id=buyer_id,
            resource_type="refund_request",
            resource_id=str(request.id),
            details={"order_id": str(request.order_id), "tracking_number": tracking},
            context=context,
        )
        self.notifications.notify(
            db,
            request.seller_id,
            "product_return_submitted",
            title="Product Returned",
            body="The buyer has shipped the product back to you.",
            data={"refund_request_id": str(request.id), "tracking_number": tracking},
            action_url=f"/refund-requests/{request.id}",
        )
        await db.commit()

        metrics.record_refund_action("return_submitted")
        logger.info("product_return_submitted", refund_request_id=str(request.id))
        response = serialize_refund(request)
        response["message"] = (
            "Return information submitted. Awaiting seller confirmation of product receipt."
        )
        return response

    async def confirm_product_return(
        self,
        db: AsyncSession,
        refund_request_id: uuid.UUID | str,
        seller_id: str,
        confirmation_notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Seller confirms receipt (``return_requested -> return_received``)."""
        request = await self._load(db, refund_request_id)
        if request.seller_id != seller_id:
            raise AuthorizationError(
                "Only the seller can confirm product return",
                {"refund_request_id": str(request.id)},
            )
        if not request.product_returned:
            raise ValidationError(
                "Buyer has not submitted return information yet. "
                "Please wait for the buyer to return the product."
            )
        if request.status != "return_requested":
            raise ValidationError(
                f"Cannot confirm return for this request. Current status: {request.status}"
            )

        values: Dict[str, Any] = {
            "status": "return_received",
            "product_return_confirmed": True,
            "return_confirmed_at": utcnow(),
        }
        if confirmation_notes and confirmation_notes.strip():
            values["seller_response_reason"] = confirmation_notes.strip()

        if not await self._advance(db, request, ("return_requested",), values):
            raise ValidationError(
                f"Cannot confirm return for this request. Current status: {request.status}"
            )

        self.audit.record(
            db,
            audit.PRODUCT_RETURN_CONFIRMED,
            actor_id=seller_id,
            resource_type="refund_request",
            resource_id=str(request.id),
            details={
                "order_id": str(request.order_id),
                "tracking_number": request.return_tracking_number,
            },
            context=context,
        )
        await db.commit()

        metrics.record_refund_action("return_confirmed")
        logger.info("product_return_confirmed", refund_request_id=str(request.id))
        response = serialize_refund(request)
        response["message"] = "Product return confirmed. You can now approve the refund."
        return response

    def _executed_response(self, request: RefundRequest) -> Dict[str, Any]:
        response = serialize_refund(request)
        response.update(
            refund_id=request.finix_reversal_id,
            refund_state=request.finix_reversal_state,
            amount=request.requested_amount,
            message="Refund approved and executed successfully",
        )
        return response

    async def approve_refund_request(
        self,
        db: AsyncSession,
        refund_request_id: uuid.UUID | str,
        seller_id: str,
        approval_notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """
        Approve and execute the refund.

        Re-invoking on an executed request returns the stored result without
        calling Finix again. Concurrent approvals send the same reversal
        idempotency key, and only one of them records the execution.

        Raises:
            ValidationError: Return not confirmed or request not approvable
            AuthorizationError: Requester is not the seller
            PaymentError: Finix refused the reversal
        """
        request = await self._load(db, refund_request_id)
        if request.seller_id != seller_id:
            raise AuthorizationError(
                "Only the seller can approve refund requests",
                {"refund_request_id": str(request.id)},
            )

        if request.status == "executed":
            logger.info("refund_approval_idempotent_return", refund_request_id=str(request.id))
            return self._executed_response(request)

        if not request.product_return_confirmed:
            if not request.product_returned:
                raise ValidationError(
                    "Cannot approve refund: Buyer has not returned the product yet. "
                    "Please wait for product return."
                )
            raise ValidationError(
                "Cannot approve refund: You must confirm product receipt first "
                "(missing return confirmation)."
            )
        if request.status != "return_received":
            raise ValidationError(
                f"Refund request cannot be approved. Current status: {request.status}"
            )

        order = await load_order(db, request.order_id)

        try:
            reversal = await self.finix_client.create_transfer_reversal(
                transfer_id=request.finix_transfer_id,
                refund_amount=request.requested_amount,
                idempotency_key=request.idempotency_id,
            )
        except FinixError as e:
            logger.error(
                "refund_reversal_failed",
                refund_request_id=str(request.id),
                transfer_id=request.finix_transfer_id,
                error=str(e),
            )
            raise payment_error_from_finix(
                e, {"refund_request_id": str(request.id), "transfer_id": request.finix_transfer_id}
            )

        now = utcnow()
        values: Dict[str, Any] = {
            "status": "executed",
            "approved_by": seller_id,
            "approved_at": now,
            "executed_at": now,
            "finix_reversal_id": reversal.id,
            "finix_reversal_state": reversal.state,
        }
        if approval_notes and approval_notes.strip():
            values["seller_response_reason"] = approval_notes.strip()

        if not await self._advance(db, request, ("return_received",), values):
            # A concurrent approval recorded the same reversal first
            if request.status == "executed":
                return self._executed_response(request)
            raise ValidationError(
                f"Refund request cannot be approved. Current status: {request.status}"
            )

        is_full_refund = request.requested_amount >= request.original_transfer_amount
        if is_full_refund:
            refunded = await transition_order(
                db,
                order,
                "refunded",
                values={"refunded_at": now},
                allowed_from=REFUNDABLE_STATUSES,
            )
            if refunded:
                await self.listing_store.set_active(db, order.listing_id)
            else:
                logger.warning(
                    "refund_order_not_refundable",
                    order_id=str(order.id),
                    status=order.status,
                )

        await merge_metadata(
            db,
            order,
            last_refund={
                "reversal_id": reversal.id,
                "amount": request.requested_amount,
                "state": reversal.state,
                "approved_at": now.isoformat(),
            },
            pending_refund_request=None,
        )
        self.audit.record(
            db,
            audit.REFUND_APPROVED,
            actor_id=seller_id,
            resource_type="refund_request",
            resource_id=str(request.id),
            details={
                "order_id": str(order.id),
                "reversal_id": reversal.id,
                "amount": request.requested_amount,
                "reversal_state": reversal.state,
                "full_refund": is_full_refund,
            },
            context=context,
            idempotency_id=request.idempotency_id,
        )
        self.notifications.notify(
            db,
            request.buyer_id,
            "refund_approved",
            title="Refund Approved",
            body="Your refund has been approved and is on its way.",
            data={"refund_request_id": str(request.id), "amount": request.requested_amount},
            action_url=f"/refund-requests/{request.id}",
        )
        await db.commit()

        metrics.record_refund_action("approved")
        logger.info(
            "refund_executed",
            refund_request_id=str(request.id),
            order_id=str(order.id),
            reversal_id=reversal.id,
            amount=request.requested_amount,
            full_refund=is_full_refund,
        )
        return self._executed_response(request)

    async def deny_refund_request(
        self,
        db: AsyncSession,
        refund_request_id: uuid.UUID | str,
        seller_id: str,
        reason: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Seller refuses the refund (terminal ``denied``)."""
        cleaned_reason = _require_reason(reason, "to deny a refund request")
        request = await self._load(db, refund_request_id)
        if request.seller_id != seller_id:
            raise AuthorizationError(
                "Only the seller can deny refund requests",
                {"refund_request_id": str(request.id)},
            )
        if request.status not in ACTIVE_REFUND_STATUSES:
            raise ValidationError(
                f"Refund request cannot be denied. Current status: {request.status}"
            )

        now = utcnow()
        denied = await self._advance(
            db,
            request,
            ACTIVE_REFUND_STATUSES,
            {
                "status": "denied",
                "denied_by": seller_id,
                "denied_at": now,
                "seller_response_reason": cleaned_reason,
            },
        )
        if not denied:
            raise ValidationError(
                f"Refund request cannot be denied. Current status: {request.status}"
            )

        order = await load_order(db, request.order_id)
        await merge_metadata(
            db,
            order,
            pending_refund_request=None,
            last_denied_refund={
                "request_id": str(request.id),
                "denied_at": now.isoformat(),
                "reason": cleaned_reason,
            },
        )
        self.audit.record(
            db,
            audit.REFUND_DENIED,
            actor_id=seller_id,
            resource_type="refund_request",
            resource_id=str(request.id),
            details={
                "order_id": str(request.order_id),
                "requested_amount": request.requested_amount,
                "denial_reason": cleaned_reason,
            },
            context=context,
        )
        self.notifications.notify(
            db,
            request.buyer_id,
            "refund_denied",
            title="Refund Denied",
            body=cleaned_reason,
            data={"refund_request_id": str(request.id)},
            action_url=f"/refund-requests/{request.id}",
        )
        await db.commit()

        metrics.record_refund_action("denied")
        logger.info("refund_denied", refund_request_id=str(request.id))
        response = serialize_refund(request)
        response["message"] = "Refund request denied"
        return response

    async def cancel_refund_request(
        self,
        db: AsyncSession,
        refund_request_id: uuid.UUID | str,
        buyer_id: str,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Buyer withdraws the request; the row is deleted, not soft-deleted."""
        request = await self._load(db, refund_request_id)
        if request.buyer_id != buyer_id:
            raise AuthorizationError(
                "Only the buyer can cancel their refund request",
                {"refund_request_id": str(request.id)},
            )
        cancellable = ("pending", "return_requested")
        if request.status not in cancellable:
            raise ValidationError(
                f"Cannot cancel refund request. Current status: {request.status}"
            )

        request_id = request.id
        order_id = request.order_id
        amount = request.requested_amount
        result = await db.execute(
            delete(RefundRequest)
            .where(RefundRequest.id == request_id, RefundRequest.status.in_(cancellable))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError("Refund request can no longer be cancelled")
        db.expunge(request)

        order = await load_order(db, order_id)
        await merge_metadata(db, order, pending_refund_request=None)
        self.audit.record(
            db,
            audit.REFUND_CANCELLED,
            actor_id=buyer_id,
            resource_type="refund_request",
            resource_id=str(request_id),
            details={"order_id": str(order_id), "requested_amount": amount},
            context=context,
        )
        await db.commit()

        metrics.record_refund_action("cancelled")
        logger.info("refund_request_cancelled", refund_request_id=str(request_id))
        return {
            "refund_request_id": str(request_id),
            "message": "Refund request cancelled successfully",
        }

    async def get_refund_requests(
        self,
        db: AsyncSession,
        user_id: str,
        order_id: Optional[uuid.UUID | str] = None,
        role: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Refund requests where the user is buyer and/or seller, newest first."""
        if role == "buyer":
            stmt = select(RefundRequest).where(RefundRequest.buyer_id == user_id)
        elif role == "seller":
            stmt = select(RefundRequest).where(RefundRequest.seller_id == user_id)
        else:
            stmt = select(RefundRequest).where(
                or_(RefundRequest.buyer_id == user_id, RefundRequest.seller_id == user_id)
            )
        if status and status in REFUND_STATUSES:
            stmt = stmt.where(RefundRequest.status == status)
        if order_id:
            order = await load_order(db, order_id)
            stmt = stmt.where(RefundRequest.order_id == order.id)
        stmt = stmt.order_by(RefundRequest.created_at.desc())
        result = await db.execute(stmt)
        return [serialize_refund(r) for r in result.scalars().all()]

    async def get_refund_request(
        self, db: AsyncSession, refund_request_id: uuid.UUID | str, user_id: str
    ) -> Dict[str, Any]:
        request = await self._load(db, refund_request_id)
        if user_id not in (request.buyer_id, request.seller_id):
            raise AuthorizationError(
                "Not authorized to view this refund request",
                {"refund_request_id": str(request.id)},
            )
        return serialize_refund(request)
