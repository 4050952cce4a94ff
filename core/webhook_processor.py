"""
Finix webhook reconciliation.

Each stored event is claimed with a conditional status write, dispatched to a
handler registered for its ``entity.type``, and marked processed or failed.
Handlers re-derive order state from the event payload and only move orders
along lifecycle edges, so replays and out-of-order deliveries are harmless.
"""
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.errors import RetryableWebhookError, WebhookPayloadError
from core.orders import merge_metadata, transition_order, update_order_fields
from database.models import MerchantOnboarding, Order, RefundRequest, WebhookEvent
from database.types import as_utc, utcnow
from integrations.collaborators import NotificationService
from integrations.listings import ListingStore
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Handler = Callable[[Dict[str, Any], AsyncSession], Awaitable[Dict[str, Any]]]

FAILED_TRANSFER_STATES = ("FAILED", "CANCELED")


def parse_event(payload: Dict[str, Any]) -> Tuple[str, str, str]:
    """
    Extract ``(event_id, entity, type)`` from a Finix event envelope.

    Raises:
        WebhookPayloadError: If any of the three is missing
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook payload must be a JSON object")
    event_id = payload.get("id")
    entity = payload.get("entity")
    event_type = payload.get("type")
    if not event_id or not entity or not event_type:
        raise WebhookPayloadError("Webhook payload requires id, entity and type")
    return str(event_id), str(entity), str(event_type)


def embedded_resource(payload: Dict[str, Any], entity: str) -> Dict[str, Any]:
    """First embedded resource of an event, e.g. ``_embedded.transfers[0]``."""
    items = (payload.get("_embedded") or {}).get(f"{entity}s")
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        raise WebhookPayloadError(f"Missing {entity} data in webhook")
    return items[0]


def retry_delay_seconds(attempt: int, base_delay: float) -> float:
    """Exponential backoff: ``base * 2^(attempt-1)``."""
    return base_delay * (2 ** max(attempt - 1, 0))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a Finix ISO-8601 timestamp; None when absent or unreadable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("webhook_timestamp_unparseable", value=value)
        return None
    return as_utc(parsed)


def abandoned_claim(cutoff: datetime) -> ColumnElement[bool]:
    """Rows stuck in ``processing`` since before ``cutoff``; their worker is presumed dead."""
    return and_(
        WebhookEvent.status == "processing",
        or_(
            WebhookEvent.processing_started_at <= cutoff,
            and_(
                WebhookEvent.processing_started_at.is_(None),
                WebhookEvent.received_at <= cutoff,
            ),
        ),
    )


def lease_expired(event: WebhookEvent, lease_seconds: int) -> bool:
    """In-memory counterpart of ``abandoned_claim`` for a loaded row."""
    if event.status != "processing":
        return False
    started = as_utc(event.processing_started_at or event.received_at)
    return started is not None and started <= utcnow() - timedelta(seconds=lease_seconds)


async def apply_transfer_state(
    db: AsyncSession,
    order: Order,
    transfer_id: str,
    state: str,
    failure_code: Optional[str] = None,
    failure_message: Optional[str] = None,
    listing_store: Optional[ListingStore] = None,
    notifications: Optional[NotificationService] = None,
    source: str = "webhook",
) -> Dict[str, Any]:
    """
    Apply a transfer's authoritative state to its order.

    ``SUCCEEDED`` pays the order and sells the listing; ``FAILED`` and
    ``CANCELED`` cancel it, record the failure and release the reservation;
    anything else is informational. Orders already past the relevant edge
    are left untouched.

    Args:
        db: Database session (caller commits)
        order: Order correlated with the transfer
        transfer_id: Finix transfer id
        state: Transfer state reported by Finix
        failure_code: Finix failure code, if any
        failure_message: Finix failure message, if any
        listing_store: Listing collaborator
        notifications: Notification collaborator
        source: ``webhook`` or ``sweep`` (logged and stored)

    Returns:
        Dict[str, Any]: Handler result
    """
    listing_store = listing_store or ListingStore()
    notifications = notifications or NotificationService()
    now = utcnow()
    order_id = str(order.id)

    if state == "SUCCEEDED":
        paid = await transition_order(db, order, "paid", values={"paid_at": now})
        if not paid:
            logger.info(
                "transfer_succeeded_no_transition",
                order_id=order_id,
                transfer_id=transfer_id,
                status=order.status,
                source=source,
            )
            return {"order_id": order_id, "action": "none", "status": order.status}

        await listing_store.mark_sold(db, order.listing_id, order.id)
        await merge_metadata(db, order, transfer_state=state)
        notifications.notify(
            db,
            order.buyer_id,
            "payment_succeeded",
            title="Payment Confirmed",
            body="Your payment has been confirmed. The seller will ship your item soon.",
            data={"order_id": order_id},
            action_url=f"/orders/{order_id}",
        )
        notifications.notify(
            db,
            order.seller_id,
            "order_paid",
            title="Order Paid",
            body="Payment for your listing has settled. Please ship the item.",
            data={"order_id": order_id},
            action_url=f"/orders/{order_id}",
        )
        logger.info(
            "order_paid",
            order_id=order_id,
            transfer_id=transfer_id,
            amount=order.amount,
            source=source,
        )
        return {"order_id": order_id, "action": "paid", "status": order.status}

    if state in FAILED_TRANSFER_STATES:
        cancelled = await transition_order(
            db, order, "cancelled", values={"cancelled_at": now}
        )
        if not cancelled:
            logger.warning(
                "transfer_failed_no_transition",
                order_id=order_id,
                transfer_id=transfer_id,
                state=state,
                status=order.status,
                source=source,
            )
            return {"order_id": order_id, "action": "none", "status": order.status}

        await merge_metadata(
            db,
            order,
            transfer_state=state,
            transfer_failure={
                "transfer_id": transfer_id,
                "state": state,
                "code": failure_code,
                "message": failure_message,
                "failed_at": now.isoformat(),
                "source": source,
            },
        )
        await listing_store.release(db, order.listing_id, order.id)
        notifications.notify(
            db,
            order.buyer_id,
            "payment_failed",
            title="Payment Failed",
            body=failure_message or "Your payment could not be completed.",
            data={"order_id": order_id, "failure_code": failure_code},
            action_url=f"/orders/{order_id}",
        )
        logger.error(
            "order_payment_failed",
            order_id=order_id,
            transfer_id=transfer_id,
            state=state,
            failure_code=failure_code,
            failure_message=failure_message,
            source=source,
        )
        return {"order_id": order_id, "action": "cancelled", "status": order.status}

    logger.info(
        "transfer_state_informational",
        order_id=order_id,
        transfer_id=transfer_id,
        state=state,
        source=source,
    )
    return {"order_id": order_id, "action": "none", "status": order.status, "state": state}


class WebhookProcessor:
    """
    Processes stored Finix webhook events.

    Handlers are registered per ``entity.type``; events without a handler
    are marked processed with an ``ignored`` result.
    """

    def __init__(
        self,
        listing_store: Optional[ListingStore] = None,
        notifications: Optional[NotificationService] = None,
    ):
        """
        Initialize webhook processor.

        Args:
            listing_store: Optional listing collaborator
            notifications: Optional notification collaborator
        """
        self.settings = get_settings()
        self.listing_store = listing_store or ListingStore()
        self.notifications = notifications or NotificationService()
        self.event_handlers: Dict[str, Handler] = {}

        self.register_handler("onboarding_form.created", self.handle_onboarding_form)
        self.register_handler("onboarding_form.updated", self.handle_onboarding_form)
        self.register_handler("merchant.created", self.handle_merchant)
        self.register_handler("merchant.updated", self.handle_merchant)
        self.register_handler("merchant.underwritten", self.handle_merchant)
        self.register_handler("verification.updated", self.handle_verification_updated)
        self.register_handler("transfer.created", self.handle_transfer_created)
        self.register_handler("transfer.updated", self.handle_transfer_updated)
        self.register_handler("dispute.created", self.handle_dispute)
        self.register_handler("dispute.updated", self.handle_dispute)

        logger.info("webhook_processor_initialized", handlers=sorted(self.event_handlers))

    def register_handler(self, event_type: str, handler: Handler) -> None:
        """
        Register a handler for an ``entity.type`` event.

        Args:
            event_type: e.g. ``transfer.updated``
            handler: Async callable taking the event payload and a session
        """
        self.event_handlers[event_type] = handler

    async def claim(self, db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
        """
        Take ownership of an event for processing.

        The ``pending|failed -> processing`` write succeeds for exactly one
        worker; everyone else gets None. A ``processing`` row whose lease
        (``webhook_processing_lease_seconds``) has run out is claimable too,
        so an event is not stranded by a worker that died mid-dispatch.
        """
        now = utcnow()
        lease_cutoff = now - timedelta(seconds=self.settings.webhook_processing_lease_seconds)
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                or_(
                    WebhookEvent.status.in_(("pending", "failed")),
                    abandoned_claim(lease_cutoff),
                ),
            )
            .values(
                status="processing",
                attempt_count=WebhookEvent.attempt_count + 1,
                next_attempt_at=None,
                processing_started_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        if result.rowcount != 1:
            return None

        row = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        event = row.scalar_one()
        await db.refresh(event)
        return event

    async def dispatch(
        self, db: AsyncSession, entity: str, event_type: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Route an event payload to its handler."""
        handler = self.event_handlers.get(f"{entity}.{event_type}")
        if handler is None:
            logger.info("webhook_no_handler", entity=entity, type=event_type)
            return {"status": "ignored", "message": f"No handler for {entity}.{event_type}"}
        return await handler(payload, db)

    async def process_event(self, db: AsyncSession, event_id: str) -> Dict[str, Any]:
        """
        Claim, dispatch and record the outcome of one stored event.

        Args:
            db: Database session
            event_id: Finix event id

        Returns:
            Dict[str, Any]: ``status`` is one of ``processed``, ``failed``,
            ``skipped``; failed outcomes carry ``retry_in_seconds`` when
            another attempt is due
        """
        event = await self.claim(db, event_id)
        if event is None:
            logger.info("webhook_event_not_claimable", event_id=event_id)
            return {"status": "skipped", "event_id": event_id}

        event_type = event.event_type
        attempt = event.attempt_count
        start_time = time.time()

        logger.info(
            "processing_webhook_event",
            event_id=event_id,
            event_type=event_type,
            attempt=attempt,
        )

        try:
            result = await self.dispatch(db, event.entity, event.type, event.payload)
        except Exception as e:
            await db.rollback()
            return await self._record_failure(db, event_id, event_type, attempt, e, start_time)

        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(status="processed", processed_at=utcnow(), result=result, last_error=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        metrics.record_webhook_processed(event_type, "processed", time.time() - start_time)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
            result=result,
        )
        return {"status": "processed", "event_id": event_id, "result": result}

    async def _record_failure(
        self,
        db: AsyncSession,
        event_id: str,
        event_type: str,
        attempt: int,
        error: Exception,
        start_time: float,
    ) -> Dict[str, Any]:
        retryable = not isinstance(error, WebhookPayloadError)
        exhausted = attempt >= self.settings.webhook_max_attempts
        delay: Optional[float] = None
        next_attempt_at = None
        if retryable and not exhausted:
            delay = retry_delay_seconds(attempt, self.settings.webhook_retry_base_delay_seconds)
            next_attempt_at = utcnow() + timedelta(seconds=delay)

        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(status="failed", last_error=str(error), next_attempt_at=next_attempt_at)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        metrics.record_webhook_processed(event_type, "failed", time.time() - start_time)
        log = logger.warning if isinstance(error, RetryableWebhookError) else logger.error
        log(
            "webhook_event_processing_failed",
            event_id=event_id,
            event_type=event_type,
            attempt=attempt,
            error=str(error),
            retry_in_seconds=delay,
        )
        outcome: Dict[str, Any] = {
            "status": "failed",
            "event_id": event_id,
            "error": str(error),
        }
        if delay is not None:
            outcome["retry_in_seconds"] = delay
        return outcome

    async def find_stale_events(self, db: AsyncSession, limit: int = 100) -> List[str]:
        """
        Event ids that should be queued again.

        Covers pending rows whose enqueue was lost, failed rows whose retry
        is overdue and processing rows whose claim lease has expired.
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=self.settings.webhook_stale_pending_seconds)
        lease_cutoff = now - timedelta(seconds=self.settings.webhook_processing_lease_seconds)
        stmt = (
            select(WebhookEvent.event_id)
            .where(
                or_(
                    and_(WebhookEvent.status == "pending", WebhookEvent.received_at <= cutoff),
                    and_(
                        WebhookEvent.status == "failed",
                        WebhookEvent.next_attempt_at.is_not(None),
                        WebhookEvent.next_attempt_at <= cutoff,
                    ),
                    abandoned_claim(lease_cutoff),
                )
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # Handlers

    async def handle_onboarding_form(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """Store the identity created by a completed onboarding form."""
        event_type = payload.get("type")
        form = embedded_resource(payload, "onboarding_form")
        form_id = form.get("id")
        identity_id = form.get("identity_id")

        completed = (
            form.get("status") == "COMPLETED" if event_type == "updated" else bool(identity_id)
        )
        if not completed:
            logger.info(
                "onboarding_form_not_completed",
                form_id=form_id,
                status=form.get("status"),
                type=event_type,
            )
            return {"status": "skipped", "message": "Onboarding form not completed"}

        user_id = (form.get("tags") or {}).get("user_id")
        if not user_id:
            raise WebhookPayloadError(f"Missing user_id tag in completed form {form_id}")
        if not identity_id:
            raise WebhookPayloadError(f"Missing identity_id in completed form {form_id}")

        result = await db.execute(
            select(MerchantOnboarding)
            .where(
                or_(
                    MerchantOnboarding.form_id == form_id,
                    and_(
                        MerchantOnboarding.user_id == user_id,
                        MerchantOnboarding.identity_id.is_(None),
                    ),
                )
            )
            .order_by(MerchantOnboarding.created_at.desc())
        )
        onboarding = result.scalars().first()
        if onboarding is None:
            raise RetryableWebhookError(
                f"Merchant onboarding not found for form {form_id} (user {user_id})"
            )

        await db.execute(
            update(MerchantOnboarding)
            .where(MerchantOnboarding.id == onboarding.id)
            .values(
                form_id=form_id,
                identity_id=identity_id,
                onboarding_state="PROVISIONING",
                onboarded_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "onboarding_identity_stored",
            user_id=user_id,
            form_id=form_id,
            identity_id=identity_id,
        )
        return {"user_id": user_id, "identity_id": identity_id, "onboarding_state": "PROVISIONING"}

    async def _onboarding_for_identity(
        self, db: AsyncSession, identity_id: str
    ) -> MerchantOnboarding:
        result = await db.execute(
            select(MerchantOnboarding).where(MerchantOnboarding.identity_id == identity_id)
        )
        onboarding = result.scalars().first()
        if onboarding is None:
            # The local onboarding write may not have landed yet
            raise RetryableWebhookError(
                f"Merchant onboarding not found for identity {identity_id}"
            )
        return onboarding

    async def handle_merchant(self, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """Record merchant id and onboarding state against the onboarding row."""
        merchant = embedded_resource(payload, "merchant")
        identity_id = merchant.get("identity")
        if not identity_id:
            raise WebhookPayloadError("Missing identity field in merchant data")

        onboarding = await self._onboarding_for_identity(db, identity_id)
        values: Dict[str, Any] = {"merchant_id": merchant.get("id"), "updated_at": utcnow()}
        if merchant.get("onboarding_state"):
            values["onboarding_state"] = merchant["onboarding_state"]
        if merchant.get("verification"):
            values["verification_id"] = merchant["verification"]

        await db.execute(
            update(MerchantOnboarding)
            .where(MerchantOnboarding.id == onboarding.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "merchant_onboarding_updated",
            user_id=onboarding.user_id,
            merchant_id=merchant.get("id"),
            onboarding_state=values.get("onboarding_state"),
        )
        return {
            "user_id": onboarding.user_id,
            "merchant_id": merchant.get("id"),
            "onboarding_state": values.get("onboarding_state", onboarding.onboarding_state),
        }

    async def handle_verification_updated(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """Record verification state; ``verified_at`` only survives success."""
        verification = embedded_resource(payload, "verification")
        identity_id = verification.get("identity") or verification.get("merchant_identity")
        if not identity_id:
            raise WebhookPayloadError("Missing identity field in verification data")

        onboarding = await self._onboarding_for_identity(db, identity_id)
        state = verification.get("state")
        values: Dict[str, Any] = {
            "verification_id": verification.get("id"),
            "verification_state": state,
            "updated_at": utcnow(),
        }
        if state == "SUCCEEDED":
            values["verified_at"] = utcnow()
        elif state == "FAILED":
            values["verified_at"] = None

        await db.execute(
            update(MerchantOnboarding)
            .where(MerchantOnboarding.id == onboarding.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "merchant_verification_updated",
            user_id=onboarding.user_id,
            verification_id=verification.get("id"),
            state=state,
        )
        return {"user_id": onboarding.user_id, "verification_state": state}

    async def handle_transfer_created(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Link a new transfer to its order.

        Correlates by authorization id, then by payment instrument id. An
        unmatched transfer is not an error; a later ``transfer.updated`` or
        the transfer sweep heals it.
        """
        transfer = embedded_resource(payload, "transfer")
        transfer_id = transfer.get("id")
        state = transfer.get("state")
        authorization_id = (transfer.get("tags") or {}).get("authorization_id")
        source_id = transfer.get("source")

        order = None
        if authorization_id:
            result = await db.execute(
                select(Order).where(Order.finix_authorization_id == authorization_id)
            )
            order = result.scalars().first()
        if order is None and source_id:
            result = await db.execute(
                select(Order)
                .where(
                    Order.finix_payment_instrument_id == source_id,
                    or_(Order.finix_transfer_id.is_(None), Order.finix_transfer_id == transfer_id),
                )
                .order_by(Order.created_at.desc())
            )
            order = result.scalars().first()

        if order is None:
            logger.warning(
                "transfer_created_order_not_found",
                transfer_id=transfer_id,
                authorization_id=authorization_id,
                source_id=source_id,
            )
            return {"status": "order_not_found", "transfer_id": transfer_id}

        if order.finix_transfer_id != transfer_id:
            await update_order_fields(db, order, finix_transfer_id=transfer_id)

        if state == "SUCCEEDED" or state in FAILED_TRANSFER_STATES:
            return await apply_transfer_state(
                db,
                order,
                transfer_id,
                state,
                failure_code=transfer.get("failure_code"),
                failure_message=transfer.get("failure_message"),
                listing_store=self.listing_store,
                notifications=self.notifications,
            )

        moved = await transition_order(
            db, order, "pending", allowed_from=("processing",)
        )
        await merge_metadata(db, order, transfer_state=state)
        logger.info(
            "transfer_linked_to_order",
            order_id=str(order.id),
            transfer_id=transfer_id,
            state=state,
            moved_to_pending=moved,
        )
        return {
            "order_id": str(order.id),
            "action": "pending" if moved else "none",
            "status": order.status,
        }

    async def handle_transfer_updated(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """Apply a transfer state change to the order that owns the transfer."""
        transfer = embedded_resource(payload, "transfer")
        transfer_id = transfer.get("id")

        if "REVERSAL" in (transfer.get("type"), transfer.get("subtype")):
            return await self._apply_reversal_state(db, transfer)

        result = await db.execute(select(Order).where(Order.finix_transfer_id == transfer_id))
        order = result.scalars().first()
        if order is None:
            logger.error("transfer_updated_order_not_found", transfer_id=transfer_id)
            return {"status": "order_not_found", "transfer_id": transfer_id}

        return await apply_transfer_state(
            db,
            order,
            transfer_id,
            transfer.get("state", "UNKNOWN"),
            failure_code=transfer.get("failure_code"),
            failure_message=transfer.get("failure_message"),
            listing_store=self.listing_store,
            notifications=self.notifications,
        )

    async def _apply_reversal_state(
        self, db: AsyncSession, reversal: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Record the settled state of a refund reversal.

        The refund request and the order were already moved by the approval;
        only the reversal's outcome is stored here. A reversal that later
        fails is recorded on the order so support can reissue the refund.

        Raises:
            RetryableWebhookError: If the approval has not stored the reversal id yet
        """
        reversal_id = reversal.get("id")
        state = reversal.get("state", "UNKNOWN")
        result = await db.execute(
            select(RefundRequest).where(RefundRequest.finix_reversal_id == reversal_id)
        )
        request = result.scalars().first()
        if request is None:
            raise RetryableWebhookError(f"Refund request not found for reversal {reversal_id}")

        if request.finix_reversal_state != state:
            await db.execute(
                update(RefundRequest)
                .where(RefundRequest.id == request.id)
                .values(finix_reversal_state=state, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.refresh(request)

        order = (
            await db.execute(select(Order).where(Order.id == request.order_id))
        ).scalar_one_or_none()
        outcome: Dict[str, Any] = {
            "refund_request_id": str(request.id),
            "reversal_id": reversal_id,
            "state": state,
            "action": "none",
        }
        if order is None:
            return outcome
        outcome["order_id"] = str(order.id)

        last_refund = dict((order.metadata_ or {}).get("last_refund") or {})
        if last_refund.get("reversal_id") == reversal_id:
            last_refund["state"] = state
            await merge_metadata(db, order, last_refund=last_refund)

        if state in FAILED_TRANSFER_STATES:
            await merge_metadata(
                db,
                order,
                refund_reversal_failure={
                    "reversal_id": reversal_id,
                    "refund_request_id": str(request.id),
                    "state": state,
                    "code": reversal.get("failure_code"),
                    "message": reversal.get("failure_message"),
                    "failed_at": utcnow().isoformat(),
                },
            )
            self.notifications.notify(
                db,
                order.buyer_id,
                "refund_failed",
                title="Refund Failed",
                body="Your refund could not be completed. Our team has been notified.",
                data={"order_id": str(order.id), "refund_request_id": str(request.id)},
                action_url=f"/orders/{order.id}",
            )
            logger.error(
                "refund_reversal_failed_after_approval",
                order_id=str(order.id),
                refund_request_id=str(request.id),
                reversal_id=reversal_id,
                state=state,
                failure_code=reversal.get("failure_code"),
            )
            outcome["action"] = "reversal_failed"
        elif state == "SUCCEEDED":
            logger.info(
                "refund_reversal_settled",
                order_id=str(order.id),
                refund_request_id=str(request.id),
                reversal_id=reversal_id,
            )
            outcome["action"] = "reversal_settled"
        return outcome

    async def handle_dispute(self, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """Store chargeback details on the order whose transfer is disputed."""
        event_type = payload.get("type")
        dispute = embedded_resource(payload, "dispute")
        dispute_id = dispute.get("id")
        transfer_id = dispute.get("transfer")

        result = await db.execute(select(Order).where(Order.finix_transfer_id == transfer_id))
        order = result.scalars().first()
        if order is None:
            logger.warning(
                "dispute_order_not_found", dispute_id=dispute_id, transfer_id=transfer_id
            )
            return {"status": "order_not_found", "transfer_id": transfer_id}

        values: Dict[str, Any] = {
            "dispute_id": dispute_id,
            "dispute_state": dispute.get("state"),
            "dispute_reason": dispute.get("reason"),
            "dispute_amount": dispute.get("amount"),
            "dispute_respond_by": parse_timestamp(dispute.get("respond_by")),
        }
        if order.dispute_created_at is None:
            values["dispute_created_at"] = utcnow()
        await update_order_fields(db, order, **values)

        if event_type == "created":
            self.notifications.notify(
                db,
                order.seller_id,
                "dispute_opened",
                title="Payment Disputed",
                body="The buyer's bank has opened a dispute on this order.",
                data={"order_id": str(order.id), "dispute_id": dispute_id},
                action_url=f"/orders/{order.id}/dispute",
            )
        logger.warning(
            "order_dispute_recorded",
            order_id=str(order.id),
            dispute_id=dispute_id,
            dispute_state=order.dispute_state,
            respond_by=dispute.get("respond_by"),
        )
        return {
            "order_id": str(order.id),
            "dispute_id": dispute_id,
            "dispute_state": order.dispute_state,
        }
