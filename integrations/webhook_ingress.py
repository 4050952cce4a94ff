"""
Finix webhook ingress: authenticate, persist, enqueue, return.

Processing happens in ``workers.webhook_worker``; the endpoint only has to
answer fast enough that Finix does not time out and redeliver.
"""
import json
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.errors import WebhookPayloadError
from core.signature import verify_basic_auth, verify_signature
from core.webhook_processor import lease_expired, parse_event
from database.models import WebhookEvent
from integrations.webhook_queue import WebhookQueue
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookAuthError(Exception):
    """Raised when a webhook fails Basic auth or signature verification."""

    pass


class WebhookIngress:
    """Accepts Finix webhook deliveries."""

    def __init__(self, queue: Optional[WebhookQueue] = None):
        """
        Initialize webhook ingress.

        Args:
            queue: Optional Redis work queue
        """
        self.settings = get_settings()
        self.queue = queue or WebhookQueue()

        logger.info("webhook_ingress_initialized")

    def authenticate(
        self, body: bytes, signature: Optional[str], authorization: Optional[str]
    ) -> None:
        """
        Check legacy Basic credentials (when configured) and the HMAC signature.

        Raises:
            WebhookAuthError: If either check fails
        """
        if self.settings.webhook_basic_auth_enabled and not verify_basic_auth(
            authorization,
            self.settings.finix_webhook_username,
            self.settings.finix_webhook_password,
        ):
            logger.warning("webhook_basic_auth_failed")
            raise WebhookAuthError("Invalid webhook credentials")

        if not verify_signature(
            body,
            signature,
            self.settings.finix_webhook_secret,
            self.settings.is_production,
        ):
            logger.error("webhook_signature_verification_failed")
            raise WebhookAuthError("Invalid webhook signature")

    async def receive(
        self,
        db: AsyncSession,
        body: bytes,
        signature: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Store a delivery and hand it to the worker queue.

        Args:
            db: Database session
            body: Raw request body (the signature covers these exact bytes)
            signature: ``Finix-Signature`` header
            authorization: ``Authorization`` header

        Returns:
            Dict[str, Any]: Acknowledgement body

        Raises:
            WebhookAuthError: Authentication failed
            WebhookPayloadError: Body is not a Finix event envelope
        """
        self.authenticate(body, signature, authorization)

        if not body or not body.strip():
            logger.info("webhook_ping_received")
            return {"ok": True, "ping": True}

        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookPayloadError(f"Webhook body is not valid JSON: {e}")
        event_id, entity, event_type = parse_event(payload)
        full_type = f"{entity}.{event_type}"

        existing = await self._find(db, event_id)
        if existing is not None and existing.status == "processed":
            metrics.record_webhook_received(full_type, "duplicate")
            logger.info("webhook_already_processed", event_id=event_id, event_type=full_type)
            return {"ok": True, "message": "Already processed", "event_id": event_id}

        if existing is None:
            event = WebhookEvent(
                event_id=event_id,
                event_type=full_type,
                entity=entity,
                type=event_type,
                payload=payload,
                status="pending",
                attempt_count=0,
            )
            db.add(event)
            try:
                await db.commit()
            except IntegrityError:
                # Concurrent delivery of the same event stored it first
                await db.rollback()
                existing = await self._find(db, event_id)
                metrics.record_webhook_received(full_type, "duplicate")
                return {
                    "ok": True,
                    "message": "Already received",
                    "event_id": event_id,
                    "status": existing.status if existing else "pending",
                }
            outcome = "stored"
        elif existing.status == "processing" and not lease_expired(
            existing, self.settings.webhook_processing_lease_seconds
        ):
            metrics.record_webhook_received(full_type, "duplicate")
            return {"ok": True, "message": "Processing", "event_id": event_id}
        else:
            outcome = "requeued"

        try:
            await self.queue.enqueue(event_id)
        except Exception as e:
            # The worker's stale-event sweep picks the row up later
            logger.error("webhook_enqueue_failed", event_id=event_id, error=str(e))

        metrics.record_webhook_received(full_type, outcome)
        logger.info(
            "webhook_received",
            event_id=event_id,
            event_type=full_type,
            outcome=outcome,
        )
        return {"ok": True, "message": "Webhook received", "event_id": event_id}

    @staticmethod
    async def _find(db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
        result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        return result.scalar_one_or_none()
