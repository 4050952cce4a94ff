"""
Transfer reconciliation sweep.

Webhooks are the primary path to ``paid``. Orders whose transfer webhook
never correlated (or never arrived) stay in ``processing``/``pending``; this
sweep polls Finix for their transfers and applies the same transition rules
as ``transfer.updated``.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.webhook_processor import apply_transfer_state
from database.connection import get_session_factory
from database.models import Order
from database.types import utcnow
from integrations.collaborators import NotificationService
from integrations.finix_client import FinixClient, FinixError
from integrations.listings import ListingStore
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

IN_FLIGHT_STATUSES = ("processing", "pending")


class TransferReconciler:
    """Polls Finix for transfers of orders stuck before ``paid``."""

    def __init__(
        self,
        finix_client: Optional[FinixClient] = None,
        listing_store: Optional[ListingStore] = None,
        notifications: Optional[NotificationService] = None,
        batch_size: int = 100,
    ):
        """
        Initialize transfer reconciler.

        Args:
            finix_client: Optional Finix client
            listing_store: Optional listing collaborator
            notifications: Optional notification collaborator
            batch_size: Max orders examined per pass
        """
        self.settings = get_settings()
        self._finix_client = finix_client
        self.listing_store = listing_store or ListingStore()
        self.notifications = notifications or NotificationService()
        self.batch_size = batch_size
        logger.info("transfer_reconciler_initialized", batch_size=batch_size)

    @property
    def finix_client(self) -> FinixClient:
        if self._finix_client is None:
            self._finix_client = FinixClient()
        return self._finix_client

    async def _stale_orders(self, db: AsyncSession) -> List[Order]:
        cutoff = utcnow() - timedelta(seconds=self.settings.transfer_sweep_min_age_seconds)
        stmt = (
            select(Order)
            .where(
                Order.status.in_(IN_FLIGHT_STATUSES),
                Order.finix_transfer_id.is_not(None),
                Order.updated_at <= cutoff,
            )
            .order_by(Order.updated_at)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def reconcile_order(self, db: AsyncSession, order: Order) -> Dict[str, Any]:
        """
        Fetch one order's transfer and apply its state.

        Gateway errors are logged and reported as ``error``; the next pass
        tries again.
        """
        try:
            transfer = await self.finix_client.get_transfer(order.finix_transfer_id)
        except FinixError as e:
            logger.warning(
                "transfer_sweep_fetch_failed",
                order_id=str(order.id),
                transfer_id=order.finix_transfer_id,
                error=str(e),
            )
            return {"order_id": str(order.id), "action": "error", "error": str(e)}

        result = await apply_transfer_state(
            db,
            order,
            transfer.id,
            transfer.state,
            failure_code=transfer.failure_code,
            failure_message=transfer.failure_message,
            listing_store=self.listing_store,
            notifications=self.notifications,
            source="sweep",
        )
        await db.commit()
        return result

    async def run_once(self, db: Optional[AsyncSession] = None) -> Dict[str, int]:
        """
        Run one reconciliation pass.

        Args:
            db: Optional session; a fresh one is opened when omitted

        Returns:
            Dict[str, int]: Counts per outcome (``paid``, ``cancelled``, ``none``, ``error``)
        """
        if db is None:
            session_factory = get_session_factory()
            async with session_factory() as session:
                return await self._run(session)
        return await self._run(db)

    async def _run(self, db: AsyncSession) -> Dict[str, int]:
        orders = await self._stale_orders(db)
        counts: Dict[str, int] = {"examined": len(orders), "paid": 0, "cancelled": 0, "none": 0, "error": 0}

        for order in orders:
            result = await self.reconcile_order(db, order)
            action = result.get("action", "none")
            counts[action] = counts.get(action, 0) + 1

        for outcome in ("paid", "cancelled", "none", "error"):
            if counts[outcome]:
                metrics.record_transfer_sweep(outcome, counts[outcome])

        logger.info("transfer_sweep_completed", **counts)
        return counts
