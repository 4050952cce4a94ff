"""
Transactional outbox pattern implementation.

Notifications and chat system messages are written to the outbox in the same
transaction as the order change, then published asynchronously to a Redis
stream read by the delivery systems.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_session_factory
from database.models import OutboxEvent
from database.types import utcnow
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def write_outbox_event(
    db: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """
    Write event to transactional outbox.

    Args:
        db: Database session
        aggregate_id: Aggregate ID (user id for notifications, channel id for chat)
        aggregate_type: ``notification`` or ``chat``
        event_type: Event type (e.g. ``listing_reserved``)
        payload: Event payload

    Returns:
        OutboxEvent: The pending row (flushed with the caller's transaction)
    """
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
        created_at=utcnow(),
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Publishes events from the outbox table to a message stream.

    At-least-once delivery:
    1. Read unpublished events from outbox
    2. Publish to the stream
    3. Mark as published in database
    """

    def __init__(
        self,
        publisher_func: Callable[[Dict[str, Any]], Awaitable[Any]],
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine that publishes one serialised event
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.publisher_func = publisher_func
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def serialise(event: OutboxEvent) -> Dict[str, Any]:
        """Flatten an outbox row into stream fields (string values only)."""
        return {
            "id": str(event.id),
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": json.dumps(event.payload, default=str),
            "created_at": event.created_at.isoformat(),
        }

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            await self.publisher_func(self.serialise(event))
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_type=event.aggregate_type,
        )
        return True

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)
        await db.commit()

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self, db: Optional[AsyncSession] = None) -> int:
        """
        Process a batch of unpublished events.

        Args:
            db: Optional session (a fresh one is opened when omitted)

        Returns:
            int: Number of events published
        """
        if db is not None:
            return await self._process_batch(db)

        session_factory = get_session_factory()
        async with session_factory() as session:
            try:
                return await self._process_batch(session)
            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await session.rollback()
                return 0

    async def _process_batch(self, db: AsyncSession) -> int:
        events = await self._fetch_unpublished_events(db)
        if not events:
            return 0

        published_ids = []
        for event in events:
            if await self._publish_event(event):
                published_ids.append(event.id)

        await self._mark_as_published(db, published_ids)

        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(events) - len(published_ids),
        )
        return len(published_ids)

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # Events were processed, check immediately for more
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self, db: Optional[AsyncSession] = None) -> int:
        """Count unpublished events."""
        stmt = select(func.count()).select_from(OutboxEvent).where(
            OutboxEvent.published.is_(False)
        )
        if db is not None:
            return int((await db.execute(stmt)).scalar_one())

        session_factory = get_session_factory()
        async with session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())
