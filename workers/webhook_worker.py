"""
Webhook processing background worker.

Blocks on the Redis ready list, processes one event at a time and schedules
retries with exponential backoff. Also re-enqueues events whose enqueue was
lost or whose retry is overdue.
"""
import asyncio
import signal
import time
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.webhook_processor import WebhookProcessor
from database.connection import close_db, get_session_factory
from integrations.webhook_queue import WebhookQueue
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

STALE_SWEEP_INTERVAL_SECONDS = 30.0


async def process_next(
    processor: WebhookProcessor,
    queue: WebhookQueue,
    session_factory: async_sessionmaker[AsyncSession],
    timeout_seconds: int = 5,
) -> Optional[Dict[str, Any]]:
    """
    Process the next ready event, if any.

    Returns:
        Optional[Dict[str, Any]]: Processing outcome, or None when the queue was empty
    """
    await queue.promote_due()
    event_id = await queue.dequeue(timeout_seconds)
    if event_id is None:
        return None

    async with session_factory() as session:
        outcome = await processor.process_event(session, event_id)

    delay = outcome.get("retry_in_seconds")
    if delay is not None:
        await queue.schedule_retry(event_id, delay)
    return outcome


async def requeue_stale_events(
    processor: WebhookProcessor,
    queue: WebhookQueue,
    session_factory: async_sessionmaker[AsyncSession],
) -> int:
    """Push stale pending and overdue failed events back onto the ready list."""
    async with session_factory() as session:
        event_ids = await processor.find_stale_events(session)
    for event_id in event_ids:
        await queue.enqueue(event_id)
    if event_ids:
        logger.info("webhook_stale_events_requeued", count=len(event_ids))
    return len(event_ids)


async def start_webhook_worker() -> None:
    """
    Start the webhook worker.

    Runs continuously until stopped.
    """
    setup_logging()

    logger.info("webhook_worker_starting")

    processor = WebhookProcessor()
    queue = WebhookQueue()
    session_factory = get_session_factory()
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("webhook_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    last_sweep = 0.0
    try:
        while running:
            if time.time() - last_sweep >= STALE_SWEEP_INTERVAL_SECONDS:
                try:
                    await requeue_stale_events(processor, queue, session_factory)
                except Exception as e:
                    logger.error("webhook_stale_sweep_error", error=str(e))
                last_sweep = time.time()

            try:
                await process_next(processor, queue, session_factory)
            except Exception as e:
                logger.error("webhook_worker_iteration_error", error=str(e))
                await asyncio.sleep(1.0)

    except Exception as e:
        logger.error("webhook_worker_error", error=str(e))
        raise
    finally:
        await queue.close()
        await close_db()
        logger.info("webhook_worker_stopped")


if __name__ == "__main__":
    asyncio.run(start_webhook_worker())
