"""
Outbox publisher background worker.

Continuously polls the outbox table and appends notification and chat
events to a Redis stream consumed by the delivery systems.
"""
import asyncio
import signal
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from config import get_settings
from core.outbox import OutboxPublisher
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def make_stream_publisher(
    redis_client: aioredis.Redis, stream_key: Optional[str] = None
) -> Callable[[Dict[str, Any]], Awaitable[None]]:
    """
    Build a publisher coroutine that XADDs serialised events to a stream.

    Args:
        redis_client: Redis client
        stream_key: Stream name (defaults to ``outbox_stream_key``)
    """
    key = stream_key or get_settings().outbox_stream_key

    async def publish_to_stream(event_data: Dict[str, Any]) -> None:
        entry_id = await redis_client.xadd(key, event_data)
        logger.debug(
            "event_published_to_stream",
            stream=key,
            entry_id=entry_id,
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    return publish_to_stream


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting", stream=settings.outbox_stream_key)

    redis_client = aioredis.from_url(
        settings.redis_url, encoding="utf-8", decode_responses=True
    )
    publisher = OutboxPublisher(
        publisher_func=make_stream_publisher(redis_client, settings.outbox_stream_key),
        batch_size=100,
        poll_interval_seconds=1.0,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await redis_client.aclose()
        logger.info("outbox_publisher_worker_stopped")


if __name__ == "__main__":
    asyncio.run(start_outbox_publisher())
