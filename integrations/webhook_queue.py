"""
Redis-backed work queue for webhook events.

Two keys:
- a ready list (LPUSH by ingress, BRPOP by workers) holding event ids
- a delayed sorted set scored by the epoch second a retry becomes due
"""
import time
from typing import List, Optional

import redis.asyncio as aioredis
import structlog

from config import get_settings

logger = structlog.get_logger(__name__)


class WebhookQueue:
    """Enqueue/dequeue webhook event ids."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize queue.

        Args:
            redis_client: Optional Redis client (created lazily from settings)
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self.ready_key = self.settings.webhook_queue_key
        self.delayed_key = self.settings.webhook_delayed_key

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def enqueue(self, event_id: str) -> None:
        """Push an event id onto the ready list."""
        redis = await self._ensure_redis()
        await redis.lpush(self.ready_key, event_id)
        logger.debug("webhook_enqueued", event_id=event_id)

    async def schedule_retry(self, event_id: str, delay_seconds: float) -> None:
        """Park an event id in the delayed set until ``delay_seconds`` from now."""
        redis = await self._ensure_redis()
        due = time.time() + delay_seconds
        await redis.zadd(self.delayed_key, {event_id: due})
        logger.info("webhook_retry_scheduled", event_id=event_id, delay_seconds=delay_seconds)

    async def promote_due(self, now: Optional[float] = None) -> List[str]:
        """
        Move retries whose time has come onto the ready list.

        ZREM decides ownership: when several workers promote at once only the
        one whose ZREM removed the member pushes it.

        Returns:
            List[str]: Promoted event ids
        """
        redis = await self._ensure_redis()
        now = now if now is not None else time.time()
        due = await redis.zrangebyscore(self.delayed_key, "-inf", now)
        promoted = []
        for event_id in due:
            if await redis.zrem(self.delayed_key, event_id):
                await redis.lpush(self.ready_key, event_id)
                promoted.append(event_id)
        if promoted:
            logger.info("webhook_retries_promoted", count=len(promoted))
        return promoted

    async def dequeue(self, timeout_seconds: int = 5) -> Optional[str]:
        """Block until an event id is ready, or return None on timeout."""
        redis = await self._ensure_redis()
        item = await redis.brpop([self.ready_key], timeout=timeout_seconds)
        if item is None:
            return None
        _, event_id = item
        return event_id

    async def ping(self) -> bool:
        redis = await self._ensure_redis()
        return bool(await redis.ping())

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
