"""
Thin adapters for the adjacent user, notification and chat systems.

Notifications and chat system messages are fire-and-forget: they are written
to the transactional outbox and delivered by ``workers.outbox_publisher``.
A failure to record one is logged and never reaches the caller.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.outbox import write_outbox_event
from database.models import UserProfile

logger = structlog.get_logger(__name__)


def chat_channel_id(listing_id: uuid.UUID | str, buyer_id: str) -> str:
    """Chat channel shared by a buyer and the seller of one listing."""
    return f"listing-{listing_id}-{buyer_id}"


class NotificationService:
    """In-app notifications for buyers and sellers."""

    def notify(
        self,
        db: AsyncSession,
        user_id: str,
        notification_type: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        action_url: Optional[str] = None,
    ) -> None:
        try:
            write_outbox_event(
                db,
                aggregate_id=user_id,
                aggregate_type="notification",
                event_type=notification_type,
                payload={
                    "user_id": user_id,
                    "type": notification_type,
                    "title": title,
                    "body": body,
                    "data": data or {},
                    "action_url": action_url,
                },
            )
        except Exception as e:
            logger.warning(
                "notification_enqueue_failed",
                user_id=user_id,
                notification_type=notification_type,
                error=str(e),
            )


class ChatService:
    """System messages posted into the buyer/seller chat channel."""

    def post_system_message(
        self,
        db: AsyncSession,
        channel_id: str,
        event: Dict[str, Any],
        actor_id: str,
    ) -> None:
        try:
            write_outbox_event(
                db,
                aggregate_id=channel_id,
                aggregate_type="chat",
                event_type=event.get("type", "system_message"),
                payload={"channel_id": channel_id, "event": event, "actor_id": actor_id},
            )
        except Exception as e:
            logger.warning(
                "chat_message_enqueue_failed",
                channel_id=channel_id,
                event_type=event.get("type"),
                error=str(e),
            )


class UserDirectory:
    """Read-only access to stored user profiles."""

    async def get_profile(self, db: AsyncSession, user_id: str) -> Optional[UserProfile]:
        result = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
        return result.scalar_one_or_none()
