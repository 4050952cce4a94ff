"""
Tests for the webhook ingress path.
"""
import json
from datetime import timedelta
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from core.errors import WebhookPayloadError
from core.signature import compute_signature
from database.models import WebhookEvent
from database.types import utcnow
from integrations.webhook_ingress import WebhookAuthError, WebhookIngress

SECRET = "whsec_test_secret"


def signed(payload: Dict[str, Any]) -> tuple:
    body = json.dumps(payload).encode()
    return body, compute_signature(body, SECRET)


EVENT = {
    "id": "EVingress1",
    "entity": "transfer",
    "type": "updated",
    "_embedded": {"transfers": [{"id": "TR1", "state": "SUCCEEDED"}]},
}


@pytest.fixture
def queue() -> AsyncMock:
    """Webhook queue double."""
    return AsyncMock()


class TestWebhookIngress:
    """Test suite for WebhookIngress."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stores_and_enqueues(self, test_db: Any, queue: AsyncMock) -> None:
        """Test a signed delivery is persisted as pending and queued."""
        body, signature = signed(EVENT)

        response = await WebhookIngress(queue=queue).receive(test_db, body, signature)

        assert response == {"ok": True, "message": "Webhook received", "event_id": "EVingress1"}
        queue.enqueue.assert_awaited_once_with("EVingress1")
        event = (await test_db.execute(select(WebhookEvent))).scalar_one()
        assert event.status == "pending"
        assert event.event_type == "transfer.updated"
        assert event.payload["_embedded"]["transfers"][0]["id"] == "TR1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, test_db: Any, queue: AsyncMock) -> None:
        """Test nothing is stored for an unsigned or tampered delivery."""
        body, _ = signed(EVENT)
        ingress = WebhookIngress(queue=queue)

        with pytest.raises(WebhookAuthError):
            await ingress.receive(test_db, body, "deadbeef")
        with pytest.raises(WebhookAuthError):
            await ingress.receive(test_db, body, None)

        count = await test_db.scalar(select(func.count()).select_from(WebhookEvent))
        assert count == 0
        queue.enqueue.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_body_is_ping(self, test_db: Any, queue: AsyncMock) -> None:
        """Test Finix's empty verification request is acknowledged."""
        response = await WebhookIngress(queue=queue).receive(
            test_db, b"", compute_signature(b"", SECRET)
        )

        assert response == {"ok": True, "ping": True}
        queue.enqueue.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_json(self, test_db: Any, queue: AsyncMock) -> None:
        """Test an unparseable body is a payload error."""
        body = b"{not json"
        with pytest.raises(WebhookPayloadError, match="not valid JSON"):
            await WebhookIngress(queue=queue).receive(
                test_db, body, compute_signature(body, SECRET)
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_envelope_fields(self, test_db: Any, queue: AsyncMock) -> None:
        """Test events without an id are refused."""
        body, signature = signed({"entity": "transfer", "type": "updated"})
        with pytest.raises(WebhookPayloadError):
            await WebhookIngress(queue=queue).receive(test_db, body, signature)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processed_duplicate_short_circuits(
        self, test_db: Any, queue: AsyncMock
    ) -> None:
        """Test a redelivery of a processed event is acknowledged without work."""
        body, signature = signed(EVENT)
        ingress = WebhookIngress(queue=queue)
        await ingress.receive(test_db, body, signature)
        event = (await test_db.execute(select(WebhookEvent))).scalar_one()
        event.status = "processed"
        await test_db.commit()
        queue.enqueue.reset_mock()

        response = await ingress.receive(test_db, body, signature)

        assert response["message"] == "Already processed"
        queue.enqueue.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unprocessed_duplicate_requeued(self, test_db: Any, queue: AsyncMock) -> None:
        """Test a redelivery of a pending event queues it again without a second row."""
        body, signature = signed(EVENT)
        ingress = WebhookIngress(queue=queue)

        await ingress.receive(test_db, body, signature)
        response = await ingress.receive(test_db, body, signature)

        assert response["message"] == "Webhook received"
        assert queue.enqueue.await_count == 2
        count = await test_db.scalar(select(func.count()).select_from(WebhookEvent))
        assert count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_in_flight_duplicate(self, test_db: Any, queue: AsyncMock) -> None:
        """Test a redelivery while a worker holds the event is not queued."""
        body, signature = signed(EVENT)
        ingress = WebhookIngress(queue=queue)
        await ingress.receive(test_db, body, signature)
        event = (await test_db.execute(select(WebhookEvent))).scalar_one()
        event.status = "processing"
        await test_db.commit()

        response = await ingress.receive(test_db, body, signature)

        assert response["message"] == "Processing"
        assert queue.enqueue.await_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_claim_requeued(self, test_db: Any, queue: AsyncMock) -> None:
        """Test a redelivery of an event whose worker died mid-processing is queued again."""
        body, signature = signed(EVENT)
        ingress = WebhookIngress(queue=queue)
        await ingress.receive(test_db, body, signature)
        event = (await test_db.execute(select(WebhookEvent))).scalar_one()
        event.status = "processing"
        event.processing_started_at = utcnow() - timedelta(
            seconds=ingress.settings.webhook_processing_lease_seconds + 60
        )
        await test_db.commit()

        response = await ingress.receive(test_db, body, signature)

        assert response["message"] == "Webhook received"
        assert queue.enqueue.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_queue_outage_still_acknowledges(self, test_db: Any, queue: AsyncMock) -> None:
        """Test the event is stored even when Redis is down."""
        queue.enqueue.side_effect = ConnectionError("redis down")
        body, signature = signed(EVENT)

        response = await WebhookIngress(queue=queue).receive(test_db, body, signature)

        assert response["ok"] is True
        count = await test_db.scalar(select(func.count()).select_from(WebhookEvent))
        assert count == 1
