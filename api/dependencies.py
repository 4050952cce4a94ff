"""
Request-scoped dependencies and process-wide service instances.

Services are built once per process; tests swap them through
``app.dependency_overrides``.
"""
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from core.audit import RequestContext
from core.orders import OrderService
from core.payment_pipeline import PaymentPipeline
from core.refunds import RefundService
from core.reservations import ReservationManager
from core.tokenization import TokenizationService
from integrations.finix_client import FinixClient
from integrations.webhook_ingress import WebhookIngress
from integrations.webhook_queue import WebhookQueue
from monitoring.health import HealthCheck


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """Acting user; token verification happens upstream of this service."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id


def get_request_context(request: Request) -> RequestContext:
    """Client IP (first X-Forwarded-For hop when present) and user agent."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return RequestContext(ip_address=ip_address, user_agent=request.headers.get("User-Agent"))


@lru_cache()
def get_finix_client() -> FinixClient:
    return FinixClient()


@lru_cache()
def get_webhook_queue() -> WebhookQueue:
    return WebhookQueue()


def get_reservation_manager() -> ReservationManager:
    return ReservationManager()


def get_order_service() -> OrderService:
    return OrderService()


def get_tokenization_service() -> TokenizationService:
    return TokenizationService(finix_client=get_finix_client())


def get_payment_pipeline() -> PaymentPipeline:
    return PaymentPipeline(finix_client=get_finix_client())


def get_refund_service() -> RefundService:
    return RefundService(finix_client=get_finix_client())


def get_webhook_ingress() -> WebhookIngress:
    return WebhookIngress(queue=get_webhook_queue())


def get_health_check() -> HealthCheck:
    return HealthCheck(queue=get_webhook_queue(), finix_client=get_finix_client())
