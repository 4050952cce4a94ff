"""
API routes for the marketplace order lifecycle.
"""
import time
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import RequestContext
from core.errors import WebhookPayloadError
from core.orders import OrderService
from core.payment_pipeline import PaymentPipeline, resolve_payment_source
from core.refunds import RefundService
from core.reservations import ReservationManager
from core.tokenization import TokenizationService, overrides_from_dict
from database.connection import get_db
from integrations.webhook_ingress import WebhookAuthError, WebhookIngress
from monitoring.health import HealthCheck

from .dependencies import (
    get_current_user_id,
    get_health_check,
    get_order_service,
    get_payment_pipeline,
    get_refund_service,
    get_request_context,
    get_reservation_manager,
    get_tokenization_service,
    get_webhook_ingress,
)
from .schemas import (
    ApproveRefundRequest,
    ConfirmReturnRequest,
    CreateRefundRequest,
    DenyRefundRequest,
    HealthCheckResponse,
    PaymentRequest,
    ProductReturnRequest,
    ReserveOrderRequest,
    TokenizationRequest,
    TrackingRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
refund_router = APIRouter(prefix="/refund-requests", tags=["refunds"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


@order_router.post(
    "/reserve",
    status_code=status.HTTP_201_CREATED,
    summary="Reserve a listing",
    description="Atomically claim a listing and create a reserved order",
)
async def reserve_listing(
    request: ReserveOrderRequest,
    user_id: str = Depends(get_current_user_id),
    manager: ReservationManager = Depends(get_reservation_manager),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Reserve a listing for the calling buyer."""
    return await manager.reserve(db, request.listing_id, user_id)


@order_router.get("/buyer", summary="List the caller's purchases")
async def list_buyer_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await service.list_buyer_orders(db, user_id, status_filter, limit, offset)


@order_router.get("/seller", summary="List the caller's sales")
async def list_seller_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await service.list_seller_orders(db, user_id, status_filter, limit, offset)


@order_router.get("/{order_id}", summary="Get an order")
async def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.get_order(db, order_id, user_id)


@order_router.get("/{order_id}/dispute", summary="Get chargeback details for an order")
async def get_order_dispute(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.get_dispute(db, order_id, user_id)


@order_router.post(
    "/{order_id}/tokenization",
    summary="Get tokenization configuration",
    description="Create or reuse the buyer identity and return client tokenization settings",
)
async def get_tokenization_config(
    order_id: str,
    request: TokenizationRequest,
    user_id: str = Depends(get_current_user_id),
    service: TokenizationService = Depends(get_tokenization_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    overrides = overrides_from_dict(request.model_dump(exclude={"idempotency_id"}))
    return await service.get_tokenization_config(
        db, order_id, user_id, request.idempotency_id, overrides
    )


@order_router.post(
    "/{order_id}/payment",
    summary="Process a payment",
    description="Charge a token or saved instrument; the order ends in processing",
)
async def process_payment(
    order_id: str,
    request: PaymentRequest,
    user_id: str = Depends(get_current_user_id),
    pipeline: PaymentPipeline = Depends(get_payment_pipeline),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    start_time = time.time()
    source = resolve_payment_source(
        payment_token=request.payment_token,
        payment_instrument_id=request.payment_instrument_id,
        address=request.address.model_dump() if request.address else None,
    )
    result = await pipeline.process_payment(
        db,
        order_id,
        user_id,
        request.idempotency_id,
        source,
        fraud_session_id=request.fraud_session_id,
    )
    logger.info(
        "api_process_payment_success",
        order_id=order_id,
        status=result["status"],
        duration_seconds=time.time() - start_time,
    )
    return result


@order_router.post("/{order_id}/tracking", summary="Upload shipment tracking")
async def upload_tracking(
    order_id: str,
    request: TrackingRequest,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.upload_tracking(
        db,
        order_id,
        user_id,
        request.tracking_number,
        carrier=request.carrier,
        tracking_url=request.tracking_url,
        context=context,
    )


@order_router.post("/{order_id}/confirm-delivery", summary="Confirm delivery")
async def confirm_delivery(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.confirm_delivery(db, order_id, user_id, context=context)


@order_router.post("/{order_id}/cancel", summary="Cancel a reserved order")
async def cancel_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.cancel_order(db, order_id, user_id, context=context)


@order_router.post(
    "/{order_id}/refund-requests",
    status_code=status.HTTP_201_CREATED,
    summary="Request a refund",
)
async def request_refund(
    order_id: str,
    request: CreateRefundRequest,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.request_refund(
        db,
        order_id,
        user_id,
        request.reason,
        refund_amount=request.refund_amount,
        idempotency_id=request.idempotency_id,
        context=context,
    )


@refund_router.get("", summary="List refund requests")
async def list_refund_requests(
    order_id: Optional[str] = Query(default=None),
    role: Optional[str] = Query(default=None, pattern="^(buyer|seller)$"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user_id: str = Depends(get_current_user_id),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await service.get_refund_requests(
        db, user_id, order_id=order_id, role=role, status=status_filter
    )


@refund_router.get("/{refund_request_id}", summary="Get a refund request")
async def get_refund_request(
    refund_request_id: str,
    user_id: str = Depends(get_current_user_id),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.get_refund_request(db, refund_request_id, user_id)


@refund_router.post("/{refund_request_id}/return", summary="Submit product return")
async def submit_product_return(
    refund_request_id: str,
    request: ProductReturnRequest,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.submit_product_return(
        db,
        refund_request_id,
        user_id,
        request.tracking_number,
        carrier=request.carrier,
        return_notes=request.return_notes,
        context=context,
    )


@refund_router.post("/{refund_request_id}/confirm-return", summary="Confirm product return")
async def confirm_product_return(
    refund_request_id: str,
    request: ConfirmReturnRequest,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.confirm_product_return(
        db,
        refund_request_id,
        user_id,
        confirmation_notes=request.confirmation_notes,
        context=context,
    )


@refund_router.post("/{refund_request_id}/approve", summary="Approve and execute a refund")
async def approve_refund_request(
    refund_request_id: str,
    request: ApproveRefundRequest,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.approve_refund_request(
        db,
        refund_request_id,
        user_id,
        approval_notes=request.approval_notes,
        context=context,
    )


@refund_router.post("/{refund_request_id}/deny", summary="Deny a refund")
async def deny_refund_request(
    refund_request_id: str,
    request: DenyRefundRequest,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.deny_refund_request(
        db, refund_request_id, user_id, request.reason, context=context
    )


@refund_router.delete("/{refund_request_id}", summary="Cancel a refund request")
async def cancel_refund_request(
    refund_request_id: str,
    user_id: str = Depends(get_current_user_id),
    context: RequestContext = Depends(get_request_context),
    service: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await service.cancel_refund_request(db, refund_request_id, user_id, context=context)


@webhook_router.post(
    "/finix",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Finix webhook endpoint",
    description="Authenticate, store and enqueue Finix webhook events",
)
async def finix_webhook(
    request: Request,
    finix_signature: Optional[str] = Header(default=None, alias="Finix-Signature"),
    authorization: Optional[str] = Header(default=None),
    ingress: WebhookIngress = Depends(get_webhook_ingress),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle Finix webhook deliveries.

    The signature covers the raw body, so it is read before any parsing.
    """
    body = await request.body()
    try:
        return await ingress.receive(db, body, finix_signature, authorization)
    except WebhookAuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except WebhookPayloadError as e:
        logger.warning("api_webhook_bad_payload", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check health of all system dependencies",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Overall health check."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Kubernetes liveness probe."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(
    response: Response, health_check: HealthCheck = Depends(get_health_check)
) -> Dict[str, Any]:
    """Kubernetes readiness probe; 503 while any dependency is down."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
