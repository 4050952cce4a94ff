"""
Marketplace escrow HTTP application.

Wires the order, refund, webhook and monitoring routers together and
renders every failure as ``{"success": false, "error": {...}}`` so clients
can branch on a stable code.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from core.errors import MarketplaceError
from database.connection import close_db, init_db
from monitoring.logging import setup_logging

from .dependencies import get_finix_client, get_webhook_queue
from .routes import monitoring_router, order_router, refund_router, webhook_router

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()
API_VERSION = "1.0.0"


def error_body(code: str, message: str, details: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message, "details": details}}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; close Redis, Finix and the engine on shutdown."""
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
    await init_db()

    yield

    logger.info("application_shutdown")
    for name, close in (
        ("webhook_queue", get_webhook_queue().close),
        ("finix_client", get_finix_client().close),
        ("database", close_db),
    ):
        try:
            await close()
        except Exception as e:
            logger.error("shutdown_close_failed", resource=name, error=str(e))


app = FastAPI(
    title="Marketplace Escrow",
    description=(
        "Order lifecycle for a peer-to-peer marketplace: listing reservation, "
        "Finix payments, webhook reconciliation and dual-approval refunds."
    ),
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind request id and acting user to every log line of the request."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        user_id=request.headers.get("X-User-Id"),
        method=request.method,
        path=request.url.path,
    )
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed", error=str(e), duration_seconds=time.time() - start_time
        )
        raise
    else:
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    """Render domain errors with their stable code and HTTP status."""
    logger.warning(
        "request_domain_error",
        error_code=exc.code,
        error=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code, content={"success": False, "error": exc.to_dict()}
    )


HTTP_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: "VALIDATION_ERROR",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "AUTHORIZATION_ERROR",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework and route-level HTTP errors share the domain error shape."""
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail), {}),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies share the VALIDATION_ERROR shape."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    message = errors[0]["message"] if errors else "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION_ERROR", str(message), {"errors": errors}),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "INTERNAL_ERROR", "An unexpected error occurred. Please try again later.", {}
        ),
    )


app.include_router(order_router)
app.include_router(refund_router)
app.include_router(webhook_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Service banner."""
    return {
        "service": settings.app_name,
        "version": API_VERSION,
        "environment": settings.app_env,
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
