"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreateRefundRequest,
    PaymentRequest,
    ReserveOrderRequest,
    TokenizationRequest,
)

__all__ = [
    "app",
    "CreateRefundRequest",
    "PaymentRequest",
    "ReserveOrderRequest",
    "TokenizationRequest",
]
