"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator


class ReserveOrderRequest(BaseModel):
    """Request schema for reserving a listing."""

    listing_id: str = Field(..., description="Listing to reserve")

    model_config = {
        "json_schema_extra": {
            "examples": [{"listing_id": "3f1c2a5e-8d0b-4a53-9f7e-1c2d3e4f5a6b"}]
        }
    }


class AddressInput(BaseModel):
    """Billing address supplied with a payment token."""

    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class TokenizationRequest(BaseModel):
    """Request schema for the tokenization configuration."""

    idempotency_id: str = Field(..., description="Keys buyer identity creation")
    payment_type: Optional[str] = Field(default=None, description="card or bank")
    currency: Optional[str] = Field(default=None, description="USD or CAD override")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalise currency case."""
        return v.upper() if v else v


class PaymentRequest(BaseModel):
    """Request schema for processing a payment."""

    idempotency_id: str = Field(..., description="Forwarded to every Finix call")
    payment_token: Optional[str] = Field(default=None, description="Finix.js token")
    payment_instrument_id: Optional[str] = Field(
        default=None, description="Existing Finix payment instrument"
    )
    fraud_session_id: Optional[str] = Field(
        default=None, description="Overrides the order's fraud session id"
    )
    address: Optional[AddressInput] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "idempotency_id": "pay-7f2a9c",
                    "payment_token": "TKxxxxxxxxxxxxxxxx",
                    "address": {"line1": "1 Main St", "postal_code": "94105", "country": "USA"},
                }
            ]
        }
    }


class TrackingRequest(BaseModel):
    """Request schema for uploading shipment tracking."""

    tracking_number: str = Field(..., min_length=1)
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None


class CreateRefundRequest(BaseModel):
    """Request schema for a buyer refund request."""

    reason: str = Field(..., description="At least 10 characters")
    refund_amount: Optional[Union[int, float, str]] = Field(
        default=None, description="Minor units; defaults to the full transfer amount"
    )
    idempotency_id: Optional[str] = Field(
        default=None, description="Keys the eventual Finix reversal"
    )


class ProductReturnRequest(BaseModel):
    """Request schema for the buyer's return shipment."""

    tracking_number: str = Field(..., min_length=1)
    carrier: Optional[str] = None
    return_notes: Optional[str] = None


class ConfirmReturnRequest(BaseModel):
    """Request schema for the seller confirming receipt of a return."""

    confirmation_notes: Optional[str] = None


class ApproveRefundRequest(BaseModel):
    """Request schema for approving a refund."""

    approval_notes: Optional[str] = None


class DenyRefundRequest(BaseModel):
    """Request schema for denying a refund."""

    reason: str = Field(..., description="At least 10 characters")


class ErrorResponse(BaseModel):
    """Error body for domain errors."""

    error: Dict[str, Any] = Field(..., description="code, message and details")


class WebhookResponse(BaseModel):
    """Response schema for webhook ingress."""

    ok: bool = True
    ping: Optional[bool] = None
    message: Optional[str] = None
    event_id: Optional[str] = None
    status: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
