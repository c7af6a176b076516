"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(
        ..., description="processed, duplicate, ignored or unknown_invoice"
    )
    event_id: Optional[str] = Field(default=None, description="Provider event ID")
    invoice_id: Optional[str] = Field(default=None, description="Reconciled invoice ID")
    invoice_status: Optional[str] = Field(default=None, description="Invoice status after handling")
    applied: Optional[bool] = Field(default=None, description="Whether the event changed the invoice")


class CheckoutReturnResponse(BaseModel):
    """Response schema for the pages a payer lands on after checkout."""

    status: str = Field(..., description="success or cancelled")
    reference: Optional[str] = Field(default=None, description="Checkout reference")
    message: str = Field(..., description="Message shown to the payer")
