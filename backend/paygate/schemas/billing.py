"""Pydantic schemas for billing and access endpoints"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class CheckoutRequest(BaseModel):
    internal_reference: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class SetupCardRequest(BaseModel):
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class ChargeRequest(BaseModel):
    internal_reference: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    """Query parameters the browser brought back from the processor"""
    payment_intent: Optional[str] = None
    payment_id: Optional[str] = None
    redirect_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    product_type: Optional[str] = None
    internal_reference: Optional[str] = None
    fanbases_product_id: Optional[str] = None
