"""
Payment API schemas.

Field names follow what checkout clients already send (``amount_cents``,
``accountRef``), so the schemas accept them unchanged.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentIntentRequest(BaseModel):
    """Request schema for creating a Stripe payment intent."""

    model_config = ConfigDict(extra="ignore")

    amount: Optional[Any] = Field(None, description="Amount in major currency units")
    amount_cents: Optional[Any] = Field(None, description="Amount in cents, preferred over amount")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    metadata: dict[str, Any] = Field(default_factory=dict)
    order: Optional[dict[str, Any]] = Field(None, description="Provisional order to create")
    meta: Optional[dict[str, Any]] = Field(None, description="Client metadata when no order is sent")


class PaymentIntentResponse(BaseModel):
    ok: bool = True
    clientSecret: Optional[str] = None
    id: str
    order: Optional[dict[str, Any]] = None


class MpesaPaymentRequest(BaseModel):
    """Request schema for initiating an M-Pesa STK push."""

    model_config = ConfigDict(extra="ignore")

    phone: Optional[str] = None
    amount: Optional[Any] = None
    accountRef: Optional[str] = None
    description: Optional[str] = None


class MpesaPaymentResponse(BaseModel):
    ok: bool = True
    checkoutId: str
    daraja: dict[str, Any]


class MpesaStatusResponse(BaseModel):
    ok: bool = True
    status: str
    info: dict[str, Any]
