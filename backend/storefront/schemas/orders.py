"""
Order API schemas.

Request bodies are deliberately permissive: checkout clients send items as
arrays or JSON strings and attach arbitrary metadata, and required-field
checks happen in the order service so the error names the missing fields.
Responses carry order rows as plain dictionaries.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderCreateRequest(BaseModel):
    """Request schema for creating an order."""

    model_config = ConfigDict(extra="ignore")

    total_amount: Optional[Any] = Field(None, description="Order total")
    items: Optional[Any] = Field(None, description="Line items, array or JSON string")
    shipping_address: Optional[Any] = Field(None, description="Delivery address")
    shipping_coordinates: Optional[Any] = Field(None, description="Delivery coordinates")
    name: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    payment_status: Optional[str] = Field(None, description="Initial payment status")
    payment_method: Optional[str] = Field(None, max_length=64)
    meta: Optional[dict[str, Any]] = Field(None, description="Client metadata")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None


class OrderStatusUpdateRequest(BaseModel):
    status: Optional[str] = Field(None, description="New status")
    vendor_id: Optional[str] = Field(None, description="Vendor reassignment (admins only)")


class MarkDeliveredRequest(BaseModel):
    email: Optional[str] = None
    delivery_token: Optional[str] = None
    require_token: bool = False


class ConfirmDeliveryRequest(BaseModel):
    delivery_token: Optional[str] = None


class OrderResponse(BaseModel):
    """Single order, flagged when it was returned instead of created."""

    order: dict[str, Any]
    idempotent: bool = False
    heuristic_matched: bool = False


class OrderListMeta(BaseModel):
    page: int
    per_page: int
    total: int


class OrderListResponse(BaseModel):
    orders: list[dict[str, Any]]
    meta: OrderListMeta
