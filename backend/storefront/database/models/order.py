"""
Order model.

Orders carry their line items, client metadata and gateway payment details
as JSONB documents. Status is free-form text; the canonical values live in
``storefront.services.orders.enums``. At most one order exists per
``(user_id, idempotency_key)`` when the key is set.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import BaseModel


class Order(BaseModel):
    """
    A checkout attempt and its fulfilment lifecycle.

    Attributes:
        order_id: Alternate client-facing identifier
        legacy_id: Identifier carried over from the previous document store
        user_id: Customer who placed the order
        vendor_id: Single vendor attributed to the order, null for mixed carts
        vendor_name: Denormalized display name of the vendor
        status: Lifecycle status text
        payment_status: unpaid, pending, paid or failed
        payment_details: Gateway payment id and raw gateway payload
        items: Serialized line items
        meta: Client metadata plus server-stamped idempotency fields
        idempotency_key: Deduplication key of the checkout attempt
        delivery_token: Secret the customer must present to confirm delivery
    """

    __tablename__ = "orders"

    order_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    legacy_id: Mapped[Optional[str]] = mapped_column("_id", Text, nullable=True)

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("vendor_profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    vendor_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    shipping_address: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    shipping_coordinates: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)

    status: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text("'processing'"), index=True
    )
    payment_status: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text("'unpaid'")
    )
    payment_method: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    items: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    meta: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    idempotency_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_by_admin: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_by_role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_orders_user_idempotency_key",
            "user_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("ix_orders_created_at", "created_at"),
        Index("ix_orders_payment_intent", text("(payment_details->>'stripePaymentIntentId')")),
        {"comment": "Customer orders"},
    )
