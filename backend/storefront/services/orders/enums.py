"""Order status and payment status values.

Order status is stored as free-form text: vendors and older clients write
variants such as ``"shipped"`` or ``"out_for_delivery"``. The enums below name
the canonical values, and the helpers classify arbitrary status text.
"""

from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    """Canonical order lifecycle statuses.

    ``processing`` -> in-transit variants / ``out for delivery`` ->
    ``delivered``. ``confirmed`` marks a payment-confirmed order and
    ``cancelled`` ends the lifecycle; both are terminal like ``delivered``.
    """

    PROCESSING = "processing"
    ORDER_PLACED = "order placed"
    IN_TRANSIT = "in transit"
    OUT_FOR_DELIVERY = "out for delivery"
    DELIVERED = "delivered"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    @property
    def display_name(self) -> str:
        return self.value.title()


class PaymentStatus(str, Enum):
    """Payment state of an order."""

    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED.value, OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value}
)

IN_TRANSIT_KEYWORDS = ("out for", "out_for", "transit", "shipped", "delivering", "out-for")


def normalize_status(status: Optional[str]) -> str:
    return str(status or "").strip().lower()


def is_terminal_status(status: Optional[str]) -> bool:
    """Check if a status text is terminal (delivered, confirmed or cancelled)."""
    return normalize_status(status) in TERMINAL_STATUSES


def is_in_transit_status(status: Optional[str]) -> bool:
    """Check if a status text reads like the order is on its way to the customer."""
    normalized = normalize_status(status)
    return any(keyword in normalized for keyword in IN_TRANSIT_KEYWORDS)
