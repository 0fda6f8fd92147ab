"""Order creation, lookup and status transitions."""

from storefront.services.orders.enums import OrderStatus, PaymentStatus
from storefront.services.orders.repository import OrderRepository
from storefront.services.orders.service import (
    OrderCreationError,
    OrderNotFoundError,
    OrderPermissionError,
    OrderResult,
    OrderService,
    OrderServiceError,
    OrderValidationError,
)
from storefront.services.orders.state_machine import (
    OrderStateMachine,
    StateTransitionError,
    TransitionForbiddenError,
)

__all__ = [
    "OrderCreationError",
    "OrderNotFoundError",
    "OrderPermissionError",
    "OrderRepository",
    "OrderResult",
    "OrderService",
    "OrderServiceError",
    "OrderStateMachine",
    "OrderStatus",
    "OrderValidationError",
    "PaymentStatus",
    "StateTransitionError",
    "TransitionForbiddenError",
]
