"""Order status state machine with role-based transition checks.

Admins and the vendor owning an order may set any status. A customer may
only move their own order to ``delivered``, only while it is in transit,
and only with the delivery token when the order has one. Orders that are
``delivered``, ``confirmed`` or ``cancelled`` never change status again.

The state machine validates transitions and builds the row changes; the
order service applies them through the repository.
"""

import secrets
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from storefront.core.logging import get_logger
from storefront.core.security import Requester
from storefront.services.orders.enums import (
    OrderStatus,
    is_in_transit_status,
    is_terminal_status,
    normalize_status,
)

logger = get_logger(__name__)


class StateTransitionError(Exception):
    """Raised when a status change is not allowed from the current status."""

    def __init__(
        self,
        message: str,
        current_state: Optional[str],
        target_state: Optional[str],
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


class TransitionForbiddenError(Exception):
    """Raised when the requester may not change the status of an order."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


def _tokens_match(expected: Any, supplied: Any) -> bool:
    if supplied is None or supplied == "":
        return False
    return secrets.compare_digest(str(expected), str(supplied))


class OrderStateMachine:
    """Validates order status transitions and builds their row updates."""

    def is_owner_vendor(self, order: Mapping[str, Any], requester: Requester) -> bool:
        vendor_id = order.get("vendor_id")
        return bool(vendor_id) and str(vendor_id) == str(requester.id)

    def ensure_mutable(self, order: Mapping[str, Any], target_status: str) -> None:
        """
        Reject any change to an order whose status is terminal.

        Raises:
            StateTransitionError: If the current status is terminal
        """
        current = normalize_status(order.get("status"))
        if is_terminal_status(current):
            raise StateTransitionError(
                f"Order already {current}, cannot change status to {target_status}",
                current_state=current,
                target_state=target_status,
                order_id=order.get("id"),
            )

    def validate_status_update(
        self,
        order: Mapping[str, Any],
        target_status: str,
        requester: Requester,
        is_admin: bool,
    ) -> None:
        """
        Validate a direct status update by an admin or the owning vendor.

        Raises:
            TransitionForbiddenError: If the requester is neither
            StateTransitionError: If the order is terminal
        """
        if not (is_admin or self.is_owner_vendor(order, requester)):
            raise TransitionForbiddenError(
                "Forbidden - only admins or the vendor who owns this order may update status",
                order_id=order.get("id"),
                requester_id=requester.id,
            )
        self.ensure_mutable(order, target_status)

    def validate_mark_delivered(
        self,
        order: Mapping[str, Any],
        requester: Requester,
        is_admin: bool,
        email: Optional[str] = None,
        delivery_token: Optional[str] = None,
        require_token: bool = False,
    ) -> None:
        """
        Validate marking an order delivered on behalf of the merchant.

        Non-admins supplying ``email`` must match the order email. The
        delivery token, when the order has one, is required unless the
        requester is an admin who did not ask for it to be enforced.

        Raises:
            TransitionForbiddenError: On a role, email or token mismatch
            StateTransitionError: If the order is terminal
        """
        if not (is_admin or self.is_owner_vendor(order, requester)):
            raise TransitionForbiddenError(
                "Forbidden - only admins or the vendor who owns this order may mark it delivered",
                order_id=order.get("id"),
            )

        self.ensure_mutable(order, OrderStatus.DELIVERED.value)

        if email and not is_admin:
            if str(order.get("email") or "").lower() != str(email).lower():
                raise TransitionForbiddenError(
                    "Provided email does not match order", order_id=order.get("id")
                )

        expected_token = order.get("delivery_token")
        if expected_token and (not is_admin or require_token):
            if not _tokens_match(expected_token, delivery_token):
                raise TransitionForbiddenError("Invalid delivery token", order_id=order.get("id"))

    def validate_customer_confirmation(
        self,
        order: Mapping[str, Any],
        requester: Requester,
        delivery_token: Optional[str] = None,
    ) -> None:
        """
        Validate a customer confirming receipt of their order.

        Raises:
            TransitionForbiddenError: If the requester did not place the
                order, or the delivery token is missing or wrong
            StateTransitionError: If the order is not in transit
        """
        owner = order.get("user_id")
        if not owner or str(owner) != str(requester.id):
            raise TransitionForbiddenError(
                "Forbidden - only the purchasing user may confirm delivery",
                order_id=order.get("id"),
            )

        current = normalize_status(order.get("status"))
        if is_terminal_status(current) or not is_in_transit_status(current):
            raise StateTransitionError(
                f"Order cannot be confirmed by customer at status: {order.get('status')}",
                current_state=current,
                target_state=OrderStatus.DELIVERED.value,
                order_id=order.get("id"),
            )

        expected_token = order.get("delivery_token")
        if expected_token and not _tokens_match(expected_token, delivery_token):
            raise TransitionForbiddenError(
                "Invalid or missing delivery token", order_id=order.get("id")
            )

    def delivered_changes(
        self,
        requester: Optional[Requester] = None,
        is_admin: bool = False,
    ) -> dict[str, Any]:
        """Row changes for a transition to ``delivered``."""
        changes: dict[str, Any] = {
            "status": OrderStatus.DELIVERED.value,
            "delivered_at": datetime.now(timezone.utc),
        }
        if requester is not None:
            changes["updated_by"] = requester.id
            changes["updated_by_role"] = requester.role
            if is_admin:
                changes["delivered_by_admin"] = requester.id
        logger.debug("Delivered transition prepared", admin=is_admin)
        return changes
