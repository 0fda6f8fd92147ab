"""
Order API endpoints.

This module implements the FastAPI router for idempotent order creation,
role-scoped listing and lookup, and status transitions including delivery
marking by merchants and delivery confirmation by customers.
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from storefront.api.deps import CurrentRequester, OrderServiceDep
from storefront.api.rate_limit import limiter
from storefront.core.config import get_settings
from storefront.core.logging import get_logger
from storefront.database.store import StoreError
from storefront.schemas.orders import (
    ConfirmDeliveryRequest,
    MarkDeliveredRequest,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
)
from storefront.services.orders.service import (
    OrderCreationError,
    OrderNotFoundError,
    OrderPermissionError,
    OrderValidationError,
)
from storefront.services.orders.state_machine import (
    StateTransitionError,
    TransitionForbiddenError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def to_http_error(error: Exception) -> HTTPException:
    """Translate an order service error into an HTTP error."""
    if isinstance(error, (OrderValidationError, StateTransitionError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.message)
    if isinstance(error, OrderNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)
    if isinstance(error, (OrderPermissionError, TransitionForbiddenError)):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=error.message)
    if isinstance(error, (OrderCreationError, StoreError)):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message
        )
    raise error


ORDER_ERRORS = (
    OrderValidationError,
    OrderNotFoundError,
    OrderPermissionError,
    OrderCreationError,
    StateTransitionError,
    TransitionForbiddenError,
    StoreError,
)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Create an order, or return the order already created for the same idempotency key",
)
@limiter.limit(get_settings().rate_limit_orders)
async def create_order(
    request: Request,
    response: Response,
    body: OrderCreateRequest,
    requester: CurrentRequester,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Create an order.

    The ``Idempotency-Key`` header (or ``meta.idempotency_key``) makes
    retries safe: a repeated request returns the original order with
    ``idempotent`` set and status 200.

    Raises:
        HTTPException: 400 on invalid input, 500 if the order cannot be stored
    """
    try:
        result = await service.create_order(body, requester, headers=request.headers)
    except ORDER_ERRORS as e:
        logger.warning(
            "Order creation failed",
            user_id=requester.id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise to_http_error(e) from e

    if result.idempotent:
        response.status_code = status.HTTP_200_OK
    return OrderResponse(
        order=result.order,
        idempotent=result.idempotent,
        heuristic_matched=result.heuristic_matched,
    )


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
    description="List orders visible to the caller, newest first",
)
async def list_orders(
    requester: CurrentRequester,
    service: OrderServiceDep,
    page: int = Query(1, description="Page number"),
    per_page: int = Query(20, description="Orders per page, at most 100"),
) -> dict[str, Any]:
    try:
        return await service.list_orders(requester, page=page, per_page=per_page)
    except StoreError as e:
        logger.error("Failed to list orders", user_id=requester.id, error=e.message)
        raise to_http_error(e) from e


@router.get(
    "/status-summary",
    response_model=list[dict[str, Any]],
    summary="Order status summary",
)
async def status_summary(
    requester: CurrentRequester,
    service: OrderServiceDep,
) -> list[dict[str, Any]]:
    try:
        return await service.status_summary()
    except StoreError as e:
        logger.error("Failed to load order status summary", error=e.message)
        raise to_http_error(e) from e


@router.get(
    "/{order_ref}",
    response_model=OrderResponse,
    summary="Get order",
    description="Get an order by id, order number, legacy id, idempotency key or client timestamp",
)
async def get_order(
    order_ref: str,
    requester: CurrentRequester,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.get_order(order_ref, requester)
    except ORDER_ERRORS as e:
        raise to_http_error(e) from e
    return OrderResponse(order=order)


@router.put(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
    description="Set the status of an order (admins and the owning vendor)",
)
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdateRequest,
    requester: CurrentRequester,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Update the status of an order.

    Raises:
        HTTPException: 400 for a missing status, invalid vendor id or terminal
            order; 403 for callers other than admins and the owning vendor;
            404 for unknown orders
    """
    try:
        order = await service.update_status(
            order_id, body.status, requester, vendor_id=body.vendor_id
        )
    except ORDER_ERRORS as e:
        logger.warning(
            "Order status update rejected",
            order_id=order_id,
            user_id=requester.id,
            error=str(e),
        )
        raise to_http_error(e) from e
    return OrderResponse(order=order)


@router.patch(
    "/{order_id}/delivered",
    response_model=OrderResponse,
    summary="Mark order delivered",
)
async def mark_order_delivered(
    order_id: str,
    requester: CurrentRequester,
    service: OrderServiceDep,
    body: Optional[MarkDeliveredRequest] = None,
) -> OrderResponse:
    body = body or MarkDeliveredRequest()
    try:
        order = await service.mark_delivered(
            order_id,
            requester,
            email=body.email,
            delivery_token=body.delivery_token,
            require_token=body.require_token,
        )
    except ORDER_ERRORS as e:
        raise to_http_error(e) from e
    return OrderResponse(order=order)


@router.post(
    "/{order_id}/confirm-delivery",
    response_model=OrderResponse,
    summary="Confirm delivery",
    description="Confirm receipt of an in-transit order (purchasing customer only)",
)
async def confirm_delivery(
    order_id: str,
    requester: CurrentRequester,
    service: OrderServiceDep,
    body: Optional[ConfirmDeliveryRequest] = None,
) -> OrderResponse:
    body = body or ConfirmDeliveryRequest()
    try:
        order = await service.confirm_delivery(
            order_id, requester, delivery_token=body.delivery_token
        )
    except ORDER_ERRORS as e:
        raise to_http_error(e) from e
    return OrderResponse(order=order)
