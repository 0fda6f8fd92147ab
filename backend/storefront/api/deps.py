"""
FastAPI dependencies for authentication and service wiring.

This module provides dependency functions that turn bearer access tokens
into a ``Requester`` and build the order and payment services on top of the
shared table store. Tests replace ``get_store``, ``get_stripe_client`` and
``get_pending_transaction_store`` through ``app.dependency_overrides``.
"""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger, set_user_id
from storefront.core.security import Requester, TokenError, decode_access_token
from storefront.database.connection import get_table_store
from storefront.database.store import TableStore
from storefront.services.orders.service import OrderService
from storefront.services.payments.mpesa.daraja_client import DarajaClient
from storefront.services.payments.mpesa.pending_store import (
    PendingTransactionStore,
    get_pending_store,
)
from storefront.services.payments.mpesa.service import MpesaService
from storefront.services.payments.service import StripePaymentService
from storefront.services.payments.stripe_client import StripeClient, get_stripe_client

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def get_store() -> TableStore:
    return get_table_store()


async def get_requester(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Requester:
    """
    Validate the bearer access token and return the caller.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        requester = decode_access_token(credentials.credentials)
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    set_user_id(requester.id)
    return requester


async def get_optional_requester(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[Requester]:
    """
    Return the caller when a valid token is sent, otherwise None.

    Used by checkout endpoints that also serve guests.
    """
    if credentials is None:
        return None
    try:
        return await get_requester(credentials)
    except HTTPException:
        logger.debug("Optional authentication failed, proceeding as anonymous")
        return None


def get_stripe_payment_service(
    store: Annotated[TableStore, Depends(get_store)],
    stripe_client: Annotated[StripeClient, Depends(get_stripe_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> StripePaymentService:
    return StripePaymentService(store, stripe_client=stripe_client, settings=settings)


def get_order_service(
    store: Annotated[TableStore, Depends(get_store)],
    payments: Annotated[StripePaymentService, Depends(get_stripe_payment_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> OrderService:
    """Order service whose replays are reconciled against Stripe."""
    return OrderService(store, settings=settings, reconciler=payments.reconcile_order)


async def get_pending_transaction_store(
    settings: Annotated[Settings, Depends(get_settings)],
) -> PendingTransactionStore:
    return await get_pending_store(settings)


def get_daraja_client(settings: Annotated[Settings, Depends(get_settings)]) -> DarajaClient:
    return DarajaClient(settings)


def get_mpesa_service(
    store: Annotated[PendingTransactionStore, Depends(get_pending_transaction_store)],
    daraja: Annotated[DarajaClient, Depends(get_daraja_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> MpesaService:
    return MpesaService(store, daraja=daraja, settings=settings)


CurrentRequester = Annotated[Requester, Depends(get_requester)]
OptionalRequester = Annotated[Optional[Requester], Depends(get_optional_requester)]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
StripeServiceDep = Annotated[StripePaymentService, Depends(get_stripe_payment_service)]
MpesaServiceDep = Annotated[MpesaService, Depends(get_mpesa_service)]
