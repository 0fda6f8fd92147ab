"""
Payment API endpoints for Stripe and M-Pesa.

Two routers are exposed. ``stripe_router`` serves payment intent creation
and the Stripe webhook, which reads the raw request body for signature
verification. ``router`` serves the M-Pesa STK push flow: initiation,
Daraja's asynchronous callback and status polling.

Failures are reported in the ``{"ok": false, "error": ...}`` envelope
checkout clients read. Gateway callbacks are always acknowledged.
"""

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Header, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from storefront.api.deps import MpesaServiceDep, OptionalRequester, StripeServiceDep
from storefront.api.rate_limit import limiter
from storefront.core.config import get_settings
from storefront.core.logging import get_logger
from storefront.schemas.payments import (
    MpesaPaymentRequest,
    MpesaPaymentResponse,
    MpesaStatusResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
)
from storefront.services.payments.mpesa.daraja_client import DarajaError, DarajaResponseError
from storefront.services.payments.mpesa.service import (
    MpesaConfigurationError,
    MpesaNotFoundError,
    MpesaValidationError,
    StkPushInitiationError,
)
from storefront.services.payments.service import (
    PaymentConfigurationError,
    PaymentServiceError,
    PaymentValidationError,
    WebhookVerificationError,
)

logger = get_logger(__name__)

stripe_router = APIRouter(prefix="/stripe", tags=["payments"])
router = APIRouter(prefix="/payments", tags=["payments"])


def error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message, **extra})


@stripe_router.post(
    "/create-payment-intent",
    response_model=PaymentIntentResponse,
    summary="Create payment intent",
    description="Create a Stripe payment intent, creating a provisional order when one is sent",
)
@limiter.limit(get_settings().rate_limit_payments)
async def create_payment_intent(
    request: Request,
    body: PaymentIntentRequest,
    requester: OptionalRequester,
    service: StripeServiceDep,
) -> Any:
    """
    Create a Stripe payment intent.

    Returns:
        ``ok``, the intent's ``clientSecret`` and ``id``, and the provisional
        order when one was created or found
    """
    try:
        return await service.create_payment_intent(body, requester, headers=request.headers)
    except PaymentValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, e.message)
    except PaymentServiceError as e:
        logger.error(
            "Payment intent creation failed",
            error=e.message,
            error_type=type(e).__name__,
        )
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, e.message)


@stripe_router.post(
    "/webhook",
    summary="Handle Stripe webhook",
    description="Apply Stripe payment events to orders",
)
async def stripe_webhook(
    request: Request,
    service: StripeServiceDep,
    stripe_signature: Annotated[Optional[str], Header(alias="stripe-signature")] = None,
) -> Any:
    """
    Handle a Stripe webhook event.

    Returns 400 when the event cannot be verified; every verified event is
    acknowledged with 200.
    """
    payload = await request.body()
    try:
        return await service.handle_webhook(payload, stripe_signature)
    except WebhookVerificationError as e:
        logger.warning("Webhook rejected", error=e.message)
        return PlainTextResponse(f"Webhook Error: {e.message}", status_code=status.HTTP_400_BAD_REQUEST)
    except PaymentConfigurationError as e:
        return PlainTextResponse(e.message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.post(
    "/mpesa",
    response_model=MpesaPaymentResponse,
    summary="Initiate M-Pesa payment",
    description="Send an STK push prompt to the customer's phone",
)
@limiter.limit(get_settings().rate_limit_payments)
async def initiate_mpesa_payment(
    request: Request,
    body: MpesaPaymentRequest,
    service: MpesaServiceDep,
) -> Any:
    try:
        return await service.initiate_stk_push(
            body.phone, body.amount, account_ref=body.accountRef, description=body.description
        )
    except MpesaValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, e.message)
    except MpesaConfigurationError as e:
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, e.message)
    except StkPushInitiationError as e:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            e.message,
            daraja=e.daraja,
            darajaMessage=e.daraja_message,
        )
    except DarajaResponseError as e:
        return error_response(status.HTTP_502_BAD_GATEWAY, e.message, darajaRaw=e.raw)
    except DarajaError as e:
        logger.error("M-Pesa initiation error", error=e.message, error_type=type(e).__name__)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, e.message)


@router.post(
    "/mpesa/callback",
    summary="M-Pesa callback",
    description="Receive Daraja's STK push result",
)
async def mpesa_callback(request: Request, service: MpesaServiceDep) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        logger.warning("M-Pesa callback body is not JSON")
        body = {}
    return await service.handle_callback(body)


@router.get(
    "/mpesa/status",
    response_model=MpesaStatusResponse,
    summary="M-Pesa payment status",
)
async def mpesa_status(
    service: MpesaServiceDep,
    checkout_id: Optional[str] = Query(None, alias="checkoutId"),
) -> Any:
    try:
        return await service.get_status(checkout_id)
    except MpesaValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, e.message)
    except MpesaNotFoundError as e:
        return error_response(status.HTTP_404_NOT_FOUND, e.message)
