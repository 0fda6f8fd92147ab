"""
Stripe payment bridge.

This module implements the StripePaymentService class: payment intent
creation with an optional provisional order, webhook handling that applies
payment outcomes to orders, and reconciliation of an order against the
intent recorded on it.

A provisional order is created before the intent so that the intent's
metadata can name it. Creating it is idempotent under the same key
precedence as order creation, tolerates a stale schema cache, and never
blocks creation of the intent itself.
"""

import asyncio
import json
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger, log_performance, set_idempotency_key
from storefront.core.security import Requester
from storefront.database.store import StoreError, TableStore, UniqueViolationError
from storefront.schemas.payments import PaymentIntentRequest
from storefront.services.catalog.identifiers import is_uuid
from storefront.services.orders.enums import PaymentStatus
from storefront.services.orders.idempotency import derive_key
from storefront.services.orders.line_items import (
    ItemsFormatError,
    LineItem,
    OrderMeta,
    PaymentDetails,
    encode_items,
    parse_items_payload,
)
from storefront.services.orders.repository import OrderRepository, utcnow
from storefront.services.orders.service import (
    OrderValidationError,
    parse_total_amount,
    present_order,
)
from storefront.services.payments.reconciliation import PaymentReconciler
from storefront.services.payments.stripe_client import (
    StripeClient,
    StripeClientError,
    StripeSignatureError,
)

logger = get_logger(__name__)

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
ANONYMOUS_KEY_SCOPE = "pi"


class PaymentServiceError(Exception):
    """Base exception for payment service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class PaymentValidationError(PaymentServiceError):
    """Exception for invalid payment requests."""


class PaymentConfigurationError(PaymentServiceError):
    """Exception for a payment gateway that is not configured."""


class WebhookVerificationError(PaymentServiceError):
    """Exception for webhook events that cannot be trusted."""


def amount_to_cents(amount: Any, amount_cents: Any) -> int:
    """
    Payment amount in cents, preferring an explicit cent amount.

    Raises:
        PaymentValidationError: If the amount is missing, non-numeric,
            non-finite or not positive
    """
    if amount_cents is None and amount is None:
        raise PaymentValidationError("amount or amount_cents required")
    try:
        value = float(amount_cents if amount_cents is not None else amount)
    except (TypeError, ValueError) as e:
        raise PaymentValidationError("invalid amount") from e
    if amount_cents is None:
        value *= 100
    if not math.isfinite(value) or value <= 0:
        raise PaymentValidationError("invalid amount")
    return int(round(value))


def _provisional_items(raw: Any) -> list[Any]:
    if raw is None:
        return []
    try:
        return encode_items([LineItem.model_validate(item) for item in parse_items_payload(raw)])
    except (ItemsFormatError, ValidationError):
        return raw if isinstance(raw, list) else []


class StripePaymentService:
    """
    Stripe payment bridge between checkout clients, orders and the gateway.

    Attributes:
        repository: Order repository
        stripe_client: Stripe API client wrapper
        reconciler: Applies payment outcomes to orders
    """

    def __init__(
        self,
        store: TableStore,
        stripe_client: Optional[StripeClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = OrderRepository(
            store, max_write_attempts=self.settings.schema_drift_max_attempts
        )
        self.stripe_client = stripe_client or StripeClient()
        self.reconciler = PaymentReconciler(self.repository, self.settings)

    def _ensure_configured(self) -> None:
        if not self.stripe_client.configured:
            raise PaymentConfigurationError("Stripe not configured")

    async def create_payment_intent(
        self,
        request: PaymentIntentRequest,
        requester: Optional[Requester] = None,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Create a payment intent, creating the provisional order first when sent.

        Args:
            request: Amount, currency, metadata and optional provisional order
            requester: Authenticated caller, if any
            headers: Request headers, consulted for an idempotency key

        Returns:
            Dictionary with ``ok``, ``clientSecret``, ``id`` and ``order``

        Raises:
            PaymentConfigurationError: If Stripe is not configured
            PaymentValidationError: If the amount is invalid
            PaymentServiceError: If Stripe rejects the intent
        """
        self._ensure_configured()
        cents = amount_to_cents(request.amount, request.amount_cents)

        client_order = request.order if isinstance(request.order, dict) else None
        body_meta = dict((client_order or {}).get("meta") or request.meta or {})
        client_ts = body_meta.get("client_ts")

        owner_id = self._owner_id(client_order, requester)
        key = derive_key(headers, body_meta, client_ts, owner_id or ANONYMOUS_KEY_SCOPE)
        set_idempotency_key(key)

        order: Optional[dict[str, Any]] = None
        with log_performance(logger, "create_payment_intent", amount_cents=cents):
            if client_order is not None:
                order = await self._provisional_order(
                    client_order, owner_id, body_meta, key, client_ts, cents
                )

            metadata = dict(request.metadata or {})
            if order and order.get("id"):
                metadata["order_id"] = str(order["id"])
            if key:
                metadata["idempotency_key"] = key
            if client_ts and not metadata.get("client_ts"):
                metadata["client_ts"] = str(client_ts)

            currency = request.currency or self.settings.stripe_currency
            try:
                intent = await asyncio.to_thread(
                    self.stripe_client.create_payment_intent, cents, currency, metadata
                )
            except StripeClientError as e:
                logger.error(
                    "Stripe rejected payment intent",
                    error=e.message,
                    code=e.code,
                    order_id=order.get("id") if order else None,
                )
                raise PaymentServiceError(e.message, code=e.code) from e

            if order and order.get("id"):
                order = await self._attach_intent(order, intent["id"])

        return {
            "ok": True,
            "clientSecret": intent.get("client_secret"),
            "id": intent["id"],
            "order": present_order(order) if order else None,
        }

    @staticmethod
    def _owner_id(client_order: Optional[Mapping[str, Any]], requester: Optional[Requester]) -> Optional[str]:
        if requester is not None:
            return requester.id
        candidate = (client_order or {}).get("user_id")
        return str(candidate) if is_uuid(candidate) else None

    async def _provisional_order(
        self,
        client_order: Mapping[str, Any],
        owner_id: Optional[str],
        body_meta: dict[str, Any],
        key: Optional[str],
        client_ts: Any,
        cents: int,
    ) -> Optional[dict[str, Any]]:
        """Find or create the provisional order; failures yield None."""
        if key and owner_id:
            existing = await self.repository.find_by_idempotency_key(owner_id, key)
            if existing:
                logger.info("Reusing provisional order for idempotency key", order_id=existing.get("id"))
                return existing

        meta = OrderMeta.model_validate(body_meta)
        meta.server_ts = datetime.now(timezone.utc).isoformat()
        if key:
            meta.idempotency_key = key
        elif client_ts:
            meta.client_ts = client_ts

        vendor_id = client_order.get("vendor_id")
        try:
            total_amount = parse_total_amount(client_order.get("total_amount"))
        except OrderValidationError:
            logger.info(
                "Provisional order total invalid; using intent amount",
                total_amount=client_order.get("total_amount"),
            )
            total_amount = Decimal(cents) / 100
        payload: dict[str, Any] = {
            "user_id": owner_id,
            "vendor_id": str(vendor_id) if is_uuid(vendor_id) else None,
            "name": client_order.get("name"),
            "email": client_order.get("email"),
            "shipping_address": client_order.get("shipping_address"),
            "shipping_coordinates": client_order.get("shipping_coordinates"),
            "total_amount": total_amount,
            "items": _provisional_items(client_order.get("items")),
            "payment_method": client_order.get("payment_method"),
            "payment_status": PaymentStatus.PENDING.value,
            "payment_details": client_order.get("payment_details") or {},
            "meta": meta.to_storage(),
        }
        if key:
            payload["idempotency_key"] = key

        try:
            order = await self.repository.insert_with_drift_retry(payload)
            logger.info("Provisional order created", order_id=order.get("id"))
            return order
        except UniqueViolationError as e:
            logger.info("Provisional order already exists; looking it up", error=e.message)
            if not key:
                return None
            existing = None
            if owner_id:
                existing = await self.repository.find_by_idempotency_key(owner_id, key)
            return existing or await self.repository.find_by_meta_idempotency_key(key)
        except StoreError as e:
            logger.warning(
                "Provisional order insert failed; continuing without it",
                error=e.message,
                code=e.code,
            )
            return None

    async def _attach_intent(self, order: dict[str, Any], intent_id: str) -> dict[str, Any]:
        details = PaymentDetails.from_storage(order.get("payment_details")).merged(
            stripePaymentIntentId=intent_id
        )
        try:
            updated = await self.repository.update_dropping_unknown(
                str(order["id"]),
                {"payment_details": details, "updated_at": utcnow()},
                droppable=("payment_details",),
            )
        except StoreError as e:
            logger.warning(
                "Failed to attach payment intent to provisional order",
                order_id=order.get("id"),
                payment_intent_id=intent_id,
                error=e.message,
            )
            return order
        return updated or order

    def _verify_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """
        Verify and parse a webhook payload.

        A configured signing secret makes the signature mandatory. Without
        one, unsigned events are only accepted when explicitly allowed.

        Raises:
            WebhookVerificationError: If the event cannot be trusted
        """
        if self.stripe_client.webhook_secret:
            if not signature:
                raise WebhookVerificationError("Missing Stripe-Signature header")
            try:
                return self.stripe_client.construct_webhook_event(payload, signature)
            except StripeSignatureError as e:
                raise WebhookVerificationError(e.message, code=e.code) from e

        if not self.settings.stripe_allow_unsigned_webhooks:
            raise WebhookVerificationError("Webhook signing secret not configured")

        try:
            event = json.loads(payload.decode("utf-8") or "{}")
        except ValueError as e:
            raise WebhookVerificationError("Invalid webhook payload") from e
        if not isinstance(event, dict):
            raise WebhookVerificationError("Invalid webhook payload")
        logger.warning(
            "Accepting unverified webhook event",
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return event

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """
        Handle a Stripe webhook event.

        Every verified event is acknowledged, whether or not an order was
        matched or the event type is handled.

        Args:
            payload: Raw webhook payload bytes
            signature: ``Stripe-Signature`` header value

        Returns:
            Acknowledgement body

        Raises:
            PaymentConfigurationError: If Stripe is not configured
            WebhookVerificationError: If the event cannot be verified
        """
        self._ensure_configured()
        event = self._verify_event(payload, signature)
        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}

        with log_performance(logger, "stripe_webhook", event_type=event_type):
            if event_type == PAYMENT_INTENT_SUCCEEDED:
                metadata = intent.get("metadata") or {}
                set_idempotency_key(metadata.get("idempotency_key"))
                match = await self.reconciler.match_succeeded(intent)
                if match is None:
                    return {"received": True, "message": "processed but no matching order found"}
                response: dict[str, Any] = {"received": True, "matched_by": match.matched_by}
                if match.heuristic:
                    response.update(heuristicMatched=True, orderId=match.order.get("id"))
                return response

            if event_type == PAYMENT_INTENT_FAILED:
                order_id = (intent.get("metadata") or {}).get("order_id")
                if order_id:
                    await self.reconciler.mark_failed(order_id, intent)
                else:
                    logger.info("Failed payment carries no order id", payment_intent_id=intent.get("id"))
                return {"received": True}

            logger.info("Unhandled webhook event type", event_type=event_type, event_id=event.get("id"))
            return {"received": True}

    async def reconcile_order(self, order: dict[str, Any]) -> dict[str, Any]:
        """
        Bring ``order`` up to date with the payment intent recorded on it.

        Orders already paid, without an intent, or whose intent has not
        succeeded are returned unchanged. Gateway and store failures are
        logged and also leave the order unchanged.
        """
        if order.get("payment_status") == PaymentStatus.PAID.value or not self.stripe_client.configured:
            return order
        intent_id = PaymentDetails.from_storage(order.get("payment_details")).stripePaymentIntentId
        if not intent_id:
            return order

        try:
            intent = await asyncio.to_thread(self.stripe_client.retrieve_payment_intent, intent_id)
        except StripeClientError as e:
            logger.warning(
                "Payment intent lookup failed during reconciliation",
                order_id=order.get("id"),
                payment_intent_id=intent_id,
                error=e.message,
            )
            return order

        if intent.get("status") != "succeeded":
            return order
        updated = await self.reconciler.mark_paid(order, intent, "reconcile")
        return updated or order
