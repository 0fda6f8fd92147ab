"""
Matching of Stripe payment intents to orders.

A succeeded payment intent is matched to the order it pays for by trying
strategies in order of decreasing reliability and stopping at the first
hit:

1. ``metadata.order_id`` (``order_id``)
2. ``metadata.idempotency_key`` inside ``orders.meta`` (``idempotency_key_meta``),
   then in the top-level column (``idempotency_key_top``)
3. the intent id recorded in ``payment_details`` (``payment_details``)
4. ``metadata.client_ts`` inside ``orders.meta`` (``meta_client_ts``)
5. a recent pending order with the billing email and amount (``email_amount``),
   or, when the intent carries no email, the amount alone (``amount_only``)

The heuristic step only acts on exactly one candidate. The strategy that
matched is recorded in ``payment_details.matched_by``.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger
from storefront.database.store import StoreError
from storefront.services.orders.enums import OrderStatus, PaymentStatus, is_terminal_status
from storefront.services.orders.line_items import PaymentDetails
from storefront.services.orders.repository import OrderRepository, utcnow

logger = get_logger(__name__)

HEURISTIC_STRATEGIES = ("email_amount", "amount_only")


@dataclass
class MatchResult:
    """An order marked paid and the strategy that found it."""

    order: dict[str, Any]
    matched_by: str

    @property
    def heuristic(self) -> bool:
        return self.matched_by in HEURISTIC_STRATEGIES


def billing_email(intent: Mapping[str, Any]) -> Optional[str]:
    """Billing email of the first charge, falling back to ``receipt_email``."""
    charges = intent.get("charges") or {}
    data = charges.get("data") if isinstance(charges, Mapping) else None
    if data:
        details = (data[0] or {}).get("billing_details") or {}
        if details.get("email"):
            return details["email"]
    return intent.get("receipt_email") or None


def intent_amount(intent: Mapping[str, Any]) -> Decimal:
    """Amount of the intent in major currency units."""
    return Decimal(int(intent.get("amount") or 0)) / Decimal(100)


class PaymentReconciler:
    """
    Applies payment outcomes to orders.

    Args:
        repository: Order repository
        settings: Application settings supplying the heuristic window
    """

    def __init__(self, repository: OrderRepository, settings: Optional[Settings] = None):
        self.repository = repository
        self.settings = settings or get_settings()

    async def mark_paid(
        self,
        order: Mapping[str, Any],
        intent: Mapping[str, Any],
        matched_by: str,
    ) -> Optional[dict[str, Any]]:
        """
        Record a succeeded intent on ``order``.

        Sets ``payment_status`` to ``paid`` and, unless the order already
        reached a terminal status, ``status`` to ``confirmed``.

        Returns:
            The updated order, or None when the write failed
        """
        details = PaymentDetails.from_storage(order.get("payment_details")).merged(
            stripePaymentIntentId=intent.get("id"),
            stripeRaw=dict(intent),
            matched_by=matched_by,
        )
        changes: dict[str, Any] = {
            "payment_status": PaymentStatus.PAID.value,
            "payment_details": details,
            "updated_at": utcnow(),
        }
        if not is_terminal_status(order.get("status")):
            changes["status"] = OrderStatus.CONFIRMED.value

        try:
            updated = await self.repository.update_dropping_unknown(
                str(order["id"]), changes, droppable=("payment_details",)
            )
        except StoreError as e:
            logger.warning(
                "Failed to mark order paid",
                order_id=order.get("id"),
                matched_by=matched_by,
                error=e.message,
            )
            return None

        if updated is None:
            return None
        logger.info(
            "Order marked paid",
            order_id=updated.get("id"),
            payment_intent_id=intent.get("id"),
            matched_by=matched_by,
        )
        return updated

    async def mark_failed(self, order_id: str, intent: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        """Record a failed intent on the order it names, keeping its other payment details."""
        try:
            order = await self.repository.get(order_id)
            if order is None:
                logger.warning("Failed payment names unknown order", order_id=order_id)
                return None
            changes = {
                "payment_status": PaymentStatus.FAILED.value,
                "payment_details": PaymentDetails.from_storage(order.get("payment_details")).merged(
                    stripePaymentIntentId=intent.get("id"),
                    stripeRaw=dict(intent),
                ),
                "updated_at": utcnow(),
            }
            return await self.repository.update_dropping_unknown(
                str(order["id"]), changes, droppable=("payment_details",)
            )
        except StoreError as e:
            logger.warning("Failed to mark order payment failed", order_id=order_id, error=e.message)
            return None

    async def _direct_candidates(self, intent: Mapping[str, Any]):
        metadata = intent.get("metadata") or {}

        order_id = metadata.get("order_id")
        if order_id:
            try:
                yield "order_id", await self.repository.get(order_id)
            except StoreError as e:
                logger.warning("Order lookup by metadata order_id failed", error=e.message)

        key = metadata.get("idempotency_key")
        if key:
            yield "idempotency_key_meta", await self.repository.find_by_meta_idempotency_key(key)
            yield "idempotency_key_top", await self.repository.find_by_top_level_idempotency_key(key)

        if intent.get("id"):
            yield "payment_details", await self.repository.find_by_payment_intent(intent["id"])

        client_ts = metadata.get("client_ts")
        if client_ts:
            yield "meta_client_ts", await self.repository.find_by_client_ts(client_ts)

    async def _heuristic_candidate(
        self, intent: Mapping[str, Any]
    ) -> tuple[Optional[str], Optional[dict[str, Any]]]:
        email = billing_email(intent)
        strategy = "email_amount" if email else "amount_only"
        try:
            candidates = await self.repository.find_pending_candidates(
                intent_amount(intent),
                timedelta(minutes=self.settings.webhook_heuristic_window_minutes),
                self.settings.webhook_heuristic_candidate_limit,
                email=email,
            )
        except StoreError as e:
            logger.warning("Heuristic payment match lookup failed", strategy=strategy, error=e.message)
            return strategy, None

        if len(candidates) == 1:
            return strategy, candidates[0]
        if len(candidates) > 1:
            logger.warning(
                "Heuristic payment match is ambiguous; not auto-matching",
                strategy=strategy,
                payment_intent_id=intent.get("id"),
                candidates=[c.get("id") for c in candidates],
            )
        return strategy, None

    async def match_succeeded(self, intent: Mapping[str, Any]) -> Optional[MatchResult]:
        """
        Find the order paid by ``intent`` and mark it paid.

        Returns:
            MatchResult, or None when no strategy located an order
        """
        async for strategy, order in self._direct_candidates(intent):
            if not order:
                continue
            updated = await self.mark_paid(order, intent, strategy)
            if updated:
                return MatchResult(order=updated, matched_by=strategy)

        strategy, order = await self._heuristic_candidate(intent)
        if order:
            updated = await self.mark_paid(order, intent, strategy)
            if updated:
                logger.info("Heuristic payment match applied", order_id=updated.get("id"), strategy=strategy)
                return MatchResult(order=updated, matched_by=strategy)

        logger.warning("No order matched succeeded payment", payment_intent_id=intent.get("id"))
        return None
