"""
Order service orchestrating idempotent creation and status changes.

This module implements the OrderService class. Order creation resolves each
line item's product and vendor, validates vendor attribution, and persists
the order at most once per ``(user_id, idempotency_key)``: an existing order
is looked up before building the row and again immediately before the
insert, and a unique violation on insert is treated as a lost race whose
winner is looked up and returned. When the winner cannot be located by key
a recency heuristic (same user, amount and item count) is the last resort.

Returned orders are passed through an optional payment reconciler so that a
replayed checkout reflects a payment that completed in the meantime.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import ValidationError

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger, log_performance, set_idempotency_key
from storefront.core.security import ROLE_ADMIN, ROLE_USER, ROLE_VENDOR, Requester
from storefront.database.store import Query, StoreError, TableStore, UniqueViolationError
from storefront.schemas.orders import OrderCreateRequest
from storefront.services.catalog.identifiers import IdentifierResolver, is_uuid
from storefront.services.catalog.vendor_directory import VendorDirectory, VendorNameFetcher
from storefront.services.orders.enums import OrderStatus, PaymentStatus, normalize_status
from storefront.services.orders.idempotency import derive_key
from storefront.services.orders.line_items import (
    ItemsFormatError,
    LineItem,
    OrderMeta,
    count_items,
    encode_items,
    parse_items_payload,
    present_items,
)
from storefront.services.orders.repository import OrderRepository
from storefront.services.orders.state_machine import OrderStateMachine

logger = get_logger(__name__)

Reconciler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

REQUIRED_FIELDS = ("total_amount", "items", "shipping_address")
MAX_PAGE_SIZE = 100


class OrderServiceError(Exception):
    """Base exception for order service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class OrderValidationError(OrderServiceError):
    """Raised when an order request is malformed."""


class OrderNotFoundError(OrderServiceError):
    """Raised when no order matches the given reference."""


class OrderPermissionError(OrderServiceError):
    """Raised when the requester may not access an order."""


class OrderCreationError(OrderServiceError):
    """Raised when an order cannot be persisted."""


@dataclass
class OrderResult:
    """Outcome of a create-order call."""

    order: dict[str, Any]
    idempotent: bool = False
    heuristic_matched: bool = False

    @property
    def created(self) -> bool:
        return not self.idempotent


def _json_number(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def present_order(order: Mapping[str, Any]) -> dict[str, Any]:
    """Client-facing form of an order row."""
    presented = dict(order)
    if "items" in presented:
        presented["items"] = present_items(presented["items"])
    if "total_amount" in presented:
        presented["total_amount"] = _json_number(presented["total_amount"])
    return presented


def parse_total_amount(value: Any) -> Decimal:
    """
    Order total as a positive, finite Decimal.

    Raises:
        OrderValidationError: If the total is non-numeric, non-finite or not positive
    """
    if isinstance(value, bool):
        raise OrderValidationError("Invalid total_amount", total_amount=value)
    try:
        total = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise OrderValidationError("Invalid total_amount", total_amount=value) from e
    if not total.is_finite() or total <= 0:
        raise OrderValidationError("Invalid total_amount", total_amount=value)
    return total


def amounts_equal(left: Any, right: Any) -> bool:
    try:
        return Decimal(str(left)) == Decimal(str(right))
    except (InvalidOperation, ValueError):
        return False


class OrderService:
    """
    Order service for creation, lookup and status transitions.

    Attributes:
        repository: Order data access
        resolver: Product and vendor identifier resolution
        vendors: Vendor directory for validation and display names
        state_machine: Status transition rules
        reconciler: Optional payment reconciliation applied to returned orders
    """

    def __init__(
        self,
        store: TableStore,
        settings: Optional[Settings] = None,
        reconciler: Optional[Reconciler] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.repository = OrderRepository(
            store, max_write_attempts=self.settings.schema_drift_max_attempts
        )
        self.resolver = IdentifierResolver(store)
        self.vendors = VendorDirectory(store, admin_vendor_id=self.settings.admin_vendor_id)
        self.state_machine = OrderStateMachine()
        self.reconciler = reconciler

    async def create_order(
        self,
        request: OrderCreateRequest,
        requester: Requester,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> OrderResult:
        """
        Create an order, or return the one this checkout attempt already made.

        Args:
            request: Order fields from the client
            requester: Authenticated caller
            headers: Request headers, consulted for an idempotency key

        Returns:
            OrderResult with the order and whether it was replayed

        Raises:
            OrderValidationError: If required fields are missing, the total is not a
                positive number or items are malformed
            OrderCreationError: If the insert fails and no concurrent order explains it
        """
        missing = [name for name in REQUIRED_FIELDS if not getattr(request, name)]
        if missing:
            raise OrderValidationError(
                "Missing required fields (total_amount, items, shipping_address)",
                missing=missing,
            )

        total_amount = parse_total_amount(request.total_amount)

        try:
            raw_items = parse_items_payload(request.items)
        except ItemsFormatError as e:
            raise OrderValidationError(str(e)) from e

        meta = dict(request.meta or {})
        client_ts = meta.get("client_ts")
        key = derive_key(headers, meta, client_ts, requester.id)
        set_idempotency_key(key)

        logger.info(
            "Order creation requested",
            user_id=requester.id,
            idempotency_key=key,
            client_ts=client_ts,
            item_count=len(raw_items),
        )

        with log_performance(logger, "create_order", user_id=requester.id):
            if key:
                existing = await self.repository.find_by_idempotency_key(requester.id, key)
                if existing:
                    logger.info("Returning existing order for idempotency key", order_id=existing.get("id"))
                    return await self._replay(existing)

            fetch_name = self.vendors.name_fetcher()
            line_items = [await self._materialize_item(raw, fetch_name) for raw in raw_items]
            valid_vendor_ids = await self._validate_item_vendors(line_items, fetch_name)
            vendor_id, vendor_name = await self._order_vendor(
                line_items, valid_vendor_ids, requester, fetch_name
            )

            meta_doc = OrderMeta.model_validate(meta)
            meta_doc.server_ts = datetime.now(timezone.utc).isoformat()
            if key:
                meta_doc.idempotency_key = key

            payload: dict[str, Any] = {
                "user_id": requester.id,
                "vendor_id": vendor_id,
                "vendor_name": vendor_name,
                "name": request.name,
                "email": request.email,
                "shipping_address": request.shipping_address,
                "status": OrderStatus.PROCESSING.value,
                "total_amount": total_amount,
                "items": encode_items(line_items),
                "payment_status": request.payment_status or PaymentStatus.UNPAID.value,
                "payment_method": request.payment_method,
                "meta": meta_doc.to_storage(),
            }
            if request.shipping_coordinates is not None:
                payload["shipping_coordinates"] = request.shipping_coordinates
            if key:
                payload["idempotency_key"] = key

            if key:
                existing = await self.repository.find_by_idempotency_key(requester.id, key)
                if existing:
                    logger.info("Order appeared before insert; returning it", order_id=existing.get("id"))
                    return await self._replay(existing)

            try:
                inserted = await self.repository.insert_with_drift_retry(
                    payload, optional_columns=("shipping_coordinates",)
                )
            except UniqueViolationError as e:
                return await self._resolve_insert_conflict(
                    e, key, requester, total_amount, len(line_items)
                )
            except StoreError as e:
                logger.error(
                    "Order insert failed",
                    error=e.message,
                    code=e.code,
                )
                raise OrderCreationError(e.message or "Failed to insert order", code=e.code) from e

        inserted = await self._patch_vendor_name(inserted)
        logger.info("Order created", order_id=inserted.get("id"), vendor_id=inserted.get("vendor_id"))
        return OrderResult(order=present_order(inserted))

    async def _materialize_item(
        self, raw: Mapping[str, Any], fetch_name: VendorNameFetcher
    ) -> LineItem:
        resolved = await self.resolver.resolve_item(raw)
        vendor_name = await fetch_name(resolved.vendor_id) if resolved.vendor_id else None

        data = {k: v for k, v in raw.items() if k != "_v"}
        data.update(
            {
                "_original_id": resolved.original_id,
                "product_id": resolved.product_id,
                "vendor_id": resolved.vendor_id,
                "vendor_name": vendor_name,
            }
        )
        try:
            return LineItem.model_validate(data)
        except ValidationError as e:
            raise OrderValidationError(
                f"Invalid item: {e.errors()[0]['msg']}",
                item=resolved.original_id,
            ) from e

    async def _validate_item_vendors(
        self, line_items: list[LineItem], fetch_name: VendorNameFetcher
    ) -> set[str]:
        """Strip vendor attribution from items whose vendor does not validate."""
        valid = await self.vendors.validate_ids(
            item.vendor_id for item in line_items if item.vendor_id
        )
        for item in line_items:
            if not item.vendor_id:
                continue
            if item.vendor_id in valid:
                if not item.vendor_name:
                    item.vendor_name = await fetch_name(item.vendor_id)
            else:
                logger.info(
                    "Dropping unknown vendor from line item",
                    vendor_id=item.vendor_id,
                    product_id=item.product_id,
                )
                item.vendor_id = None
                item.vendor_name = None
        return valid

    async def _order_vendor(
        self,
        line_items: list[LineItem],
        valid_vendor_ids: set[str],
        requester: Requester,
        fetch_name: VendorNameFetcher,
    ) -> tuple[Optional[str], Optional[str]]:
        """
        Pick the order-level vendor.

        Vendors placing an order are attributed themselves. Otherwise the
        order gets a vendor only when every attributed item names the same
        valid vendor. The chosen id is mapped to its ``vendor_profiles`` id,
        which is what ``orders.vendor_id`` references.
        """
        if requester.is_vendor:
            candidate = requester.id
        else:
            vendor_ids = {item.vendor_id for item in line_items if item.vendor_id}
            if len(vendor_ids) != 1:
                return None, None
            candidate = vendor_ids.pop()
            if candidate not in valid_vendor_ids:
                return None, None

        profile_id = await self.vendors.profile_id(candidate)
        if profile_id is None:
            logger.info("Vendor has no profile row", vendor_id=candidate)
            profile_id = candidate
        return profile_id, await fetch_name(candidate)

    async def _resolve_insert_conflict(
        self,
        error: UniqueViolationError,
        key: Optional[str],
        requester: Requester,
        total_amount: Any,
        item_count: int,
    ) -> OrderResult:
        logger.warning(
            "Order insert hit unique violation; looking up concurrent order",
            error=error.message,
        )

        if key:
            existing = await self.repository.find_by_idempotency_key(requester.id, key)
            if existing is None:
                existing = await self.repository.find_by_meta_idempotency_key(key)
            if existing:
                logger.info("Concurrent insert detected; returning winner", order_id=existing.get("id"))
                return await self._replay(existing)

        try:
            candidates = await self.repository.find_recent_for_user(
                requester.id,
                timedelta(minutes=self.settings.order_heuristic_window_minutes),
                self.settings.order_heuristic_candidate_limit,
            )
        except StoreError as e:
            logger.warning("Heuristic order lookup failed", error=e.message)
            candidates = []

        for candidate in candidates:
            if amounts_equal(candidate.get("total_amount"), total_amount) and (
                count_items(candidate.get("items")) == item_count
            ):
                logger.info("Heuristic duplicate match", order_id=candidate.get("id"))
                return await self._replay(candidate, heuristic=True)

        raise OrderCreationError(
            error.message or "Failed to insert order", code=error.code
        ) from error

    async def _replay(self, order: dict[str, Any], heuristic: bool = False) -> OrderResult:
        if self.reconciler is not None:
            order = await self.reconciler(order)
        return OrderResult(
            order=present_order(order), idempotent=True, heuristic_matched=heuristic
        )

    async def _patch_vendor_name(self, order: dict[str, Any]) -> dict[str, Any]:
        if not order.get("vendor_id") or order.get("vendor_name"):
            return order
        try:
            name = await self.vendors.name_fetcher()(order["vendor_id"])
            if name:
                updated = await self.repository.update(order["id"], {"vendor_name": name})
                if updated:
                    return updated
        except StoreError as e:
            logger.warning(
                "Best-effort vendor name update failed",
                order_id=order.get("id"),
                error=e.message,
            )
        return order

    async def is_admin(self, requester: Requester) -> bool:
        """Admin role from the token, or an admin flag on the caller's profile."""
        if requester.is_admin:
            return True
        try:
            profile = await self.store.select_one("profiles", Query().eq("id", requester.id))
        except StoreError as e:
            logger.debug("Profile admin lookup failed", user_id=requester.id, error=e.message)
            return False
        if not profile:
            return False
        return str(profile.get("role") or "").lower() == ROLE_ADMIN or profile.get("is_admin") is True

    async def list_orders(self, requester: Requester, page: int = 1, per_page: int = 20) -> dict[str, Any]:
        """
        List the orders visible to ``requester``, newest first.

        Users see their own orders, vendors the orders attributed to them,
        admins every order and any other role the orders they placed or own.
        """
        page = max(1, page)
        per_page = min(MAX_PAGE_SIZE, max(1, per_page))

        scope: dict[str, Any] = {}
        if requester.role == ROLE_USER:
            scope["user_id"] = requester.id
        elif requester.role == ROLE_VENDOR:
            scope["vendor_id"] = requester.id
        elif requester.role != ROLE_ADMIN:
            scope["user_or_vendor_id"] = requester.id

        rows, total = await self.repository.list_orders(page, per_page, **scope)

        missing = [row["vendor_id"] for row in rows if row.get("vendor_id") and not row.get("vendor_name")]
        if missing:
            names = await self.vendors.batch_names(missing)
            for row in rows:
                if row.get("vendor_id") and not row.get("vendor_name"):
                    row["vendor_name"] = names.get(str(row["vendor_id"]))

        return {
            "orders": [present_order(row) for row in rows],
            "meta": {"page": page, "per_page": per_page, "total": total},
        }

    async def get_order(self, reference: str, requester: Requester) -> dict[str, Any]:
        """
        Fetch an order by any client-held reference.

        Raises:
            OrderNotFoundError: If nothing matches
            OrderPermissionError: If the order belongs to someone else
        """
        order = await self.repository.find_flexible(str(reference))
        if not order:
            raise OrderNotFoundError("Order not found", reference=reference)

        if requester.role == ROLE_USER and str(order.get("user_id")) != str(requester.id):
            raise OrderPermissionError("Forbidden", order_id=order.get("id"))
        if (
            requester.role == ROLE_VENDOR
            and order.get("vendor_id")
            and str(order["vendor_id"]) != str(requester.id)
        ):
            raise OrderPermissionError("Forbidden", order_id=order.get("id"))

        if order.get("vendor_id") and not order.get("vendor_name"):
            order["vendor_name"] = await self.vendors.name_fetcher()(order["vendor_id"])

        return present_order(order)

    async def _load(self, order_id: str) -> dict[str, Any]:
        order = await self.repository.get(order_id)
        if not order:
            raise OrderNotFoundError("Order not found", order_id=order_id)
        return order

    async def update_status(
        self,
        order_id: str,
        status: Optional[str],
        requester: Requester,
        vendor_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Set the status of an order as an admin or the owning vendor.

        Admins may reassign the order to another vendor in the same write.

        Raises:
            OrderValidationError: If the status is missing or the vendor id is not a UUID
            OrderNotFoundError: If the order does not exist
            TransitionForbiddenError: If the requester may not change the order
            StateTransitionError: If the order is already terminal
        """
        target = normalize_status(status)
        if not target:
            raise OrderValidationError("Status is required")

        order = await self._load(order_id)
        admin = await self.is_admin(requester)
        self.state_machine.validate_status_update(order, target, requester, admin)

        changes: dict[str, Any] = {
            "status": target,
            "updated_by": requester.id,
            "updated_by_role": requester.role,
        }
        if target == OrderStatus.DELIVERED.value:
            changes.update(self.state_machine.delivered_changes())

        if admin and vendor_id:
            if not is_uuid(vendor_id):
                raise OrderValidationError("Invalid vendor_id provided", vendor_id=vendor_id)
            if vendor_id == self.vendors.admin_vendor_id:
                if not await self.vendors.ensure_vendor_profile(vendor_id):
                    logger.warning("Could not ensure admin vendor profile", vendor_id=vendor_id)
            changes["vendor_id"] = vendor_id
            name = await self.vendors.name_fetcher()(vendor_id)
            if name:
                changes["vendor_name"] = name

        updated = await self.repository.update_dropping_unknown(order["id"], changes)
        logger.info(
            "Order status updated",
            order_id=order["id"],
            status=target,
            by=requester.id,
            role=requester.role,
        )
        return present_order(updated or order)

    async def mark_delivered(
        self,
        order_id: str,
        requester: Requester,
        email: Optional[str] = None,
        delivery_token: Optional[str] = None,
        require_token: bool = False,
    ) -> dict[str, Any]:
        """Mark an order delivered as an admin or the owning vendor."""
        order = await self._load(order_id)
        admin = await self.is_admin(requester)
        self.state_machine.validate_mark_delivered(
            order, requester, admin, email, delivery_token, require_token
        )
        changes = self.state_machine.delivered_changes(requester, admin)
        updated = await self.repository.update_dropping_unknown(order["id"], changes)
        logger.info("Order marked delivered", order_id=order["id"], by=requester.id, admin=admin)
        return present_order(updated or order)

    async def confirm_delivery(
        self,
        order_id: str,
        requester: Requester,
        delivery_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """Let the purchasing customer confirm receipt of an in-transit order."""
        order = await self._load(order_id)
        self.state_machine.validate_customer_confirmation(order, requester, delivery_token)
        updated = await self.repository.update_dropping_unknown(
            order["id"], self.state_machine.delivered_changes()
        )
        logger.info("Delivery confirmed by customer", order_id=order["id"])
        return present_order(updated or order)

    async def status_summary(self) -> list[dict[str, Any]]:
        rows = await self.repository.status_summary()
        return [{k: _json_number(v) for k, v in row.items()} for row in rows]
