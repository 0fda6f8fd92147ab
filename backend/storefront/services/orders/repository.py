"""
Order data access over the table store.

This module implements the OrderRepository class with the lookups used by
idempotent order creation and payment reconciliation: by idempotency key
(top-level column first, then the copy mirrored into ``meta``), by flexible
client reference, by Stripe payment intent and by recency heuristics. Writes
tolerate a stale schema cache: an insert or update naming a column the store
does not know is retried without it, a bounded number of times.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from storefront.core.logging import get_logger
from storefront.database.store import (
    ForeignKeyViolationError,
    Query,
    StoreError,
    TableStore,
    UniqueViolationError,
    is_unknown_column_error,
    missing_column_from_message,
)
from storefront.services.catalog.identifiers import is_uuid
from storefront.services.orders.enums import PaymentStatus

logger = get_logger(__name__)

ORDERS_TABLE = "orders"
OPTIONAL_COLUMNS = ("payment_details", "shipping_coordinates", "vendor_id", "delivered_at")


class OrderWriteError(StoreError):
    """Raised when a schema-tolerant write runs out of columns to strip or attempts."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderRepository:
    """
    Repository for order rows.

    Args:
        store: Table store holding the ``orders`` table
        max_write_attempts: Attempts allowed while stripping unknown columns
    """

    def __init__(self, store: TableStore, max_write_attempts: int = 6):
        self.store = store
        self.max_write_attempts = max_write_attempts

    async def _maybe_one(self, query: Query, strategy: str) -> Optional[dict[str, Any]]:
        try:
            return await self.store.select_one(ORDERS_TABLE, query)
        except StoreError as e:
            logger.warning(
                "Order lookup failed",
                strategy=strategy,
                error=e.message,
                code=e.code,
            )
            return None

    async def get(self, order_id: Any) -> Optional[dict[str, Any]]:
        """Fetch an order by primary key; non-UUID ids never match."""
        if not is_uuid(order_id):
            return None
        return await self.store.select_one(ORDERS_TABLE, Query().eq("id", str(order_id)))

    async def find_by_idempotency_key(
        self, user_id: Optional[str], key: str
    ) -> Optional[dict[str, Any]]:
        """
        Find the order of ``user_id`` carrying idempotency key ``key``.

        The top-level column is consulted first; the copy inside ``meta``
        covers schema states where the column is missing.
        """
        order = await self._maybe_one(
            Query().eq("user_id", user_id).eq("idempotency_key", key),
            strategy="idempotency_key_column",
        )
        if order:
            return order
        return await self._maybe_one(
            Query().eq("user_id", user_id).filter("meta->>idempotency_key", "eq", key),
            strategy="idempotency_key_meta",
        )

    async def find_by_meta_idempotency_key(self, key: str) -> Optional[dict[str, Any]]:
        """Find an order by the idempotency key mirrored into ``meta``, any user."""
        return await self._maybe_one(
            Query().filter("meta->>idempotency_key", "eq", key),
            strategy="idempotency_key_meta_global",
        )

    async def find_by_top_level_idempotency_key(self, key: str) -> Optional[dict[str, Any]]:
        return await self._maybe_one(
            Query().eq("idempotency_key", key),
            strategy="idempotency_key_column_global",
        )

    async def find_by_client_ts(self, client_ts: Any) -> Optional[dict[str, Any]]:
        return await self._maybe_one(
            Query().filter("meta->>client_ts", "eq", str(client_ts)),
            strategy="meta_client_ts",
        )

    async def find_by_payment_intent(self, payment_intent_id: str) -> Optional[dict[str, Any]]:
        """Reverse lookup by the payment intent id recorded in ``payment_details``."""
        try:
            rows = await self.store.select(
                ORDERS_TABLE,
                Query()
                .filter("payment_details->>stripePaymentIntentId", "eq", payment_intent_id)
                .limit(1),
            )
        except StoreError as e:
            logger.warning(
                "Order lookup by payment intent failed",
                payment_intent_id=payment_intent_id,
                error=e.message,
            )
            return None
        return rows[0] if rows else None

    async def find_flexible(self, reference: str) -> Optional[dict[str, Any]]:
        """
        Find an order by any identifier a client may hold.

        Tries, in order: primary key (only for UUIDs), ``order_id``, legacy
        ``_id``, ``meta.idempotency_key`` and ``meta.client_ts``.
        """
        if is_uuid(reference):
            order = await self._maybe_one(Query().eq("id", reference), strategy="primary_key")
            if order:
                return order

        for path, strategy in (
            ("order_id", "order_id"),
            ("_id", "legacy_id"),
            ("meta->>idempotency_key", "meta_idempotency_key"),
            ("meta->>client_ts", "meta_client_ts"),
        ):
            order = await self._maybe_one(Query().filter(path, "eq", reference), strategy=strategy)
            if order:
                return order
        return None

    async def find_recent_for_user(
        self, user_id: Optional[str], window: timedelta, limit: int
    ) -> list[dict[str, Any]]:
        """Newest orders of ``user_id`` created within ``window``."""
        return await self.store.select(
            ORDERS_TABLE,
            Query()
            .eq("user_id", user_id)
            .gte("created_at", utcnow() - window)
            .order("created_at", descending=True)
            .limit(limit),
        )

    async def find_pending_candidates(
        self,
        amount: Any,
        window: timedelta,
        limit: int,
        email: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Recent orders awaiting payment for ``amount`` (and ``email`` when given)."""
        query = (
            Query()
            .gte("created_at", utcnow() - window)
            .eq("payment_status", PaymentStatus.PENDING.value)
            .eq("total_amount", amount)
        )
        if email:
            query = query.eq("email", email)
        return await self.store.select(
            ORDERS_TABLE, query.order("created_at", descending=True).limit(limit)
        )

    async def list_orders(
        self,
        page: int,
        per_page: int,
        user_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        user_or_vendor_id: Optional[str] = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """
        List orders newest first with the total count of the scope.

        Args:
            page: 1-based page number
            per_page: Page size
            user_id: Restrict to orders placed by this user
            vendor_id: Restrict to orders attributed to this vendor
            user_or_vendor_id: Restrict to orders placed by or attributed to this id
        """
        query = Query()
        if user_id is not None:
            query.eq("user_id", user_id)
        if vendor_id is not None:
            query.eq("vendor_id", vendor_id)
        if user_or_vendor_id is not None:
            query.or_(("user_id", user_or_vendor_id), ("vendor_id", user_or_vendor_id))

        total = await self.store.count(ORDERS_TABLE, query)
        start = (page - 1) * per_page
        rows = await self.store.select(
            ORDERS_TABLE,
            query.copy().order("created_at", descending=True).range(start, start + per_page - 1),
        )
        return rows, total

    async def insert_with_drift_retry(
        self,
        payload: dict[str, Any],
        optional_columns: Sequence[str] = OPTIONAL_COLUMNS,
    ) -> dict[str, Any]:
        """
        Insert an order, stripping columns the store does not know.

        On an unknown-column error the named column is removed, or failing
        that the next optional column still present. A foreign-key violation
        drops ``vendor_id``. Unique violations propagate untouched.

        Raises:
            UniqueViolationError: If the row collides with an existing order
            StoreError: If the insert cannot succeed within the attempt limit
        """
        attempt_payload = dict(payload)
        stripped: list[str] = []

        for attempt in range(1, self.max_write_attempts + 1):
            try:
                row = await self.store.insert(ORDERS_TABLE, attempt_payload)
                if stripped:
                    logger.warning(
                        "Order inserted without unknown columns",
                        stripped_columns=stripped,
                        attempts=attempt,
                    )
                return row
            except UniqueViolationError:
                raise
            except ForeignKeyViolationError as e:
                if "vendor_id" not in attempt_payload or "vendor_id" in stripped:
                    raise
                logger.warning(
                    "Order vendor reference rejected; retrying without vendor_id",
                    vendor_id=attempt_payload.get("vendor_id"),
                    error=e.message,
                )
                attempt_payload.pop("vendor_id")
                stripped.append("vendor_id")
            except StoreError as e:
                if not is_unknown_column_error(e):
                    raise
                column = e.column or missing_column_from_message(e.message)
                if not (column and column in attempt_payload and column not in stripped):
                    column = next(
                        (
                            c
                            for c in optional_columns
                            if c in attempt_payload and c not in stripped
                        ),
                        None,
                    )
                if column is None:
                    raise
                logger.warning(
                    "Unknown column on order insert; retrying without it",
                    column=column,
                    attempt=attempt,
                    error=e.message,
                )
                attempt_payload.pop(column)
                stripped.append(column)

        raise OrderWriteError(
            "Order insert abandoned after stripping unknown columns",
            code="SCHEMA_DRIFT",
            stripped_columns=stripped,
        )

    async def update(self, order_id: str, values: dict[str, Any]) -> Optional[dict[str, Any]]:
        rows = await self.store.update(ORDERS_TABLE, values, Query().eq("id", order_id))
        return rows[0] if rows else None

    async def update_dropping_unknown(
        self,
        order_id: str,
        values: dict[str, Any],
        droppable: Sequence[str] = ("delivered_at",),
    ) -> Optional[dict[str, Any]]:
        """
        Update an order, retrying once without a droppable column the store
        reports as unknown.
        """
        try:
            return await self.update(order_id, values)
        except StoreError as e:
            if not is_unknown_column_error(e):
                raise
            column = e.column or missing_column_from_message(e.message)
            if column not in droppable or column not in values:
                raise
            logger.warning(
                "Unknown column on order update; retrying without it",
                order_id=order_id,
                column=column,
            )
            retry_values = {k: v for k, v in values.items() if k != column}
            return await self.update(order_id, retry_values)

    async def status_summary(self) -> list[dict[str, Any]]:
        return await self.store.select("order_status_summary")
