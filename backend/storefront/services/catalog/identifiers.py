"""
Resolution of loosely-typed product and vendor references.

Clients send product references as catalog UUIDs, as ids of ``vendor_product``
alias rows, or under different keys depending on which screen built the cart.
The resolver maps them onto canonical product UUIDs and vendor ids. A lookup
that fails degrades to ``None``; it never raises, so one bad line item cannot
abort an order.
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from storefront.core.logging import get_logger
from storefront.database.store import Query, StoreError, TableStore

logger = get_logger(__name__)

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

PRODUCT_KEYS = ("product_id", "productId")
VENDOR_PRODUCT_KEYS = ("vendor_product_id", "vendorProductId", "vendorProduct")
FALLBACK_KEYS = ("id",)


def is_uuid(value: Any) -> bool:
    """Check whether ``value`` is a syntactically valid UUID string."""
    return bool(_UUID_PATTERN.match(str(value or "")))


def _first_present(item: Mapping[str, Any], keys: tuple[str, ...]) -> Optional[Any]:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


@dataclass
class ResolvedItem:
    """Outcome of resolving one client line item."""

    product_id: Optional[str]
    original_id: Optional[str]
    vendor_id: Optional[str]


class IdentifierResolver:
    """
    Maps client product references onto catalog identifiers.

    Args:
        store: Table store used for catalog lookups
    """

    def __init__(self, store: TableStore):
        self.store = store

    async def resolve_product_uuid(self, reference: Any) -> Optional[str]:
        """
        Resolve a product reference to a canonical product UUID.

        UUIDs are returned unchanged without a lookup. Anything else is
        treated as a ``vendor_product`` row id.

        Args:
            reference: Product reference as supplied by the client

        Returns:
            Product UUID, or None if the reference cannot be resolved
        """
        if reference is None:
            return None
        candidate = str(reference).strip()
        if not candidate:
            return None
        if is_uuid(candidate):
            return candidate

        try:
            row = await self.store.select_one(
                "vendor_product", Query().eq("id", candidate), columns=["product_id"]
            )
        except StoreError as e:
            logger.warning(
                "vendor_product lookup failed",
                reference=candidate,
                error=e.message,
                code=e.code,
            )
            return None

        if row and row.get("product_id"):
            return str(row["product_id"])

        logger.info("Product reference unresolved", reference=candidate)
        return None

    async def resolve_vendor_for_item(
        self,
        product_uuid: Optional[str],
        original_id: Optional[str],
    ) -> tuple[Optional[str], Optional[str]]:
        """
        Resolve the vendor of a line item.

        Tries the product's own ``vendor_id`` first, then the alias row keyed
        by the original identifier. The alias row may also supply the product
        UUID when it is still unknown.

        Returns:
            Tuple of (vendor_id, product_uuid), either of which may be None
        """
        vendor_id: Optional[str] = None

        if product_uuid:
            try:
                product = await self.store.select_one(
                    "products", Query().eq("id", product_uuid), columns=["vendor_id"]
                )
                if product and product.get("vendor_id"):
                    vendor_id = str(product["vendor_id"])
            except StoreError as e:
                logger.warning(
                    "products vendor lookup failed",
                    product_id=product_uuid,
                    error=e.message,
                )

        if vendor_id is None and original_id:
            try:
                alias = await self.store.select_one(
                    "vendor_product",
                    Query().eq("id", original_id),
                    columns=["vendor_id", "product_id"],
                )
            except StoreError as e:
                logger.warning(
                    "vendor_product vendor lookup failed",
                    reference=original_id,
                    error=e.message,
                )
                alias = None
            if alias:
                if not product_uuid and alias.get("product_id"):
                    product_uuid = str(alias["product_id"])
                if alias.get("vendor_id"):
                    vendor_id = str(alias["vendor_id"])

        return vendor_id, product_uuid

    async def resolve_item(self, item: Mapping[str, Any]) -> ResolvedItem:
        """
        Resolve the product and vendor of a raw client line item.

        Candidate keys are tried in order: ``product_id``/``productId``, then
        the vendor-product keys, then ``id``. The last candidate tried is kept
        as the original identifier.
        """
        product_uuid: Optional[str] = None
        original_id: Optional[str] = None

        for keys in (PRODUCT_KEYS, VENDOR_PRODUCT_KEYS, FALLBACK_KEYS):
            if product_uuid:
                break
            candidate = _first_present(item, keys)
            if candidate is None:
                continue
            original_id = str(candidate)
            product_uuid = await self.resolve_product_uuid(candidate)

        vendor_id, product_uuid = await self.resolve_vendor_for_item(product_uuid, original_id)
        return ResolvedItem(product_id=product_uuid, original_id=original_id, vendor_id=vendor_id)
