"""
Vendor directory over the legacy vendor tables.

Vendors are recorded in three places: the ``vendor_profiles_with_user`` view
(matched by profile id or by owning user id), the ``vendor_profiles`` table
and the older ``vendors`` table. Each is wrapped in a ``VendorSource``
adapter and the directory consults them in a fixed order, first match wins.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

from storefront.core.logging import get_logger
from storefront.database.store import Query, StoreError, TableStore
from storefront.services.catalog.identifiers import is_uuid

logger = get_logger(__name__)

NAME_COLUMNS = ("vendor_name", "display_name", "company_name", "name")


def vendor_display_name(row: Mapping[str, Any]) -> Optional[str]:
    """Pick the display name of a vendor row by column precedence."""
    for column in NAME_COLUMNS:
        value = row.get(column)
        if value:
            return str(value)
    return None


@dataclass(frozen=True)
class VendorSource:
    """One legacy table or view that can vouch for a vendor id."""

    table: str
    key_column: str = "id"

    async def find(self, store: TableStore, vendor_ids: Sequence[str]) -> dict[str, Optional[str]]:
        """
        Look up vendor ids in this source.

        Returns:
            Mapping of each found id to its display name (possibly None)
        """
        rows = await store.select(self.table, Query().in_(self.key_column, vendor_ids))
        found: dict[str, Optional[str]] = {}
        for row in rows:
            key = row.get(self.key_column)
            if key is not None:
                found.setdefault(str(key), vendor_display_name(row))
        return found


DEFAULT_SOURCES = (
    VendorSource("vendor_profiles_with_user", "id"),
    VendorSource("vendor_profiles_with_user", "user_id"),
    VendorSource("vendor_profiles", "id"),
    VendorSource("vendors", "id"),
)

# Lookups whose row id is a vendor_profiles id
PROFILE_KEYS = (
    ("vendor_profiles", "id"),
    ("vendor_profiles_with_user", "id"),
    ("vendor_profiles_with_user", "user_id"),
)


class VendorDirectory:
    """
    Vendor existence and display-name lookups.

    Args:
        store: Table store used for every lookup
        admin_vendor_id: Vendor id attributed to admin-authored products,
            self-healed into ``vendor_profiles`` when missing
        sources: Sources consulted in priority order
    """

    def __init__(
        self,
        store: TableStore,
        admin_vendor_id: Optional[str] = None,
        sources: Sequence[VendorSource] = DEFAULT_SOURCES,
    ):
        self.store = store
        self.admin_vendor_id = admin_vendor_id
        self.sources = tuple(sources)

    async def lookup(self, vendor_ids: Iterable[Any]) -> dict[str, Optional[str]]:
        """
        Find which vendor ids exist and their display names.

        Each source is only asked about ids no earlier source matched. A
        failing source is logged and skipped.
        """
        wanted = list(dict.fromkeys(str(v) for v in vendor_ids if v))
        queryable = [v for v in wanted if is_uuid(v)]
        if len(queryable) != len(wanted):
            logger.debug(
                "Skipping malformed vendor ids",
                skipped=[v for v in wanted if not is_uuid(v)],
            )

        found: dict[str, Optional[str]] = {}
        for source in self.sources:
            pending = [v for v in queryable if v not in found]
            if not pending:
                break
            try:
                matches = await source.find(self.store, pending)
            except StoreError as e:
                logger.warning(
                    "Vendor source lookup failed",
                    table=source.table,
                    key_column=source.key_column,
                    error=e.message,
                    code=e.code,
                )
                continue
            for vendor_id in pending:
                if vendor_id in matches:
                    found[vendor_id] = matches[vendor_id]

        return found

    async def ensure_vendor_profile(self, vendor_id: str) -> bool:
        """
        Create a minimal ``vendor_profiles`` row for ``vendor_id`` if absent.

        Returns:
            True if the row exists afterwards
        """
        try:
            row = await self.store.upsert(
                "vendor_profiles",
                {"id": vendor_id, "updated_at": datetime.now(timezone.utc)},
                on_conflict=("id",),
            )
        except StoreError as e:
            logger.warning(
                "Failed to upsert vendor profile",
                vendor_id=vendor_id,
                error=e.message,
                code=e.code,
            )
            return False

        logger.info("Vendor profile ensured", vendor_id=vendor_id)
        return bool(row)

    async def validate_ids(self, vendor_ids: Iterable[Any]) -> set[str]:
        """
        Return the subset of ``vendor_ids`` known to any vendor source.

        The admin fallback vendor counts as valid once its profile row has
        been created.
        """
        candidates = list(dict.fromkeys(str(v) for v in vendor_ids if v))
        if not candidates:
            return set()

        valid = set(await self.lookup(candidates))

        if (
            self.admin_vendor_id
            and self.admin_vendor_id in candidates
            and self.admin_vendor_id not in valid
        ):
            if await self.ensure_vendor_profile(self.admin_vendor_id):
                valid.add(self.admin_vendor_id)

        invalid = [v for v in candidates if v not in valid]
        if invalid:
            logger.info("Vendor ids failed validation", vendor_ids=invalid)

        return valid

    async def profile_id(self, vendor_id: Any) -> Optional[str]:
        """
        Map a vendor or owning-user id to its ``vendor_profiles`` id.

        Orders reference ``vendor_profiles.id``, so an id matched through the
        view's ``user_id`` column is swapped for that profile's id. Ids known
        only to the ``vendors`` table have no profile and map to None.
        """
        if not vendor_id or not is_uuid(str(vendor_id)):
            return None
        key = str(vendor_id)
        for table, column in PROFILE_KEYS:
            try:
                rows = await self.store.select(table, Query().eq(column, key).limit(1))
            except StoreError as e:
                logger.warning(
                    "Vendor profile lookup failed",
                    table=table,
                    key_column=column,
                    error=e.message,
                    code=e.code,
                )
                continue
            if rows and rows[0].get("id") is not None:
                return str(rows[0]["id"])
        return None

    async def batch_names(self, vendor_ids: Iterable[Any]) -> dict[str, Optional[str]]:
        """Resolve display names for many vendor ids; unknown ids map to None."""
        wanted = list(dict.fromkeys(str(v) for v in vendor_ids if v))
        found = await self.lookup(wanted)
        return {vendor_id: found.get(vendor_id) for vendor_id in wanted}

    def name_fetcher(self) -> "VendorNameFetcher":
        return VendorNameFetcher(self)


class VendorNameFetcher:
    """Per-request vendor name lookup with memoization, misses included."""

    def __init__(self, directory: VendorDirectory):
        self.directory = directory
        self._cache: dict[str, Optional[str]] = {}

    async def __call__(self, vendor_id: Optional[Any]) -> Optional[str]:
        if not vendor_id:
            return None
        key = str(vendor_id)
        if key not in self._cache:
            found = await self.directory.lookup([key])
            self._cache[key] = found.get(key)
        return self._cache[key]
