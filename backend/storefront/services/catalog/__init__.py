"""Catalog identifier resolution and vendor directory."""

from storefront.services.catalog.identifiers import IdentifierResolver, ResolvedItem, is_uuid
from storefront.services.catalog.vendor_directory import (
    VendorDirectory,
    VendorNameFetcher,
    VendorSource,
)

__all__ = [
    "IdentifierResolver",
    "ResolvedItem",
    "VendorDirectory",
    "VendorNameFetcher",
    "VendorSource",
    "is_uuid",
]
