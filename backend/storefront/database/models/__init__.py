"""
Database models package.

Importing this package registers every model with ``Base.metadata`` for
Alembic.
"""

from storefront.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from storefront.database.models.catalog import (
    Product,
    Profile,
    Vendor,
    VendorProduct,
    VendorProfile,
)
from storefront.database.models.order import Order

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Order",
    "Product",
    "Profile",
    "Vendor",
    "VendorProduct",
    "VendorProfile",
]
