"""
Catalog and vendor tables consulted during identifier resolution.

``vendor_product`` rows alias catalog products under vendor-specific ids,
and vendors appear in three tables that predate a single vendor registry.
"""

import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import Base, BaseModel, TimestampMixin


class Product(BaseModel):
    __tablename__ = "products"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )


class VendorProduct(Base, TimestampMixin):
    """Vendor listing of a catalog product, addressed by its own row id."""

    __tablename__ = "vendor_product"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)


class Profile(BaseModel):
    """Account profile maintained alongside the auth provider's users."""

    __tablename__ = "profiles"

    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_admin: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)


class VendorProfile(BaseModel):
    __tablename__ = "vendor_profiles"

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    vendor_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Vendor(BaseModel):
    """Vendor registry table from before vendor profiles existed."""

    __tablename__ = "vendors"

    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
