"""
Alembic migration: Create the storefront order and catalog schema.

Creates the catalog and vendor tables consulted during order creation, the
orders table with its partial unique index on (user_id, idempotency_key),
and the two read views used by the API: vendor profiles joined with their
owning account and per-status order totals.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=True,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    """Create tables, indexes and views."""
    op.create_table(
        "profiles",
        _id_column(),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=True),
        *_timestamp_columns(),
    )

    op.create_table(
        "vendor_profiles",
        _id_column(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("vendor_name", sa.Text(), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("company_name", sa.Text(), nullable=True),
        *_timestamp_columns(),
    )
    op.create_index("ix_vendor_profiles_user_id", "vendor_profiles", ["user_id"])

    op.create_table(
        "vendors",
        _id_column(),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamp_columns(),
    )

    op.create_table(
        "products",
        _id_column(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("vendor_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamp_columns(),
    )
    op.create_index("ix_products_vendor_id", "products", ["vendor_id"])

    op.create_table(
        "vendor_product",
        sa.Column("id", sa.Text(), primary_key=True, nullable=False),
        sa.Column(
            "product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("vendor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        *_timestamp_columns(),
    )
    op.create_index("ix_vendor_product_product_id", "vendor_product", ["product_id"])
    op.create_index("ix_vendor_product_vendor_id", "vendor_product", ["vendor_id"])

    op.create_table(
        "orders",
        _id_column(),
        sa.Column("order_id", sa.Text(), nullable=True),
        sa.Column("_id", sa.Text(), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "vendor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vendor_profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("vendor_name", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("shipping_address", postgresql.JSONB(), nullable=True),
        sa.Column("shipping_coordinates", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'processing'")),
        sa.Column(
            "payment_status", sa.Text(), nullable=False, server_default=sa.text("'unpaid'")
        ),
        sa.Column("payment_method", sa.Text(), nullable=True),
        sa.Column("payment_details", postgresql.JSONB(), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("items", postgresql.JSONB(), nullable=True),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
        sa.Column("idempotency_key", sa.Text(), nullable=True),
        sa.Column("delivery_token", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_by_admin", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.Text(), nullable=True),
        sa.Column("updated_by_role", sa.Text(), nullable=True),
        *_timestamp_columns(),
        comment="Customer orders",
    )
    op.create_index("ix_orders_order_id", "orders", ["order_id"])
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_vendor_id", "orders", ["vendor_id"])
    op.create_index("ix_orders_email", "orders", ["email"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])
    op.create_index(
        "uq_orders_user_idempotency_key",
        "orders",
        ["user_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )
    op.execute(
        "CREATE INDEX ix_orders_payment_intent "
        "ON orders ((payment_details->>'stripePaymentIntentId'))"
    )

    op.execute(
        """
        CREATE VIEW vendor_profiles_with_user AS
        SELECT
            vp.id,
            vp.user_id,
            vp.vendor_name,
            vp.display_name,
            vp.company_name,
            p.email,
            p.full_name
        FROM vendor_profiles vp
        LEFT JOIN profiles p ON p.id = vp.user_id
        """
    )

    op.execute(
        """
        CREATE VIEW order_status_summary AS
        SELECT
            status,
            count(*) AS order_count,
            coalesce(sum(total_amount), 0) AS total_amount
        FROM orders
        GROUP BY status
        """
    )


def downgrade() -> None:
    """Drop views, then tables in dependency order."""
    op.execute("DROP VIEW IF EXISTS order_status_summary")
    op.execute("DROP VIEW IF EXISTS vendor_profiles_with_user")
    op.drop_table("orders")
    op.drop_table("vendor_product")
    op.drop_table("products")
    op.drop_table("vendors")
    op.drop_table("vendor_profiles")
    op.drop_table("profiles")
