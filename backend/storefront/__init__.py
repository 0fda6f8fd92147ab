"""Storefront backend: idempotent order creation and payment reconciliation."""

__version__ = "1.0.0"
