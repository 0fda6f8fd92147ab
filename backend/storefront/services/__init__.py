"""Business services for orders, catalog lookups and payments."""
