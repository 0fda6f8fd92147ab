"""HTTP API layer: routers, dependencies and rate limiting."""
