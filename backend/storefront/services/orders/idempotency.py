"""
Idempotency key derivation for order-creating requests.

A single canonical key identifies one logical checkout attempt. Precedence,
first present wins:

1. ``Idempotency-Key`` request header (``idempotency_key`` accepted too,
   header names compared case-insensitively), trimmed;
2. ``meta.idempotency_key`` / ``meta.idempotencyKey`` from the body, trimmed;
3. ``"{user_id}:{client_ts}"`` when the client sent a timestamp.

Requests offering none of these are not idempotency-protected.
"""

from typing import Any, Mapping, Optional

HEADER_NAMES = ("idempotency-key", "idempotency_key")
META_KEYS = ("idempotency_key", "idempotencyKey")


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def key_from_headers(headers: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not headers:
        return None
    lowered = {str(name).lower(): value for name, value in headers.items()}
    for name in HEADER_NAMES:
        key = _clean(lowered.get(name))
        if key:
            return key
    return None


def key_from_meta(meta: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not meta:
        return None
    for name in META_KEYS:
        key = _clean(meta.get(name))
        if key:
            return key
    return None


def derive_key(
    headers: Optional[Mapping[str, Any]],
    meta: Optional[Mapping[str, Any]],
    client_ts: Any,
    user_id: Optional[str],
) -> Optional[str]:
    """
    Derive the canonical idempotency key of a request.

    Args:
        headers: Request headers
        meta: Client metadata from the request body
        client_ts: Client-supplied timestamp, if any
        user_id: Id of the requesting user, used for the timestamp fallback

    Returns:
        The idempotency key, or None when the request carries no key material
    """
    key = key_from_headers(headers) or key_from_meta(meta)
    if key:
        return key
    if client_ts is not None and str(client_ts) != "":
        return f"{user_id}:{client_ts}"
    return None
