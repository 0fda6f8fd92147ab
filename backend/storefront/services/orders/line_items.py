"""
Typed structures for the JSON documents stored on an order.

``items``, ``meta`` and ``payment_details`` are JSONB columns. These pydantic
models give them a shape while keeping the stored field names unchanged and
preserving any extra client fields verbatim. Line items are written with a
storage version tag ``_v`` and can be read back from the tagged form, from
untagged dictionaries, and from the legacy JSON-string form.
"""

import json
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

STORAGE_VERSION = 1
VERSION_FIELD = "_v"


class ItemsFormatError(ValueError):
    """Raised when an items payload is not a JSON array of objects."""


class LineItem(BaseModel):
    """One order line as stored in ``orders.items``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    product_id: Optional[str] = None
    original_id: Optional[str] = Field(default=None, alias="_original_id")
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    quantity: Optional[Union[int, float]] = None
    price: Optional[Union[int, float]] = None
    name: Optional[str] = None
    image: Optional[Any] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name_as_text(cls, value: Any) -> Any:
        # Clients send numeric SKUs as names
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def to_storage(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True)
        data[VERSION_FIELD] = STORAGE_VERSION
        return data


class OrderMeta(BaseModel):
    """Client metadata plus the server-stamped idempotency fields."""

    model_config = ConfigDict(extra="allow")

    idempotency_key: Optional[str] = None
    client_ts: Optional[Any] = None
    server_ts: Optional[str] = None

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PaymentDetails(BaseModel):
    """Gateway references recorded on an order."""

    model_config = ConfigDict(extra="allow")

    stripePaymentIntentId: Optional[str] = None
    stripeRaw: Optional[Any] = None
    matched_by: Optional[str] = None

    @classmethod
    def from_storage(cls, raw: Any) -> "PaymentDetails":
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                raw = None
        return cls.model_validate(raw if isinstance(raw, dict) else {})

    def merged(self, **updates: Any) -> dict[str, Any]:
        """Return the stored form with ``updates`` applied on top."""
        data = self.model_dump(exclude_none=True)
        data.update({k: v for k, v in updates.items() if v is not None})
        return data


def parse_items_payload(items: Any) -> list[dict[str, Any]]:
    """
    Parse client-supplied items into a list of dictionaries.

    Raises:
        ItemsFormatError: If items is malformed JSON, not an array, empty,
            or holds non-object entries
    """
    if isinstance(items, str):
        try:
            items = json.loads(items)
        except ValueError as e:
            raise ItemsFormatError("Invalid items: must be JSON array") from e

    if not isinstance(items, list) or not items:
        raise ItemsFormatError("Items must be a non-empty array")
    if not all(isinstance(item, dict) for item in items):
        raise ItemsFormatError("Invalid items: every item must be an object")
    return items


def decode_items(raw: Any) -> list[LineItem]:
    """
    Read stored items in any of their historical forms.

    Raises:
        ItemsFormatError: If the stored value cannot be interpreted
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ItemsFormatError("Stored items are not valid JSON") from e
    if not isinstance(raw, list):
        raise ItemsFormatError("Stored items are not an array")

    decoded = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ItemsFormatError("Stored item is not an object")
        data = {k: v for k, v in entry.items() if k != VERSION_FIELD}
        try:
            decoded.append(LineItem.model_validate(data))
        except ValidationError as e:
            raise ItemsFormatError(f"Stored item is malformed: {e}") from e
    return decoded


def encode_items(items: list[LineItem]) -> list[dict[str, Any]]:
    return [item.to_storage() for item in items]


def present_items(raw: Any) -> Any:
    """Client-facing form of stored items; undecodable values pass through."""
    try:
        return [item.model_dump(by_alias=True) for item in decode_items(raw)]
    except ItemsFormatError:
        return raw


def count_items(raw: Any) -> Optional[int]:
    try:
        return len(decode_items(raw))
    except ItemsFormatError:
        return None
