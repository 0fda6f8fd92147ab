"""
Storage for pending M-Pesa STK push transactions.

An entry is created when an STK push is initiated and updated when Daraja
calls back. The in-process store keeps entries for the life of the process
and only suits a single instance. The Redis store shares entries between
instances and expires each one after a configured time-to-live.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from storefront.cache.redis_client import CacheKeyManager, RedisClient, get_redis_client
from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)


class PendingTransactionStore(ABC):
    """Key-value store of pending transactions keyed by checkout id."""

    @abstractmethod
    async def get(self, checkout_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def put(self, checkout_id: str, entry: dict[str, Any]) -> None:
        ...

    async def merge(self, checkout_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply ``updates`` on top of the current entry, creating it if absent."""
        entry = {**(await self.get(checkout_id) or {}), **updates}
        await self.put(checkout_id, entry)
        return entry


class InMemoryPendingStore(PendingTransactionStore):
    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}

    async def get(self, checkout_id: str) -> Optional[dict[str, Any]]:
        entry = self._entries.get(checkout_id)
        return dict(entry) if entry is not None else None

    async def put(self, checkout_id: str, entry: dict[str, Any]) -> None:
        self._entries[checkout_id] = dict(entry)


class RedisPendingStore(PendingTransactionStore):
    """
    Pending transactions stored as JSON documents in Redis.

    Args:
        client: Connected Redis client
        ttl_seconds: Lifetime of an entry, refreshed on every write
        keys: Key naming helper
    """

    def __init__(
        self,
        client: RedisClient,
        ttl_seconds: int,
        keys: Optional[CacheKeyManager] = None,
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.keys = keys or CacheKeyManager()

    async def get(self, checkout_id: str) -> Optional[dict[str, Any]]:
        return await self.client.get_json(self.keys.mpesa_transaction_key(checkout_id))

    async def put(self, checkout_id: str, entry: dict[str, Any]) -> None:
        await self.client.set_json(
            self.keys.mpesa_transaction_key(checkout_id), entry, ex=self.ttl_seconds
        )


_memory_store: Optional[InMemoryPendingStore] = None


async def get_pending_store(settings: Optional[Settings] = None) -> PendingTransactionStore:
    """Pending transaction store for the configured backend."""
    global _memory_store

    settings = settings or get_settings()
    if settings.mpesa_pending_backend == "redis":
        client = await get_redis_client()
        return RedisPendingStore(client, settings.mpesa_pending_ttl_seconds)

    if _memory_store is None:
        logger.info("Using in-process pending transaction store")
        _memory_store = InMemoryPendingStore()
    return _memory_store
