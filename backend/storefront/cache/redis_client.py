"""
Redis client with connection pooling for shared, expiring state.

The storefront keeps pending M-Pesa STK push transactions in Redis when it
runs as more than one process. This module provides the async client used
for that, JSON helpers for storing transaction documents, and key naming
utilities.
"""

import json
from typing import Any, Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from storefront.core.config import get_settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.

    Provides the subset of Redis operations the storefront needs with
    automatic connection management and structured error logging.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        """
        Initialize Redis client configuration.

        Args:
            url: Redis connection URL (defaults to settings.redis_url)
            max_connections: Maximum pool connections (defaults to settings)
            socket_timeout: Socket operation timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
            health_check_interval: Health check interval in seconds
        """
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Strip credentials from a Redis URL for logging."""
        if "@" in url:
            protocol, rest = url.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
        return url

    async def connect(self) -> None:
        """
        Create the connection pool and verify connectivity with a ping.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            logger.warning("Redis client already connected")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                retry_on_timeout=True,
                health_check_interval=self._health_check_interval,
                retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._is_connected = True

            logger.info(
                "Redis connection established",
                url=self._sanitize_url(self._url),
                pool_size=self._max_connections,
            )

        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self._release()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close the client and release the connection pool."""
        if not self._is_connected:
            return
        await self._release()
        logger.info("Redis connection closed")

    async def _release(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.aclose()
            self._pool = None
        self._is_connected = False

    async def health_check(self) -> bool:
        if not self._is_connected or not self._client:
            return False
        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.error("Redis health check failed", error=str(e), error_type=type(e).__name__)
            return False

    def _ensure_connected(self) -> Redis:
        if not self._is_connected or not self._client:
            raise ConnectionError("Redis client is not connected")
        return self._client

    async def get(self, key: str) -> Optional[str]:
        """
        Get a value by key.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If the Redis operation fails
        """
        client = self._ensure_connected()
        try:
            value = await client.get(key)
            logger.debug("Redis GET operation", key=key, found=value is not None)
            return value
        except RedisError as e:
            logger.error("Redis GET operation failed", key=key, error=str(e))
            raise

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
    ) -> bool:
        """
        Set a value with optional expiration.

        Args:
            key: Key to write
            value: Value to store
            ex: Expiration time in seconds

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If the Redis operation fails
        """
        client = self._ensure_connected()
        try:
            result = await client.set(key, value, ex=ex)
            logger.debug("Redis SET operation", key=key, ex=ex, success=bool(result))
            return bool(result)
        except RedisError as e:
            logger.error("Redis SET operation failed", key=key, error=str(e))
            raise

    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        """
        Get a JSON document by key.

        Raises:
            json.JSONDecodeError: If the stored value is not valid JSON
        """
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Failed to decode JSON from Redis", key=key, error=str(e))
            raise

    async def set_json(
        self,
        key: str,
        value: dict[str, Any],
        ex: Optional[int] = None,
    ) -> bool:
        """
        Store a dictionary as JSON.

        Raises:
            TypeError: If value is not JSON serializable
        """
        try:
            json_value = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize value to JSON", key=key, error=str(e))
            raise
        return await self.set(key, json_value, ex=ex)


class CacheKeyManager:
    """Builds namespaced Redis keys."""

    def __init__(self, namespace: str = "storefront"):
        self.namespace = namespace

    def make_key(self, *parts: Union[str, int]) -> str:
        """
        Generate a key from parts.

        Example:
            >>> CacheKeyManager("app").make_key("mpesa", "ws_CO_1")
            'app:mpesa:ws_CO_1'
        """
        key_parts = [str(part) for part in parts if part]
        return ":".join([self.namespace] + key_parts)

    def mpesa_transaction_key(self, checkout_id: str) -> str:
        """Key of a pending M-Pesa transaction."""
        return self.make_key("mpesa", "checkout", checkout_id)


_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create the global Redis client.

    Raises:
        ConnectionError: If the Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def check_redis_health() -> bool:
    """Connect if needed and ping Redis; a failed connection reports unhealthy."""
    try:
        client = await get_redis_client()
    except RedisError as e:
        logger.warning("Redis unavailable", error=str(e))
        return False
    return await client.health_check()


async def close_redis_client() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
