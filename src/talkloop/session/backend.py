"""Key/value backends for the session store."""
import asyncio
import fnmatch
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis

from ..config import StoreConfig
from ..exceptions import StoreUnavailable
from ..logging_config import setup_logger

logger = setup_logger("talkloop.session_backend")


class SessionBackend(ABC):
    """String key/value store with backend-enforced TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a value, or None if missing or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Set a value, optionally expiring after ``ttl_seconds``."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a key."""
        pass

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """List keys matching a glob-style pattern."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class RedisSessionBackend(SessionBackend):
    """Redis implementation.

    Every client failure surfaces as ``StoreUnavailable`` so the session
    store can degrade without knowing about Redis.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._client.get(key)
        except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis get failed: {e}") from e
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis set failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis delete failed: {e}") from e

    async def keys(self, pattern: str) -> List[str]:
        try:
            keys = await self._client.keys(pattern)
        except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Redis keys failed: {e}") from e
        return [k.decode() if isinstance(k, bytes) else k for k in keys]

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Error closing Redis client: {e}")


class InMemorySessionBackend(SessionBackend):
    """In-process backend for development and tests.

    Expiry is evaluated lazily on access against a monotonic clock.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, pattern: str) -> List[str]:
        return [k for k in list(self._data) if self._live(k) is not None and fnmatch.fnmatchcase(k, pattern)]


def create_session_backend(config: Optional[StoreConfig] = None) -> SessionBackend:
    """Factory function to create a Redis-backed session backend."""
    config = config or StoreConfig()
    client = redis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_timeout=config.socket_timeout_seconds,
        socket_connect_timeout=config.socket_timeout_seconds,
    )
    logger.info(f"Session backend configured for {config.redis_url}")
    return RedisSessionBackend(client)
