"""Key-value stores with per-key expiry backing the market data cache and rate limits."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """Raised when the backing store cannot be reached or rejects a command."""


class CacheStore(Protocol):
    """Operations the service relies on. Semantics follow Redis."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def aclose(self) -> None: ...


@dataclass
class _Entry:
    value: str
    expires_at: float | None


class InMemoryCacheStore:
    """Thread-safe in-process store with Redis-like TTL semantics.

    Suitable for a single process (local runs and tests); it is not shared
    across workers the way Redis is.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._items: Dict[str, _Entry] = {}
        self._lock = RLock()
        self._clock = clock

    def _now(self) -> float:
        return self._clock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._items.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._now():
            del self._items[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._lock:
            expires_at = self._now() + ttl_seconds if ttl_seconds else None
            self._items[key] = _Entry(value=value, expires_at=expires_at)

    async def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(value="0", expires_at=None)
                self._items[key] = entry
            try:
                count = int(entry.value) + 1
            except ValueError as exc:
                raise StoreUnavailableError(f"value at {key} is not an integer") from exc
            entry.value = str(count)
            return count

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._now() + seconds
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            return max(0, int(round(entry.expires_at - self._now())))

    async def aclose(self) -> None:
        with self._lock:
            self._items.clear()


class RedisCacheStore:
    """Adapter over ``redis.asyncio`` translating client errors into ``StoreUnavailableError``."""

    def __init__(
        self,
        url: str,
        *,
        password: str | None = None,
        client: aioredis.Redis | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._client = client or aioredis.from_url(
            url,
            password=password,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        self._owns_client = client is None

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except (RedisError, OSError) as exc:
            logger.warning("Redis %s failed: %s", operation, exc)
            raise StoreUnavailableError(f"redis {operation} failed: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._call("set", self._client.set(key, value, ex=ttl_seconds))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", self._client.incr(key)))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._call("expire", self._client.expire(key, seconds)))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", self._client.ttl(key)))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
