"""Fixed-window request limiter whose counters live in the shared cache store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from ..models import RateLimitDecision
from .cache_store import CacheStore, StoreUnavailableError
from .metrics import RATE_LIMIT_DECISIONS


logger = logging.getLogger(__name__)

ANONYMOUS_IDENTITY = "anonymous"


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = 20
    window_seconds: int = 60
    # When the store is unreachable: True lets the request through, False rejects it.
    fail_open: bool = True


def client_identity(headers: Mapping[str, str]) -> str:
    """Identify the caller from proxy headers.

    Clients without either header share the anonymous bucket.
    """

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return ANONYMOUS_IDENTITY


class RateLimiter:
    """Count requests per identity in a fixed window.

    No state is kept in process: the counter is a store key incremented
    atomically, so several workers share the same limit.
    """

    def __init__(
        self,
        store: CacheStore,
        config: RateLimitConfig | None = None,
        *,
        scope: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config or RateLimitConfig()
        self._scope = scope
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def key_for(self, identity: str) -> str:
        if self._scope:
            return f"rate:{self._scope}:{identity}"
        return f"rate:{identity}"

    async def check(self, identity: str) -> RateLimitDecision:
        config = self._config
        key = self.key_for(identity)
        now = int(self._clock())
        try:
            count = await self._store.incr(key)
            if count == 1:
                await self._store.expire(key, config.window_seconds)
            ttl = await self._store.ttl(key)
            if ttl == -1:
                # Counter survived without an expiry; bound it again.
                await self._store.expire(key, config.window_seconds)
                ttl = config.window_seconds
        except StoreUnavailableError as exc:
            return self._degraded(now, exc)

        reset = now + ttl if ttl > 0 else now + config.window_seconds
        allowed = count <= config.max_requests
        RATE_LIMIT_DECISIONS.labels(scope=self._scope or "default", outcome="allowed" if allowed else "limited").inc()
        if not allowed:
            logger.info("Rate limit exceeded for %s (%d/%d)", identity, count, config.max_requests)
        return RateLimitDecision(
            allowed=allowed,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - count),
            reset=reset,
        )

    def _degraded(self, now: int, exc: Exception) -> RateLimitDecision:
        config = self._config
        RATE_LIMIT_DECISIONS.labels(scope=self._scope or "default", outcome="degraded").inc()
        logger.warning(
            "Rate limit store unavailable, failing %s: %s",
            "open" if config.fail_open else "closed",
            exc,
        )
        return RateLimitDecision(
            allowed=config.fail_open,
            limit=config.max_requests,
            remaining=config.max_requests if config.fail_open else 0,
            reset=now + config.window_seconds,
            degraded=True,
        )
