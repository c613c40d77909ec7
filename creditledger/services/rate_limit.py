"""Sliding-window rate limiting: per-key request timestamps in memory or Redis."""

import math
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable

from fastapi import Request

from creditledger.core.config import Settings, get_settings
from creditledger.core.logging import get_logger
from creditledger.core.security import client_address

log = get_logger(__name__)

KEY_PREFIX = "creditledger:rate"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    retry_after_seconds: int = 0

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat(),
        }


def _retry_after(oldest: float, window_seconds: float, now: float) -> int:
    return max(1, math.ceil(oldest + window_seconds - now))


class RateLimitStore(ABC):
    @abstractmethod
    async def admit(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Record a request against key if under the limit; a rejected request consumes nothing."""
        ...

    @abstractmethod
    async def reset(self, key: str) -> None: ...

    @abstractmethod
    async def inspect(self, key: str) -> list[float]: ...

    @abstractmethod
    async def sweep(self) -> int:
        """Drop keys whose windows hold no live timestamps; return how many."""
        ...


class _Window:
    __slots__ = ("hits", "window_seconds")

    def __init__(self, window_seconds: float) -> None:
        self.hits: deque[float] = deque()
        self.window_seconds = window_seconds

    def prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.hits and self.hits[0] <= cutoff:
            self.hits.popleft()


class MemoryRateLimitStore(RateLimitStore):
    """Process-local windows. Not shared between workers."""

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}
        self._last_sweep = clock()

    def _sweep_locked(self, now: float) -> int:
        expired = []
        for key, window in self._windows.items():
            window.prune(now)
            if not window.hits:
                expired.append(key)
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        return len(expired)

    async def admit(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_locked(now)
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = _Window(window_seconds)
            window.window_seconds = window_seconds
            window.prune(now)
            hits = window.hits
            if len(hits) >= limit:
                oldest = hits[0] if hits else now
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=oldest + window_seconds,
                    retry_after_seconds=_retry_after(oldest, window_seconds, now),
                )
            hits.append(now)
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - len(hits),
                reset_at=hits[0] + window_seconds,
            )

    async def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    async def inspect(self, key: str) -> list[float]:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return []
            window.prune(now)
            return list(window.hits)

    async def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            return self._sweep_locked(now)


class RedisRateLimitStore(RateLimitStore):
    """One sorted set per key, scored by request time. Fails open if Redis is down."""

    def __init__(self, redis, clock: Callable[[], float] = time.time) -> None:
        self._redis = redis
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimitStore":
        import redis.asyncio as aioredis
        return cls(aioredis.from_url(url, decode_responses=True))

    async def admit(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now - window_seconds)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.expire(key, math.ceil(window_seconds) + 1)
                _, _, count, oldest, _ = await pipe.execute()
            oldest_ts = oldest[0][1] if oldest else now
            if count > limit:
                await self._redis.zrem(key, member)
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=oldest_ts + window_seconds,
                    retry_after_seconds=_retry_after(oldest_ts, window_seconds, now),
                )
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - count),
                reset_at=oldest_ts + window_seconds,
            )
        except Exception as e:
            log.warning("rate_limit_store_unavailable", key=key, error=str(e))
            return RateLimitResult(allowed=True, limit=limit, remaining=limit, reset_at=now + window_seconds)

    async def reset(self, key: str) -> None:
        await self._redis.delete(key)

    async def inspect(self, key: str) -> list[float]:
        rows = await self._redis.zrange(key, 0, -1, withscores=True)
        return [score for _, score in rows]

    async def sweep(self) -> int:
        # Keys carry a TTL; Redis expires idle windows itself
        return 0


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int
    per_route: bool = True


def get_policies(settings: Settings | None = None) -> dict[str, RateLimitPolicy]:
    s = settings or get_settings()
    return {
        "auth": RateLimitPolicy("auth", s.rate_limit_auth_max, s.rate_limit_auth_window_seconds),
        "payment": RateLimitPolicy("payment", s.rate_limit_payment_max, s.rate_limit_payment_window_seconds),
        "workflow": RateLimitPolicy("workflow", s.rate_limit_workflow_max, s.rate_limit_workflow_window_seconds),
        "default": RateLimitPolicy(
            "default", s.rate_limit_default_max, s.rate_limit_default_window_seconds, per_route=False
        ),
    }


def client_identifier(request: Request, trusted_proxies: frozenset[str] | None = None) -> str:
    return client_address(request, trusted_proxies) or "unknown"


def rate_limit_key(policy: RateLimitPolicy, request: Request) -> str:
    client_id = client_identifier(request)
    if not policy.per_route:
        return f"{KEY_PREFIX}:{policy.name}:{client_id}"
    route = request.scope.get("route")
    path = getattr(route, "path", None) or request.url.path
    return f"{KEY_PREFIX}:{policy.name}:{client_id}:{path}"


@lru_cache
def get_rate_limit_store() -> RateLimitStore:
    settings = get_settings()
    if settings.rate_limit_backend == "redis":
        return RedisRateLimitStore.from_url(settings.redis_url)
    return MemoryRateLimitStore(sweep_interval=settings.rate_limit_sweep_seconds)
