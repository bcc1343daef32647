"""
Fixed-window request counters used for rate limiting.

Supports an in-memory store for tests/local runs and a Redis-backed store so
limits hold across worker processes.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import redis


class RateLimitStore(Protocol):
    """Counts hits per key inside a fixed window."""

    def hit(self, key: str, window_seconds: int) -> int:
        """Record one request and return the number of requests in the current window."""
        ...

    def reset(self, key: str) -> None:
        ...


@dataclass
class InMemoryRateLimitStore:
    """Process-local counters. A window starts on the first hit for a key."""

    clock: Callable[[], float] = time.time
    windows: dict[str, tuple[int, float]] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self.clock()
            count, reset_at = self.windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self.windows[key] = (count, reset_at)
            return count

    def reset(self, key: str) -> None:
        with self._lock:
            self.windows.pop(key, None)


@dataclass
class RedisRateLimitStore:
    """Redis-backed counters using INCR with an expiry set on the first hit."""

    url: str
    key_prefix: str = "pollboard:ratelimit"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def hit(self, key: str, window_seconds: int) -> int:
        redis_key = self._key(key)
        pipe = self.client.pipeline()
        pipe.incr(redis_key)
        pipe.ttl(redis_key)
        count, ttl = pipe.execute()
        # ttl is -1 when the key exists without an expiry (first hit).
        if ttl is None or ttl < 0:
            self.client.expire(redis_key, window_seconds)
        return int(count)

    def reset(self, key: str) -> None:
        self.client.delete(self._key(key))
