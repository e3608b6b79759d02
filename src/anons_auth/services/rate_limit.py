"""Fixed-window, per-identity rate limiting."""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any, Final

import redis

from anons_auth.core.settings import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# KEYS[1] = counter key, ARGV[1] = window length in ms.
# Returns {count, remaining window in ms}.
_HIT_SCRIPT: Final[str] = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


@dataclass
class RateLimitCounter:
    """Request counter for one identity in the current window."""

    identity_key: str
    count: int
    window_start: float
    window_length: float

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_length


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimitStore(ABC):
    """Storage backend for rate-limit counters."""

    @abstractmethod
    def hit(self, identity_key: str, window_seconds: float) -> tuple[int, float]:
        """Increment the counter for ``identity_key`` and return ``(count, reset_at)``.

        Starting a new window when the previous one has elapsed is part of the
        same atomic step.
        """

    def purge_expired(self) -> int:
        """Drop counters whose window has elapsed. Backends with native TTLs need nothing."""
        return 0


class MemoryRateLimitStore(RateLimitStore):
    """Process-local counters guarded by a single lock."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._counters: dict[str, RateLimitCounter] = {}
        self._lock = Lock()
        self._clock = clock

    def hit(self, identity_key: str, window_seconds: float) -> tuple[int, float]:
        now = self._clock()
        with self._lock:
            counter = self._counters.get(identity_key)
            if counter is None or counter.reset_at <= now:
                counter = RateLimitCounter(
                    identity_key=identity_key,
                    count=0,
                    window_start=now,
                    window_length=window_seconds,
                )
                self._counters[identity_key] = counter
            counter.count += 1
            return counter.count, counter.reset_at

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, counter in self._counters.items() if counter.reset_at <= now]
            for key in stale:
                del self._counters[key]
        return len(stale)


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed counters with native key expiry."""

    def __init__(self, client: Any, prefix: str = "ratelimit:", clock: Clock = time.time) -> None:
        self._redis = client
        self._prefix = prefix
        self._clock = clock
        self._hit = client.register_script(_HIT_SCRIPT)

    def hit(self, identity_key: str, window_seconds: float) -> tuple[int, float]:
        window_ms = max(1, int(window_seconds * 1000))
        count, ttl_ms = self._hit(keys=[f"{self._prefix}{identity_key}"], args=[window_ms])
        return int(count), self._clock() + int(ttl_ms) / 1000


class RateLimiter:
    """Bounds request volume per identity within a fixed window."""

    def __init__(
        self,
        store: RateLimitStore | None = None,
        *,
        limit: int | None = None,
        window_seconds: float | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._store = store or MemoryRateLimitStore(clock=clock)
        self.limit = limit if limit is not None else settings.rate_limit_requests
        self.window_seconds = float(
            window_seconds if window_seconds is not None else settings.rate_limit_window_seconds
        )
        self._clock = clock

    def check(self, identity_key: str) -> RateLimitResult:
        """Count one request against ``identity_key`` and report whether it is allowed."""
        key = identity_key.strip().lower()
        try:
            count, reset_at = self._store.hit(key, self.window_seconds)
        except redis.RedisError as err:
            # Fails open while the counter store is unreachable.
            logger.warning("Rate limit store unavailable: %s", err)
            return RateLimitResult(
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                reset_at=self._clock() + self.window_seconds,
            )
        return RateLimitResult(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
        )

    def purge_expired(self) -> int:
        return self._store.purge_expired()
