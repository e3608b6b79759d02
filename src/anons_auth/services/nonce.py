"""Single-use challenge nonces.

Nonces are handed out with every challenge message and redeemed exactly once
by ``/auth/verify``. Consumption is an atomic check-and-delete so that two
concurrent verifications racing on the same nonce can never both succeed.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from threading import Lock
from typing import Any, Final

import redis

from anons_auth.core.security import normalize_address
from anons_auth.core.settings import settings

logger = logging.getLogger(__name__)

NONCE_ENTROPY_BYTES: Final[int] = 16

Clock = Callable[[], float]

# KEYS[1] = nonce key, ARGV[1] = expected lowercase address or ""
_CONSUME_SCRIPT: Final[str] = """
local bound = redis.call('GET', KEYS[1])
if not bound then
  return 0
end
if bound ~= '' and bound ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""


@dataclass(frozen=True)
class NonceEntry:
    """An outstanding challenge nonce."""

    value: str
    issued_at: float
    bound_address: str | None = None

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.issued_at >= ttl_seconds

    def matches(self, expected_address: str | None) -> bool:
        if self.bound_address is None:
            return True
        if expected_address is None:
            return False
        return self.bound_address == normalize_address(expected_address)


class NonceStore(ABC):
    """Storage backend for outstanding nonces."""

    @abstractmethod
    def put(self, entry: NonceEntry, ttl_seconds: int) -> None: ...

    @abstractmethod
    def consume(self, value: str, expected_address: str | None, ttl_seconds: int) -> bool:
        """Atomically validate and delete ``value``; False leaves the store untouched."""

    @abstractmethod
    def sweep(self, ttl_seconds: int) -> int:
        """Drop expired entries and return how many were removed."""


class MemoryNonceStore(NonceStore):
    """Process-local nonce store guarded by a single lock."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._entries: dict[str, NonceEntry] = {}
        self._lock = Lock()
        self._clock = clock

    def put(self, entry: NonceEntry, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[entry.value] = entry

    def consume(self, value: str, expected_address: str | None, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(value)
            if entry is None or entry.is_expired(now, ttl_seconds):
                return False
            if not entry.matches(expected_address):
                return False
            del self._entries[value]
            return True

    def sweep(self, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                value
                for value, entry in self._entries.items()
                if entry.is_expired(now, ttl_seconds)
            ]
            for value in expired:
                del self._entries[value]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisNonceStore(NonceStore):
    """Redis-backed nonce store for multi-instance deployments.

    Expiry relies on Redis key TTLs, so ``sweep`` has nothing to do.
    """

    def __init__(self, client: Any, prefix: str = "nonce:") -> None:
        self._redis = client
        self._prefix = prefix
        self._consume = client.register_script(_CONSUME_SCRIPT)

    def _key(self, value: str) -> str:
        return f"{self._prefix}{value}"

    def put(self, entry: NonceEntry, ttl_seconds: int) -> None:
        self._redis.set(self._key(entry.value), entry.bound_address or "", ex=ttl_seconds)

    def consume(self, value: str, expected_address: str | None, ttl_seconds: int) -> bool:
        expected = normalize_address(expected_address) if expected_address else ""
        try:
            return bool(int(self._consume(keys=[self._key(value)], args=[expected])))
        except redis.RedisError as err:
            logger.warning("Nonce consumption failed against redis: %s", err)
            return False

    def sweep(self, ttl_seconds: int) -> int:
        return 0


class NonceRegistry:
    """Issues and one-time-consumes challenge nonces."""

    def __init__(
        self,
        store: NonceStore | None = None,
        *,
        ttl_seconds: int | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._clock = clock
        self._store = store or MemoryNonceStore(clock=clock)
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.nonce_ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def issue(self, identity_hint: str | None = None) -> str:
        """Create a fresh nonce, optionally bound to the address that may redeem it."""
        value = secrets.token_hex(NONCE_ENTROPY_BYTES)
        bound = normalize_address(identity_hint) if identity_hint else None
        self._store.put(
            NonceEntry(value=value, issued_at=self._clock(), bound_address=bound),
            self._ttl_seconds,
        )
        return value

    def consume(self, value: str, expected_address: str | None = None) -> bool:
        """Redeem a nonce. Unknown, expired, used or mismatched nonces return False."""
        if not value:
            return False
        return self._store.consume(value, expected_address, self._ttl_seconds)

    def sweep(self) -> int:
        removed = self._store.sweep(self._ttl_seconds)
        if removed:
            logger.info("Purged %d expired nonce(s)", removed)
        return removed


class NonceSweeper:
    """Background task that periodically purges expired nonces.

    ``extra_sweeps`` lets other process-local stores (rate-limit counters) ride
    on the same schedule.
    """

    def __init__(
        self,
        registry: NonceRegistry,
        interval_seconds: float | None = None,
        extra_sweeps: Sequence[Callable[[], int]] = (),
    ) -> None:
        self.registry = registry
        self.extra_sweeps = tuple(extra_sweeps)
        self.interval_seconds = max(
            0.01,
            float(
                interval_seconds
                if interval_seconds is not None
                else settings.nonce_sweep_interval_seconds
            ),
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop if it is not already running."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                self.sweep_once()

    def sweep_once(self) -> int:
        removed = self.registry.sweep()
        for sweep in self.extra_sweeps:
            removed += sweep()
        return removed
