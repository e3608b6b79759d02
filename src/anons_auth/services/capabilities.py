"""On-chain capability resolution with a bounded-staleness cache.

The resolver answers "what is this identity allowed to do?" from three ledger
facts: direct ownership of the governance token, delegated voting power and
ERC-8004 agent registration. Results are cached per lowercased address for a
short TTL so bursts of requests do not hammer the RPC endpoint.

Failure policy: every sub-query degrades independently to ``False``/``0``.
Snapshots built from any degraded sub-query are returned but not cached, so
the next request retries the ledger.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, TypeVar

from anons_auth.core.security import normalize_address
from anons_auth.core.settings import settings
from anons_auth.services.ledger import LedgerError, LedgerQuery

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
T = TypeVar("T")


@dataclass(frozen=True)
class CapabilitySnapshot:
    """Point-in-time view of an identity's standing."""

    is_holder: bool = False
    direct_balance: int = 0
    is_delegated: bool = False
    voting_power: int = 0
    is_registered_agent: bool = False
    resolved_at: float = field(default_factory=time.time)

    @property
    def is_member(self) -> bool:
        return self.is_holder or self.is_delegated

    @classmethod
    def none(cls, resolved_at: float | None = None) -> CapabilitySnapshot:
        """Snapshot with every capability absent."""
        return cls(resolved_at=resolved_at if resolved_at is not None else time.time())

    def to_claims(self) -> dict[str, Any]:
        # Voting power can exceed 2**53, so it travels as a string.
        return {
            "isHolder": self.is_holder,
            "directBalance": self.direct_balance,
            "isDelegated": self.is_delegated,
            "votingPower": str(self.voting_power),
            "isRegisteredAgent": self.is_registered_agent,
            "resolvedAt": self.resolved_at,
        }

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> CapabilitySnapshot:
        return cls(
            is_holder=bool(claims["isHolder"]),
            direct_balance=int(claims["directBalance"]),
            is_delegated=bool(claims["isDelegated"]),
            voting_power=int(claims["votingPower"]),
            is_registered_agent=bool(claims["isRegisteredAgent"]),
            resolved_at=float(claims["resolvedAt"]),
        )


@dataclass(frozen=True)
class _CacheEntry:
    snapshot: CapabilitySnapshot
    expires_at: float


class CapabilityCache:
    """Lock-guarded TTL map from lowercased address to snapshot."""

    def __init__(self, ttl_seconds: float, clock: Clock = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = Lock()

    def get(self, key: str) -> CapabilitySnapshot | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry.snapshot

    def set(self, key: str, snapshot: CapabilitySnapshot) -> None:
        with self._lock:
            self._entries[key] = _CacheEntry(snapshot, self._clock() + self.ttl_seconds)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CapabilityResolver:
    """Resolves and caches capability snapshots for identities."""

    def __init__(
        self,
        ledger: LedgerQuery | None,
        *,
        token_contract: str | None = None,
        delegation_contract: str | None = None,
        registry_contract: str | None = None,
        cache_ttl_seconds: float | None = None,
        query_timeout_seconds: float | None = None,
        deadline_seconds: float | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._ledger = ledger
        self.token_contract = token_contract or settings.token_contract
        self.delegation_contract = delegation_contract or settings.effective_delegation_contract
        self.registry_contract = registry_contract or settings.agent_registry_contract
        self.query_timeout_seconds = (
            query_timeout_seconds
            if query_timeout_seconds is not None
            else settings.ledger_query_timeout_seconds
        )
        self.deadline_seconds = (
            deadline_seconds
            if deadline_seconds is not None
            else settings.capability_resolution_deadline_seconds
        )
        self._clock = clock
        self.cache = CapabilityCache(
            cache_ttl_seconds
            if cache_ttl_seconds is not None
            else settings.capability_cache_ttl_seconds,
            clock=clock,
        )
        self._inflight: dict[str, asyncio.Future[CapabilitySnapshot]] = {}

    async def resolve(self, address: str) -> CapabilitySnapshot:
        """Return the capability snapshot for ``address``, cache first.

        Never raises: a missing ledger or total failure yields a snapshot with
        every capability absent.
        """
        key = normalize_address(address)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        # Concurrent misses for one key share a single query batch.
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._resolve_uncached(key))
            self._inflight[key] = pending
            pending.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(pending)

    def invalidate(self, address: str) -> bool:
        return self.cache.invalidate(normalize_address(address))

    async def owns_agent(self, address: str, agent_id: int) -> bool:
        """Return True if ``address`` owns ERC-8004 agent ``agent_id``.

        Uncached. Fails closed: no ledger, an unminted agent or any ledger
        failure answers False.
        """
        if self._ledger is None:
            logger.warning("No ledger configured; cannot confirm owner of agent %d", agent_id)
            return False
        outcome = await self._guard(
            "agent owner",
            self._ledger.get_agent_owner(self.registry_contract, agent_id),
            None,
        )
        if not outcome.ok or not isinstance(outcome.value, str):
            return False
        return normalize_address(outcome.value) == normalize_address(address)

    async def _resolve_uncached(self, key: str) -> CapabilitySnapshot:
        if self._ledger is None:
            return CapabilitySnapshot.none(self._clock())

        ledger = self._ledger
        balance, votes, registered = await self._gather(
            ("balance", ledger.get_balance(self.token_contract, key), 0),
            ("voting power", ledger.get_voting_power(self.delegation_contract, key), 0),
            ("registry membership", ledger.is_registered_member(self.registry_contract, key), False),
        )

        is_holder = balance.value > 0
        snapshot = CapabilitySnapshot(
            is_holder=is_holder,
            direct_balance=balance.value,
            is_delegated=votes.value > 0 and not is_holder,
            voting_power=votes.value,
            is_registered_agent=bool(registered.value),
            resolved_at=self._clock(),
        )
        if balance.ok and votes.ok and registered.ok:
            self.cache.set(key, snapshot)
        return snapshot

    async def _gather(self, *queries: tuple[str, Awaitable[Any], Any]) -> list[_Outcome]:
        """Run guarded queries concurrently under the overall deadline.

        Queries still running at the deadline are cancelled and reported as
        failed defaults.
        """
        tasks = [
            asyncio.ensure_future(self._guard(label, query, default))
            for label, query, default in queries
        ]
        done, pending = await asyncio.wait(tasks, timeout=self.deadline_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Capability resolution deadline (%.1fs) hit with %d query(ies) pending",
                self.deadline_seconds,
                len(pending),
            )
            await asyncio.gather(*pending, return_exceptions=True)
        return [
            task.result() if task in done else _Outcome(value=default, ok=False)
            for task, (_, _, default) in zip(tasks, queries, strict=True)
        ]

    async def _guard(self, label: str, query: Awaitable[T], default: T) -> _Outcome:
        try:
            value = await asyncio.wait_for(query, timeout=self.query_timeout_seconds)
        except TimeoutError:
            logger.warning("Ledger %s query timed out after %.1fs", label, self.query_timeout_seconds)
            return _Outcome(value=default, ok=False)
        except LedgerError as err:
            logger.warning("Ledger %s query failed: %s", label, err)
            return _Outcome(value=default, ok=False)
        except Exception:
            logger.exception("Unexpected error during ledger %s query", label)
            return _Outcome(value=default, ok=False)
        return _Outcome(value=value, ok=True)


@dataclass(frozen=True)
class _Outcome:
    value: Any
    ok: bool
