"""Ledger query client for Base.

This module provides the read-only interface the capability resolver uses to
learn an identity's on-chain standing:

- ``LedgerQuery``: the abstract contract (balance, voting power, registry
  membership, agent ownership), so tests and alternative transports can stand in
- ``JsonRpcLedger``: an ``eth_call`` implementation over httpx
- ``CircuitBreaker``: fails fast while the RPC endpoint is unhealthy

Every failure surfaces as ``LedgerError``; callers decide how to degrade.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from anons_auth.core.settings import settings

# Configure logger for this module
logger = logging.getLogger(__name__)

BALANCE_OF = "balanceOf(address)"
GET_VOTES = "getVotes(address)"
OWNER_OF = "ownerOf(uint256)"

BlockTag = int | str
T = TypeVar("T")


class LedgerError(RuntimeError):
    """Raised when the ledger cannot answer a query.

    Covers transport failures, JSON-RPC errors, reverted or empty calls and
    an open circuit breaker.
    """


class CircuitState(Enum):
    """Circuit breaker states for the RPC endpoint."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Circuit breaker guarding ledger calls."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 1

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open, moving to half-open once the timeout passes."""
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(
                    "Ledger circuit breaker opened after %d failure(s)", self._failure_count
                )
            self._state = CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        return self._state


class LedgerQuery(ABC):
    """Read-only view of ledger state.

    Each method may raise ``LedgerError`` when the ledger is unavailable.
    """

    @abstractmethod
    async def get_balance(
        self, token_contract: str, address: str, block: BlockTag = "latest"
    ) -> int: ...

    @abstractmethod
    async def get_voting_power(
        self, delegation_contract: str, address: str, block: BlockTag = "latest"
    ) -> int: ...

    @abstractmethod
    async def is_registered_member(
        self, registry: str, address: str, block: BlockTag = "latest"
    ) -> bool: ...

    @abstractmethod
    async def get_agent_owner(
        self, registry: str, agent_id: int, block: BlockTag = "latest"
    ) -> str: ...

    async def close(self) -> None:
        return None


def encode_call(signature: str, *args: str | int) -> str:
    """ABI-encode a call whose arguments are addresses (str) or uint256 values (int)."""
    selector = function_signature_to_4byte_selector(signature)
    types = ["uint256" if isinstance(arg, int) else "address" for arg in args]
    values = [arg if isinstance(arg, int) else to_checksum_address(arg) for arg in args]
    payload = encode(types, values)
    return "0x" + (selector + payload).hex()


def decode_uint(result: str) -> int:
    """Decode a single ``uint256`` return value."""
    raw = bytes.fromhex(result.removeprefix("0x"))
    if not raw:
        raise LedgerError("Empty call result (contract missing or call reverted)")
    (value,) = decode(["uint256"], raw)
    return int(value)


def decode_address(result: str) -> str:
    """Decode a single ``address`` return value to its checksum form."""
    raw = bytes.fromhex(result.removeprefix("0x"))
    if not raw:
        raise LedgerError("Empty call result (contract missing or call reverted)")
    (value,) = decode(["address"], raw)
    return to_checksum_address(value)


def _block_param(block: BlockTag) -> str:
    return hex(block) if isinstance(block, int) else block


class JsonRpcLedger(LedgerQuery):
    """Ledger queries over Ethereum JSON-RPC ``eth_call``."""

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.ledger_query_timeout_seconds
        )
        self._client = client
        self._client_lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._breaker = breaker or CircuitBreaker(
            failure_threshold=settings.ledger_breaker_failure_threshold,
            recovery_timeout=settings.ledger_breaker_recovery_seconds,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        if self._breaker.is_open():
            raise LedgerError("Ledger circuit breaker is open - RPC unavailable")

        client = await self._ensure_client()
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await client.post(self.rpc_url, json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._breaker.record_failure()
            raise LedgerError(f"Ledger request failed: {exc}") from exc

        if not isinstance(payload, dict):
            self._breaker.record_failure()
            raise LedgerError("Malformed JSON-RPC response")

        # A JSON-RPC error is a healthy endpoint answering badly (usually a revert).
        self._breaker.record_success()
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise LedgerError(f"{method} failed: {message}")
        return payload.get("result")

    async def _eth_call(
        self,
        contract: str,
        signature: str,
        arg: str | int,
        block: BlockTag,
        decoder: Callable[[str], T],
    ) -> T:
        data = encode_call(signature, arg)
        result = await self._rpc(
            "eth_call",
            [{"to": contract, "data": data}, _block_param(block)],
        )
        if not isinstance(result, str):
            raise LedgerError(f"Unexpected eth_call result for {signature}")
        try:
            return decoder(result)
        except (ValueError, DecodingError) as exc:
            raise LedgerError(f"Undecodable eth_call result for {signature}") from exc

    async def get_balance(
        self, token_contract: str, address: str, block: BlockTag = "latest"
    ) -> int:
        return await self._eth_call(token_contract, BALANCE_OF, address, block, decode_uint)

    async def get_voting_power(
        self, delegation_contract: str, address: str, block: BlockTag = "latest"
    ) -> int:
        return await self._eth_call(delegation_contract, GET_VOTES, address, block, decode_uint)

    async def is_registered_member(
        self, registry: str, address: str, block: BlockTag = "latest"
    ) -> bool:
        """Return True if ``address`` owns an ERC-8004 agent identity token."""
        return await self._eth_call(registry, BALANCE_OF, address, block, decode_uint) > 0

    async def get_agent_owner(
        self, registry: str, agent_id: int, block: BlockTag = "latest"
    ) -> str:
        """Return the checksum owner of ERC-8004 agent ``agent_id``.

        Unminted agent IDs revert, which surfaces as ``LedgerError``.
        """
        return await self._eth_call(registry, OWNER_OF, agent_id, block, decode_address)


def build_ledger() -> LedgerQuery | None:
    """Build the configured ledger client, or None when no RPC URL is set."""
    if not settings.rpc_url:
        logger.warning("BASE_RPC_URL not configured; capabilities resolve to none")
        return None
    return JsonRpcLedger(settings.rpc_url)
