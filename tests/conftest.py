# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections import Counter
from collections.abc import Iterator
from typing import Any

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from fastapi import FastAPI
from fastapi.testclient import TestClient

os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["BASE_RPC_URL"] = ""
os.environ["STORE_BACKEND"] = "memory"
os.environ["API_DOMAIN"] = "api.anons.lol"
os.environ["CHAIN_ID"] = "8453"

from anons_auth.api.v1 import dependencies
from anons_auth.core.settings import settings
from anons_auth.main import app as fastapi_app
from anons_auth.services.auth import AuthService
from anons_auth.services.capabilities import CapabilityResolver
from anons_auth.services.ledger import LedgerError, LedgerQuery
from anons_auth.services.nonce import NonceRegistry
from anons_auth.services.rate_limit import RateLimiter
from anons_auth.services.session import SessionManager

TEST_SECRET = "test-jwt-secret"


class FakeLedger(LedgerQuery):
    """In-memory ledger with per-method call counters and failure switches."""

    def __init__(self) -> None:
        self.balances: dict[str, int] = {}
        self.votes: dict[str, int] = {}
        self.registered: set[str] = set()
        self.agent_owners: dict[int, str] = {}
        self.calls: Counter[str] = Counter()
        self.failing: set[str] = set()
        self.delay: float = 0.0

    async def _answer(self, method: str, value: Any) -> Any:
        self.calls[method] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if method in self.failing:
            raise LedgerError(f"{method} unavailable")
        return value

    async def get_balance(self, token_contract: str, address: str, block: Any = "latest") -> int:
        return await self._answer("get_balance", self.balances.get(address.lower(), 0))

    async def get_voting_power(
        self, delegation_contract: str, address: str, block: Any = "latest"
    ) -> int:
        return await self._answer("get_voting_power", self.votes.get(address.lower(), 0))

    async def is_registered_member(self, registry: str, address: str, block: Any = "latest") -> bool:
        return await self._answer("is_registered_member", address.lower() in self.registered)

    async def get_agent_owner(self, registry: str, agent_id: int, block: Any = "latest") -> str:
        owner = await self._answer("get_agent_owner", self.agent_owners.get(agent_id))
        if owner is None:
            raise LedgerError(f"ownerOf({agent_id}) reverted")
        return owner

    @property
    def batches(self) -> int:
        return self.calls["get_balance"]


def sign_text(account: LocalAccount, text: str) -> str:
    """personal_sign ``text`` and return the 0x-prefixed hex signature."""
    signed = account.sign_message(encode_defunct(text=text))
    return "0x" + bytes(signed.signature).hex()


def authenticate(client: TestClient, account: LocalAccount, agent_id: int | None = None) -> dict:
    """Run the nonce -> sign -> verify flow and return the verify response body."""
    payload: dict[str, Any] = {"address": account.address}
    if agent_id is not None:
        payload["agentId"] = agent_id
    nonce = client.post("/api/v1/auth/nonce", json=payload)
    assert nonce.status_code == 200, nonce.text
    message = nonce.json()["message"]
    verify = client.post(
        "/api/v1/auth/verify",
        json={"message": message, "signature": sign_text(account, message)},
    )
    assert verify.status_code == 200, verify.text
    return verify.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def resolver(fake_ledger: FakeLedger) -> CapabilityResolver:
    return CapabilityResolver(
        fake_ledger,
        cache_ttl_seconds=30,
        query_timeout_seconds=1,
        deadline_seconds=2,
    )


@pytest.fixture()
def nonce_registry() -> NonceRegistry:
    return NonceRegistry(ttl_seconds=300)


@pytest.fixture()
def rate_limiter() -> RateLimiter:
    return RateLimiter(limit=60, window_seconds=60)


@pytest.fixture()
def session_manager() -> SessionManager:
    return SessionManager(TEST_SECRET, ttl_seconds=86_400)


@pytest.fixture()
def auth_service(
    nonce_registry: NonceRegistry,
    resolver: CapabilityResolver,
    session_manager: SessionManager,
) -> AuthService:
    return AuthService(
        nonce_registry,
        resolver,
        session_manager,
        domain=settings.api_domain,
        chain_id=settings.chain_id,
    )


@pytest.fixture()
def wallet() -> LocalAccount:
    return Account.create()


@pytest.fixture()
def other_wallet() -> LocalAccount:
    return Account.create()


@pytest.fixture()
def app(
    nonce_registry: NonceRegistry,
    rate_limiter: RateLimiter,
    resolver: CapabilityResolver,
    session_manager: SessionManager,
    auth_service: AuthService,
) -> Iterator[FastAPI]:
    overrides = {
        dependencies.get_nonce_registry: lambda: nonce_registry,
        dependencies.get_rate_limiter: lambda: rate_limiter,
        dependencies.get_capability_resolver: lambda: resolver,
        dependencies.get_session_manager: lambda: session_manager,
        dependencies.get_auth_service: lambda: auth_service,
    }
    fastapi_app.dependency_overrides.update(overrides)
    try:
        yield fastapi_app
    finally:
        fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def holder(wallet: LocalAccount, fake_ledger: FakeLedger) -> LocalAccount:
    """Wallet that directly owns two Anons."""
    fake_ledger.balances[wallet.address.lower()] = 2
    fake_ledger.votes[wallet.address.lower()] = 2
    fake_ledger.registered.add(wallet.address.lower())
    return wallet


@pytest.fixture()
def delegate(other_wallet: LocalAccount, fake_ledger: FakeLedger) -> LocalAccount:
    """Wallet holding no Anons but carrying delegated votes."""
    fake_ledger.votes[other_wallet.address.lower()] = 3
    return other_wallet
