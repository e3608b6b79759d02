# tests/v1/test_dependencies.py
"""Tests for API dependencies module."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import Response
from fastapi.security import HTTPAuthorizationCredentials

from anons_auth.api.v1 import dependencies
from anons_auth.api.v1.dependencies import (
    client_identity,
    enforce_rate_limit,
    get_session,
    require_current_holder,
    require_holder,
    require_member,
)
from anons_auth.core.errors import CapabilityDenied, RateLimited, SessionInvalid
from anons_auth.services.capabilities import CapabilitySnapshot
from anons_auth.services.nonce import MemoryNonceStore, RedisNonceStore
from anons_auth.services.rate_limit import MemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from anons_auth.services.session import SessionPayload

ADDRESS = "0x" + "ab" * 20


def _payload(auth_method: str = "siwa", **caps) -> SessionPayload:
    return SessionPayload(
        address=ADDRESS,
        agent_id=None,
        capabilities=CapabilitySnapshot(**caps),
        auth_method=auth_method,
    )


def _request(host: str = "10.0.0.1") -> MagicMock:
    request = MagicMock()
    request.client.host = host
    return request


class TestTierPredicates:
    def test_member_accepts_holder_and_delegate(self):
        assert require_member(_payload(is_holder=True)).address == ADDRESS
        assert require_member(_payload(is_delegated=True)).address == ADDRESS

    def test_member_rejects_plain_and_legacy_sessions(self):
        with pytest.raises(CapabilityDenied):
            require_member(_payload())
        with pytest.raises(CapabilityDenied):
            require_member(_payload("legacy", is_holder=True))

    def test_holder_rejects_delegate(self):
        assert require_holder(_payload(is_holder=True)).address == ADDRESS
        with pytest.raises(CapabilityDenied):
            require_holder(_payload(is_delegated=True))

    @pytest.mark.asyncio
    async def test_current_holder_consults_resolver(self):
        resolver = MagicMock()
        resolver.resolve = AsyncMock(return_value=CapabilitySnapshot(is_holder=True))
        session = _payload(is_holder=True)

        assert await require_current_holder(session, resolver) is session
        resolver.resolve.assert_awaited_once_with(ADDRESS)

    @pytest.mark.asyncio
    async def test_current_holder_rejects_former_holder(self):
        resolver = MagicMock()
        resolver.resolve = AsyncMock(return_value=CapabilitySnapshot())
        with pytest.raises(CapabilityDenied):
            await require_current_holder(_payload(is_holder=True), resolver)

    @pytest.mark.asyncio
    async def test_current_holder_rejects_legacy_without_lookup(self):
        resolver = MagicMock()
        resolver.resolve = AsyncMock()
        with pytest.raises(CapabilityDenied):
            await require_current_holder(_payload("legacy"), resolver)
        resolver.resolve.assert_not_awaited()


class TestGetSession:
    def test_valid_token_is_keyed_by_address(self, session_manager):
        token = session_manager.issue(ADDRESS, None, CapabilitySnapshot.none())
        limiter = MagicMock(spec=RateLimiter)
        limiter.check.return_value = MagicMock(allowed=True, headers={})

        payload = get_session(
            _request(),
            Response(),
            HTTPAuthorizationCredentials(scheme="Bearer", credentials=token),
            session_manager,
            limiter,
        )

        assert payload.address == ADDRESS
        limiter.check.assert_called_once_with(ADDRESS)

    def test_missing_token_is_keyed_by_client_ip(self, session_manager):
        limiter = MagicMock(spec=RateLimiter)
        limiter.check.return_value = MagicMock(allowed=True, headers={})

        with pytest.raises(SessionInvalid):
            get_session(_request("10.1.2.3"), Response(), None, session_manager, limiter)
        limiter.check.assert_called_once_with("ip:10.1.2.3")

    def test_rate_limit_applies_before_session_check(self, session_manager):
        limiter = RateLimiter(limit=1, window_seconds=60)
        bad = HTTPAuthorizationCredentials(scheme="Bearer", credentials="garbage")

        with pytest.raises(SessionInvalid):
            get_session(_request(), Response(), bad, session_manager, limiter)
        with pytest.raises(RateLimited):
            get_session(_request(), Response(), bad, session_manager, limiter)


def test_enforce_rate_limit_sets_headers():
    request = _request()
    response = Response()
    result = enforce_rate_limit(
        RateLimiter(limit=5, window_seconds=60), ADDRESS, request, response
    )
    assert result.remaining == 4
    assert response.headers["X-RateLimit-Remaining"] == "4"
    assert request.state.rate_limit_headers["X-RateLimit-Remaining"] == "4"


def test_client_identity_without_client():
    request = MagicMock()
    request.client = None
    assert client_identity(request) == "ip:unknown"


class TestStoreSelection:
    @pytest.fixture(autouse=True)
    def clear_caches(self):
        dependencies.get_nonce_registry.cache_clear()
        dependencies.get_rate_limiter.cache_clear()
        dependencies.get_redis.cache_clear()
        yield
        dependencies.get_nonce_registry.cache_clear()
        dependencies.get_rate_limiter.cache_clear()
        dependencies.get_redis.cache_clear()

    def test_memory_backend_by_default(self):
        assert isinstance(dependencies.get_nonce_registry()._store, MemoryNonceStore)
        assert isinstance(dependencies.get_rate_limiter()._store, MemoryRateLimitStore)

    def test_redis_backend_when_configured(self, mocker):
        mocker.patch.object(dependencies.settings, "store_backend", "redis")
        with patch("anons_auth.api.v1.dependencies.redis.from_url") as from_url:
            registry = dependencies.get_nonce_registry()
            limiter = dependencies.get_rate_limiter()

        from_url.assert_called_once()
        assert isinstance(registry._store, RedisNonceStore)
        assert isinstance(limiter._store, RedisRateLimitStore)
