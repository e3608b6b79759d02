"""Shared API dependencies for authentication, authorization and rate limiting."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Any

import redis
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from anons_auth.core.errors import CapabilityDenied, RateLimited, SessionInvalid
from anons_auth.core.settings import settings
from anons_auth.services.auth import AuthService
from anons_auth.services.capabilities import CapabilityResolver, CapabilitySnapshot
from anons_auth.services.ledger import LedgerQuery, build_ledger
from anons_auth.services.nonce import MemoryNonceStore, NonceRegistry, RedisNonceStore
from anons_auth.services.rate_limit import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitResult,
    RedisRateLimitStore,
)
from anons_auth.services.session import SessionManager, SessionPayload

logger = logging.getLogger(__name__)

# Missing credentials are reported as session_invalid rather than FastAPI's 403.
bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache
def get_redis() -> Any:
    return redis.from_url(settings.redis_url, decode_responses=True)


@lru_cache
def get_nonce_registry() -> NonceRegistry:
    if settings.store_backend == "redis":
        return NonceRegistry(RedisNonceStore(get_redis()))
    return NonceRegistry(MemoryNonceStore())


@lru_cache
def get_rate_limiter() -> RateLimiter:
    if settings.store_backend == "redis":
        return RateLimiter(RedisRateLimitStore(get_redis()))
    return RateLimiter(MemoryRateLimitStore())


@lru_cache
def get_ledger() -> LedgerQuery | None:
    return build_ledger()


@lru_cache
def get_capability_resolver() -> CapabilityResolver:
    return CapabilityResolver(get_ledger())


@lru_cache
def get_session_manager() -> SessionManager:
    return SessionManager()


@lru_cache
def get_auth_service() -> AuthService:
    return AuthService(
        get_nonce_registry(),
        get_capability_resolver(),
        get_session_manager(),
    )


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
ResolverDep = Annotated[CapabilityResolver, Depends(get_capability_resolver)]
SessionManagerDep = Annotated[SessionManager, Depends(get_session_manager)]
AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]


def client_identity(request: Request) -> str:
    """Rate-limit key for callers that have not proven an address."""
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def enforce_rate_limit(
    limiter: RateLimiter, identity_key: str, request: Request, response: Response
) -> RateLimitResult:
    """Count the request against ``identity_key`` and attach the quota headers.

    The headers are also kept on ``request.state`` so error responses
    rendered by the ``AuthError`` handler carry them too.

    Raises:
        RateLimited: The identity has exhausted its quota for this window.
    """
    result = limiter.check(identity_key)
    if not result.allowed:
        logger.info("Rate limit exceeded for %s", identity_key)
        raise RateLimited(result.limit, result.reset_at)
    request.state.rate_limit_headers = result.headers
    response.headers.update(result.headers)
    return result


def get_session(
    request: Request,
    response: Response,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    sessions: SessionManagerDep,
    limiter: RateLimiterDep,
) -> SessionPayload:
    """Validate the bearer credential.

    The rate limit is applied first so that requests with bad credentials
    still consume quota.

    Raises:
        RateLimited: Quota exhausted for the caller.
        SessionInvalid: Missing, malformed, tampered or expired credential.
    """
    payload = sessions.validate(credentials.credentials) if credentials else None
    identity = payload.address if payload else client_identity(request)
    enforce_rate_limit(limiter, identity, request, response)
    if payload is None:
        raise SessionInvalid()
    return payload


# Any valid session, legacy included.
require_auth = get_session

CurrentSession = Annotated[SessionPayload, Depends(require_auth)]


def require_member(session: CurrentSession) -> SessionPayload:
    if not session.is_member:
        raise CapabilityDenied("Anons DAO membership required (hold or be delegated an Anon)")
    return session


def require_holder(session: CurrentSession) -> SessionPayload:
    if not session.is_holder:
        raise CapabilityDenied("Direct Anon ownership required")
    return session


async def require_current_holder(
    session: CurrentSession, resolver: ResolverDep
) -> SessionPayload:
    """Holder check against current ledger state rather than the session snapshot.

    Goes through the capability cache, so staleness is bounded by its TTL
    instead of the session lifetime.
    """
    if session.auth_method != "siwa":
        raise CapabilityDenied("Direct Anon ownership required")
    snapshot: CapabilitySnapshot = await resolver.resolve(session.address)
    if not snapshot.is_holder:
        raise CapabilityDenied("Direct Anon ownership required")
    return session


MemberSession = Annotated[SessionPayload, Depends(require_member)]
HolderSession = Annotated[SessionPayload, Depends(require_holder)]
CurrentHolderSession = Annotated[SessionPayload, Depends(require_current_holder)]
