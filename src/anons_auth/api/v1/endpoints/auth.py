"""Authentication endpoints: nonce, verify, session and legacy login."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, Response, status

from anons_auth.api.v1.dependencies import (
    AuthServiceDep,
    CurrentSession,
    RateLimiterDep,
    client_identity,
    enforce_rate_limit,
)
from anons_auth.core.settings import settings
from anons_auth.schemas.auth import (
    LegacyRequest,
    LegacyResponse,
    NonceRequest,
    NonceResponse,
    SessionResponse,
    VerifyRequest,
    VerifyResponse,
)
from anons_auth.services.message import format_timestamp

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/nonce", response_model=NonceResponse)
async def request_nonce(
    body: NonceRequest,
    request: Request,
    response: Response,
    auth_service: AuthServiceDep,
    limiter: RateLimiterDep,
) -> NonceResponse:
    """Issue a single-use nonce and the challenge message embedding it.

    Keyed on the client only: the requested address is not yet proven.
    """
    enforce_rate_limit(limiter, client_identity(request), request, response)
    issued = await auth_service.issue_challenge(body.address, body.agent_id, body.agent_registry)
    return NonceResponse(
        nonce=issued.nonce,
        message=issued.message,
        expires_in=issued.expires_in,
        issued_at=format_timestamp(issued.challenge.issued_at),
        expiration_time=format_timestamp(issued.challenge.expiration_time),
        domain=issued.challenge.domain,
    )


@router.post("/verify", response_model=VerifyResponse)
async def verify(
    body: VerifyRequest,
    request: Request,
    response: Response,
    auth_service: AuthServiceDep,
    limiter: RateLimiterDep,
) -> VerifyResponse:
    """Verify a signed challenge and exchange it for a session credential.

    Counted against the client first, then against the address once the
    signature proves it.
    """
    enforce_rate_limit(limiter, client_identity(request), request, response)

    session = await auth_service.verify(
        body.message,
        body.signature,
        on_verified=lambda address: enforce_rate_limit(limiter, address, request, response),
    )
    caps = session.capabilities
    return VerifyResponse(
        token=session.token,
        expires_in=session.expires_in,
        address=session.address,
        agent_id=session.agent_id,
        is_holder=caps.is_holder,
        is_delegated=caps.is_delegated,
        is_registered_agent=caps.is_registered_agent,
        voting_power=str(caps.voting_power),
    )


@router.get("/session", response_model=SessionResponse)
async def read_session(session: CurrentSession) -> SessionResponse:
    """Return the decoded contents of the presented session credential."""
    return SessionResponse(**session.to_response())


@router.post("/legacy", response_model=LegacyResponse)
async def legacy_login(
    body: LegacyRequest,
    request: Request,
    response: Response,
    auth_service: AuthServiceDep,
    limiter: RateLimiterDep,
) -> LegacyResponse:
    """Signature-only login for older agents.

    Sessions minted here authenticate the caller but carry no capabilities.
    """
    if not settings.legacy_auth_enabled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Legacy authentication is disabled",
        )

    enforce_rate_limit(limiter, client_identity(request), request, response)

    session = auth_service.verify_legacy(
        body.message,
        body.signature,
        body.agent_id,
        on_verified=lambda address: enforce_rate_limit(limiter, address, request, response),
    )
    return LegacyResponse(
        token=session.token,
        expires_in=session.expires_in,
        address=session.address,
        agent_id=session.agent_id,
    )
