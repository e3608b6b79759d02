"""Challenge/response authentication flow.

``AuthService`` wires the nonce registry, message codec, signature verifier,
capability resolver and session manager into the two halves of the
handshake. Checks run cheapest first: parse, domain, expiry, signature, then
the one-time nonce. The nonce is only burnt once the signature is known to be
good, and the ledger is only consulted after the nonce is consumed. A claimed
agent ID must be owned by the signer in the ERC-8004 registry.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from anons_auth.core.errors import (
    CapabilityDenied,
    InvalidRequest,
    MessageExpired,
    MessageRejected,
    NonceRejected,
    SignatureInvalid,
)
from anons_auth.core.security import is_valid_address, verify_signature
from anons_auth.core.settings import settings
from anons_auth.services import message as codec
from anons_auth.services.capabilities import CapabilityResolver, CapabilitySnapshot
from anons_auth.services.message import ChallengeMessage, MessageParseError
from anons_auth.services.nonce import NonceRegistry
from anons_auth.services.session import SessionManager

logger = logging.getLogger(__name__)

LEGACY_ADDRESS_PATTERN = re.compile(r"Address: (0x[a-fA-F0-9]{40})")

SignatureVerifier = Callable[[str, str, str], bool]
VerifiedHook = Callable[[str], object]


@dataclass(frozen=True)
class IssuedChallenge:
    nonce: str
    message: str
    challenge: ChallengeMessage
    expires_in: int


@dataclass(frozen=True)
class AuthenticatedSession:
    token: str
    expires_in: int
    address: str
    agent_id: int | None
    capabilities: CapabilitySnapshot


class AuthService:
    """Runs the nonce -> sign -> verify -> session handshake."""

    def __init__(
        self,
        nonces: NonceRegistry,
        resolver: CapabilityResolver,
        sessions: SessionManager,
        *,
        verifier: SignatureVerifier = verify_signature,
        domain: str | None = None,
        uri: str | None = None,
        chain_id: int | None = None,
        statement: str | None = None,
        message_validity_seconds: int | None = None,
        require_registered_agent: bool | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.nonces = nonces
        self.resolver = resolver
        self.sessions = sessions
        self._verify = verifier
        self.domain = domain or settings.api_domain
        self.uri = uri or settings.effective_api_uri
        self.chain_id = chain_id if chain_id is not None else settings.chain_id
        self.statement = statement if statement is not None else settings.message_statement
        self.validity = timedelta(
            seconds=message_validity_seconds
            if message_validity_seconds is not None
            else settings.message_validity_seconds
        )
        self.require_registered_agent = (
            require_registered_agent
            if require_registered_agent is not None
            else settings.require_registered_agent
        )
        self._now = now

    async def issue_challenge(
        self,
        address: str,
        agent_id: int | None = None,
        agent_registry: str | None = None,
    ) -> IssuedChallenge:
        """Hand out a nonce bound to ``address`` and the message to sign."""
        if not is_valid_address(address):
            raise InvalidRequest("address must be a 0x-prefixed 20-byte hex string")

        if self.require_registered_agent:
            snapshot = await self.resolver.resolve(address)
            if not snapshot.is_registered_agent:
                raise CapabilityDenied("Address is not a registered agent")

        nonce = self.nonces.issue(address)
        challenge = codec.build_challenge(
            domain=self.domain,
            address=address,
            uri=self.uri,
            chain_id=self.chain_id,
            nonce=nonce,
            statement=self.statement,
            agent_id=agent_id,
            agent_registry=agent_registry or (
                settings.agent_registry_caip if agent_id is not None else None
            ),
            issued_at=self._now(),
            validity=self.validity,
        )
        return IssuedChallenge(
            nonce=nonce,
            message=codec.build(challenge),
            challenge=challenge,
            expires_in=int(self.validity.total_seconds()),
        )

    async def verify(
        self, message: str, signature: str, on_verified: VerifiedHook | None = None
    ) -> AuthenticatedSession:
        """Verify a signed challenge and mint a session.

        ``on_verified`` is called with the proven address right after the
        signature check; anything it raises aborts the flow with the nonce
        left unconsumed.

        Raises:
            InvalidRequest: The message does not parse.
            MessageRejected: The message targets another domain or chain, or
                claims an agent ID the signer does not own.
            MessageExpired: The embedded expiration time has passed.
            SignatureInvalid: The signature does not recover to the address.
            NonceRejected: The nonce is unknown, expired, used or bound elsewhere.
        """
        challenge = self.parse_message(message)

        if challenge.domain != self.domain:
            raise MessageRejected(f"Message domain {challenge.domain!r} does not match")
        if challenge.chain_id != self.chain_id:
            raise MessageRejected(f"Message chain ID {challenge.chain_id} does not match")
        if challenge.is_expired(self._now()):
            raise MessageExpired()

        if not self._verify(message, signature, challenge.address):
            raise SignatureInvalid()
        if on_verified is not None:
            on_verified(challenge.address)

        if not self.nonces.consume(challenge.nonce, challenge.address):
            logger.info("Rejected nonce for %s", challenge.address)
            raise NonceRejected()

        if challenge.agent_id is not None and not await self.resolver.owns_agent(
            challenge.address, challenge.agent_id
        ):
            logger.info("Agent %d is not owned by %s", challenge.agent_id, challenge.address)
            raise MessageRejected(f"Agent {challenge.agent_id} is not owned by the signer")

        snapshot = await self.resolver.resolve(challenge.address)
        token = self.sessions.issue(challenge.address, challenge.agent_id, snapshot)
        return AuthenticatedSession(
            token=token,
            expires_in=self.sessions.ttl_seconds,
            address=challenge.address,
            agent_id=challenge.agent_id,
            capabilities=snapshot,
        )

    def verify_legacy(
        self,
        message: str,
        signature: str,
        agent_id: int | None = None,
        on_verified: VerifiedHook | None = None,
    ) -> AuthenticatedSession:
        """Plain signature login without nonce or capability lookup.

        The resulting session sits in the LEGACY tier: it authenticates the
        caller but never grants member or holder access.
        """
        match = LEGACY_ADDRESS_PATTERN.search(message or "")
        if match is None:
            raise InvalidRequest('Message must include an "Address: 0x..." line')
        address = match.group(1)
        if not self._verify(message, signature, address):
            raise SignatureInvalid()
        if on_verified is not None:
            on_verified(address)

        snapshot = CapabilitySnapshot.none()
        token = self.sessions.issue(address, agent_id, snapshot, auth_method="legacy")
        return AuthenticatedSession(
            token=token,
            expires_in=self.sessions.ttl_seconds,
            address=address,
            agent_id=agent_id,
            capabilities=snapshot,
        )

    @staticmethod
    def parse_message(message: str) -> ChallengeMessage:
        try:
            return codec.parse(message)
        except MessageParseError as err:
            raise InvalidRequest(f"Malformed challenge message: {err}") from err
