"""Self-contained session credentials.

Sessions are HS256 JWTs embedding the capability snapshot taken at issuance.
Validation is a pure function of the token, the secret and the clock: no
ledger calls and no revocation list. A session is either valid or invalid;
clients re-authenticate once it expires.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Literal

from jose import JWTError, jwt

from anons_auth.core.settings import settings
from anons_auth.services.capabilities import CapabilitySnapshot

logger = logging.getLogger(__name__)

AuthMethod = Literal["siwa", "legacy"]


class AccessTier(IntEnum):
    """Ordered authorization tiers; higher tiers include the lower ones."""

    ANONYMOUS = 0
    LEGACY = 1
    AUTHENTICATED = 2
    MEMBER = 3
    HOLDER = 4


@dataclass(frozen=True)
class SessionPayload:
    """Decoded contents of a valid session credential."""

    address: str
    agent_id: int | None
    capabilities: CapabilitySnapshot = field(default_factory=CapabilitySnapshot.none)
    auth_method: AuthMethod = "siwa"
    issued_at: int = 0
    expires_at: int = 0

    @property
    def is_holder(self) -> bool:
        return self.auth_method == "siwa" and self.capabilities.is_holder

    @property
    def is_member(self) -> bool:
        return self.auth_method == "siwa" and self.capabilities.is_member

    @property
    def tier(self) -> AccessTier:
        if self.auth_method == "legacy":
            return AccessTier.LEGACY
        if self.capabilities.is_holder:
            return AccessTier.HOLDER
        if self.capabilities.is_delegated:
            return AccessTier.MEMBER
        return AccessTier.AUTHENTICATED

    def to_response(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "agentId": self.agent_id,
            "auth": self.auth_method,
            "tier": self.tier.name.lower(),
            **self.capabilities.to_claims(),
            "iat": self.issued_at,
            "exp": self.expires_at,
        }


class SessionManager:
    """Mints and validates session credentials."""

    def __init__(
        self,
        secret: str | None = None,
        *,
        ttl_seconds: int | None = None,
        algorithm: str | None = None,
        issuer: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret or settings.jwt_secret
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds
        self._algorithm = algorithm or settings.jwt_algorithm
        self._issuer = issuer or settings.jwt_issuer
        self._clock = clock

    def issue(
        self,
        address: str,
        agent_id: int | None,
        snapshot: CapabilitySnapshot,
        auth_method: AuthMethod = "siwa",
    ) -> str:
        """Create a signed credential carrying ``snapshot`` as of now."""
        now = int(self._clock())
        claims: dict[str, Any] = {
            "sub": address,
            "iss": self._issuer,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "agentId": agent_id,
            "auth": auth_method,
            "caps": snapshot.to_claims(),
        }
        token: str = jwt.encode(claims, self._secret, algorithm=self._algorithm)
        logger.info("Issued %s session for %s", auth_method, address)
        return token

    def validate(self, token: str) -> SessionPayload | None:
        """Return the decoded payload, or None if the token is not valid right now."""
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"verify_exp": False, "require_exp": True, "require_iat": True},
            )
        except JWTError:
            return None

        try:
            expires_at = int(claims["exp"])
            if expires_at <= self._clock():
                return None
            auth_method = claims.get("auth", "siwa")
            if auth_method not in ("siwa", "legacy"):
                return None
            return SessionPayload(
                address=str(claims["sub"]),
                agent_id=None if claims.get("agentId") is None else int(claims["agentId"]),
                capabilities=CapabilitySnapshot.from_claims(claims["caps"]),
                auth_method=auth_method,
                issued_at=int(claims["iat"]),
                expires_at=expires_at,
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Rejected session with malformed claims")
            return None
