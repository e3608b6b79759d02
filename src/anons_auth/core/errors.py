"""Error taxonomy for the authentication and authorization core.

Every rejection the gateway can hand back to a client is an ``AuthError``
subclass carrying its HTTP status and a stable machine-readable code. The
application registers a single handler that renders them, so services raise
domain errors and never build HTTP responses themselves.
"""

from __future__ import annotations

import math
import time

from fastapi import status


class AuthError(Exception):
    """Base class for client-facing authentication failures."""

    status_code: int = status.HTTP_401_UNAUTHORIZED
    code: str = "unauthorized"
    default_detail: str = "Authentication failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    @property
    def headers(self) -> dict[str, str]:
        return {}


class InvalidRequest(AuthError):
    """Malformed address, message or request body."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_request"
    default_detail = "Invalid request"


class NonceRejected(AuthError):
    """Unknown, expired, already-consumed or address-mismatched nonce."""

    code = "nonce_rejected"
    default_detail = "Nonce is invalid, expired or already used"


class SignatureInvalid(AuthError):
    code = "signature_invalid"
    default_detail = "Signature does not match the claimed address"


class MessageExpired(AuthError):
    code = "message_expired"
    default_detail = "Challenge message has expired"


class MessageRejected(AuthError):
    """Well-formed message addressed to another domain or chain."""

    code = "message_rejected"
    default_detail = "Challenge message was not issued for this service"


class SessionInvalid(AuthError):
    code = "session_invalid"
    default_detail = "Invalid or expired session"


class CapabilityDenied(AuthError):
    """Authenticated caller lacking the required capability tier."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "capability_denied"
    default_detail = "Insufficient capability for this action"


class RateLimited(AuthError):
    """Per-identity request quota exhausted for the current window."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"
    default_detail = "Rate limit exceeded"

    def __init__(self, limit: int, reset_at: float, detail: str | None = None) -> None:
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(detail)

    @property
    def headers(self) -> dict[str, str]:
        retry_after = max(0, math.ceil(self.reset_at - time.time()))
        return {
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
