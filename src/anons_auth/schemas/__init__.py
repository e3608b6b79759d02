"""Pydantic schemas for request and response validation."""

from .auth import (
    LegacyRequest,
    LegacyResponse,
    NonceRequest,
    NonceResponse,
    SessionResponse,
    VerifyRequest,
    VerifyResponse,
)
from .member import ForumAccess, MemberProfile, ProposalAccepted, ProposalDraft

__all__ = [
    "LegacyRequest",
    "LegacyResponse",
    "NonceRequest",
    "NonceResponse",
    "SessionResponse",
    "VerifyRequest",
    "VerifyResponse",
    "ForumAccess",
    "MemberProfile",
    "ProposalAccepted",
    "ProposalDraft",
]
