"""Schemas for the member-gated example endpoints."""

from pydantic import BaseModel, Field

from .auth import CamelModel


class MemberProfile(CamelModel):
    address: str
    agent_id: int | None = None
    tier: str
    is_holder: bool
    direct_balance: int
    is_delegated: bool
    voting_power: str


class ForumAccess(BaseModel):
    message: str


class ProposalDraft(BaseModel):
    """Proposal submitted by a current token holder."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)


class ProposalAccepted(CamelModel):
    message: str
    author: str
    agent_id: int | None = None
    description: str = Field(..., description="Title and body joined as the on-chain description")
