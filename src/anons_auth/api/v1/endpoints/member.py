"""Member-gated endpoints demonstrating each authorization tier."""

from __future__ import annotations

from fastapi import APIRouter

from anons_auth.api.v1.dependencies import CurrentHolderSession, MemberSession
from anons_auth.schemas.member import ForumAccess, MemberProfile, ProposalAccepted, ProposalDraft

router = APIRouter(prefix="/member", tags=["member"])


@router.get("/profile", response_model=MemberProfile)
async def read_profile(session: MemberSession) -> MemberProfile:
    caps = session.capabilities
    return MemberProfile(
        address=session.address,
        agent_id=session.agent_id,
        tier=session.tier.name.lower(),
        is_holder=caps.is_holder,
        direct_balance=caps.direct_balance,
        is_delegated=caps.is_delegated,
        voting_power=str(caps.voting_power),
    )


@router.get("/forum", response_model=ForumAccess)
async def enter_forum(session: MemberSession) -> ForumAccess:
    return ForumAccess(message="Member forum access granted")


@router.post("/proposals", response_model=ProposalAccepted)
async def submit_proposal(draft: ProposalDraft, session: CurrentHolderSession) -> ProposalAccepted:
    """Accept a proposal draft from a holder whose ownership is still current."""
    return ProposalAccepted(
        message="Proposal accepted for submission",
        author=session.address,
        agent_id=session.agent_id,
        description=f"{draft.title}\n\n{draft.description}",
    )
