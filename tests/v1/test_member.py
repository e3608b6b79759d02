# tests/v1/test_member.py
"""Tests for member-gated endpoints across access tiers."""

from __future__ import annotations

from fastapi import status

from tests.conftest import authenticate, bearer, sign_text

PROFILE_URL = "/api/v1/member/profile"
FORUM_URL = "/api/v1/member/forum"
PROPOSALS_URL = "/api/v1/member/proposals"

DRAFT = {"title": "Fund the treasury", "description": "Move 1 ETH to the grants multisig."}


def test_holder_reaches_every_member_endpoint(client, holder, fake_ledger) -> None:
    fake_ledger.agent_owners[9] = holder.address
    headers = bearer(authenticate(client, holder, agent_id=9)["token"])

    profile = client.get(PROFILE_URL, headers=headers)
    assert profile.status_code == status.HTTP_200_OK
    assert profile.json()["tier"] == "holder"
    assert profile.json()["directBalance"] == 2
    assert profile.json()["agentId"] == 9

    assert client.get(FORUM_URL, headers=headers).status_code == status.HTTP_200_OK

    proposal = client.post(PROPOSALS_URL, headers=headers, json=DRAFT)
    assert proposal.status_code == status.HTTP_200_OK
    assert proposal.json()["author"] == holder.address
    assert proposal.json()["description"] == f"{DRAFT['title']}\n\n{DRAFT['description']}"


def test_delegate_is_member_but_not_holder(client, delegate) -> None:
    headers = bearer(authenticate(client, delegate)["token"])

    profile = client.get(PROFILE_URL, headers=headers)
    assert profile.status_code == status.HTTP_200_OK
    assert profile.json()["tier"] == "member"
    assert profile.json()["isDelegated"] is True

    assert client.get(FORUM_URL, headers=headers).json() == {
        "message": "Member forum access granted"
    }

    proposal = client.post(PROPOSALS_URL, headers=headers, json=DRAFT)
    assert proposal.status_code == status.HTTP_403_FORBIDDEN
    assert proposal.json()["error"] == "capability_denied"


def test_non_member_is_denied(client, wallet) -> None:
    headers = bearer(authenticate(client, wallet)["token"])

    response = client.get(FORUM_URL, headers=headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["error"] == "capability_denied"


def test_legacy_session_authenticates_without_capabilities(client, holder) -> None:
    message = f"Address: {holder.address}"
    token = client.post(
        "/api/v1/auth/legacy",
        json={"message": message, "signature": sign_text(holder, message)},
    ).json()["token"]
    headers = bearer(token)

    assert client.get("/api/v1/auth/session", headers=headers).status_code == status.HTTP_200_OK
    assert client.get(PROFILE_URL, headers=headers).status_code == status.HTTP_403_FORBIDDEN
    assert client.post(PROPOSALS_URL, headers=headers, json=DRAFT).status_code == 403


def test_missing_credentials_are_unauthorized(client) -> None:
    response = client.get(PROFILE_URL)
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["error"] == "session_invalid"


def test_proposals_recheck_current_holdings(client, holder, fake_ledger, resolver) -> None:
    headers = bearer(authenticate(client, holder)["token"])

    # Tokens transferred away after the session was minted.
    fake_ledger.balances[holder.address.lower()] = 0
    resolver.invalidate(holder.address)

    # Snapshot-based checks still pass until the session expires.
    assert client.get(PROFILE_URL, headers=headers).status_code == status.HTTP_200_OK

    response = client.post(PROPOSALS_URL, headers=headers, json=DRAFT)
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_proposals_use_cached_capabilities(client, holder, fake_ledger) -> None:
    headers = bearer(authenticate(client, holder)["token"])
    batches = fake_ledger.batches

    assert client.post(PROPOSALS_URL, headers=headers, json=DRAFT).status_code == 200
    assert fake_ledger.batches == batches


def test_member_responses_carry_rate_limit_headers(client, holder) -> None:
    headers = bearer(authenticate(client, holder)["token"])
    response = client.get(FORUM_URL, headers=headers)
    assert response.headers["X-RateLimit-Limit"] == "60"
    assert int(response.headers["X-RateLimit-Remaining"]) < 60


def test_invalid_proposal_draft_is_rejected(client, holder) -> None:
    headers = bearer(authenticate(client, holder)["token"])
    response = client.post(PROPOSALS_URL, headers=headers, json={"title": ""})
    assert response.status_code == 422


def test_denied_member_responses_carry_rate_limit_headers(client, wallet) -> None:
    headers = bearer(authenticate(client, wallet)["token"])
    response = client.get(FORUM_URL, headers=headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.headers["X-RateLimit-Limit"] == "60"
    assert response.headers["X-RateLimit-Remaining"] == "58"
