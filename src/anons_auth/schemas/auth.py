"""Authentication request and response schemas.

Wire names are camelCase to match what agent SDKs already send; Python code
uses the snake_case attribute names.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NonceRequest(CamelModel):
    """Request for a fresh challenge nonce."""

    address: str = Field(..., description="0x-prefixed address that will sign the challenge")
    agent_id: int | None = Field(None, ge=0, description="ERC-8004 agent token ID")
    agent_registry: str | None = Field(
        None, description="CAIP-10 identifier of the agent registry"
    )


class NonceResponse(CamelModel):
    """Challenge handed to the client for signing."""

    nonce: str = Field(..., description="Single-use nonce embedded in the message")
    message: str = Field(..., description="Exact text the wallet must personal_sign")
    expires_in: int = Field(..., description="Seconds until the challenge expires")
    issued_at: str = Field(..., description="ISO-8601 issuance time")
    expiration_time: str = Field(..., description="ISO-8601 expiration time")
    domain: str = Field(..., description="Domain the challenge was issued for")


class VerifyRequest(CamelModel):
    message: str = Field(..., min_length=1, description="Challenge message as signed")
    signature: str = Field(..., min_length=1, description="0x-prefixed 65-byte signature")


class VerifyResponse(CamelModel):
    """Session credential plus the capabilities it was minted with."""

    token: str
    expires_in: int
    address: str
    agent_id: int | None = None
    is_holder: bool
    is_delegated: bool
    is_registered_agent: bool
    voting_power: str = Field(..., description="Delegated voting power as a decimal string")


class LegacyRequest(CamelModel):
    """Signed free-form message containing an ``Address: 0x...`` line."""

    message: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    agent_id: int | None = Field(None, ge=0)


class LegacyResponse(CamelModel):
    token: str
    expires_in: int
    address: str
    agent_id: int | None = None


class SessionResponse(CamelModel):
    """Decoded session credential."""

    valid: bool = True
    address: str
    agent_id: int | None = None
    auth: str = Field(..., description="Authentication method: siwa or legacy")
    tier: str
    is_holder: bool
    direct_balance: int
    is_delegated: bool
    voting_power: str
    is_registered_agent: bool
    resolved_at: float
    iat: int
    exp: int
