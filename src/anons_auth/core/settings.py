"""Application settings and configuration.

This module defines all configuration options for the Anons auth gateway.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_JWT_SECRET = "dev-jwt-secret-change-me"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Anons Auth Gateway", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Challenge message identity
    api_domain: str = Field(default="api.anons.lol", alias="API_DOMAIN")
    api_uri: str | None = Field(default=None, alias="API_URI")
    chain_id: int = Field(default=8453, alias="CHAIN_ID")
    message_statement: str | None = Field(
        default="Sign in to the Anons DAO governance API.",
        alias="MESSAGE_STATEMENT",
    )
    message_validity_seconds: int = Field(default=300, alias="MESSAGE_VALIDITY_SECONDS")

    # Ledger (Base JSON-RPC) and contract addresses
    rpc_url: str | None = Field(default="https://mainnet.base.org", alias="BASE_RPC_URL")
    token_contract: str = Field(
        default="0x1ad890FCE6cB865737A3411E7d04f1F5668b0686",
        alias="ANONS_TOKEN",
    )
    delegation_contract: str | None = Field(default=None, alias="DELEGATION_CONTRACT")
    agent_registry_contract: str = Field(
        default="0x00256C0D814c455425A0699D5eEE2A7DB7A5519c",
        alias="ERC8004_REGISTRY",
    )
    ledger_query_timeout_seconds: float = Field(
        default=5.0, alias="LEDGER_QUERY_TIMEOUT_SECONDS"
    )
    capability_resolution_deadline_seconds: float = Field(
        default=8.0, alias="CAPABILITY_RESOLUTION_DEADLINE_SECONDS"
    )
    capability_cache_ttl_seconds: float = Field(
        default=30.0, alias="CAPABILITY_CACHE_TTL_SECONDS"
    )
    ledger_breaker_failure_threshold: int = Field(
        default=5, alias="LEDGER_BREAKER_FAILURE_THRESHOLD"
    )
    ledger_breaker_recovery_seconds: float = Field(
        default=30.0, alias="LEDGER_BREAKER_RECOVERY_SECONDS"
    )

    # Session credentials
    jwt_secret: str = Field(default=DEV_JWT_SECRET, alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_issuer: str = Field(default="anons-dao", alias="JWT_ISSUER")
    session_ttl_seconds: int = Field(default=86_400, alias="SESSION_TTL_SECONDS")

    # Nonce registry
    nonce_ttl_seconds: int = Field(default=300, alias="NONCE_TTL_SECONDS")
    nonce_sweep_interval_seconds: float = Field(
        default=300.0, alias="NONCE_SWEEP_INTERVAL_SECONDS"
    )

    # Per-identity rate limiting
    rate_limit_requests: int = Field(default=60, alias="RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS")

    # Shared state backend for nonces and rate-limit counters
    store_backend: Literal["memory", "redis"] = Field(default="memory", alias="STORE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")

    # Auth policy switches
    legacy_auth_enabled: bool = Field(default=True, alias="LEGACY_AUTH_ENABLED")
    require_registered_agent: bool = Field(default=False, alias="REQUIRE_REGISTERED_AGENT")

    # CORS configuration for browser-based agents and dashboards
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["Content-Type", "Authorization"],
        alias="CORS_ALLOW_HEADERS",
    )
    cors_expose_headers: list[str] = Field(
        default=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
        alias="CORS_EXPOSE_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def effective_api_uri(self) -> str:
        """Return the URI embedded in challenge messages."""
        return self.api_uri or f"https://{self.api_domain}/auth"

    @property
    def effective_delegation_contract(self) -> str:
        """Return the contract queried for delegated votes.

        The Anons token is an ERC721Votes contract, so delegation lives on the
        token itself unless a dedicated delegation contract is configured.
        """
        return self.delegation_contract or self.token_contract

    @property
    def agent_registry_caip(self) -> str:
        """Return the CAIP-10 identifier of the ERC-8004 agent registry."""
        return f"eip155:{self.chain_id}:{self.agent_registry_contract}"

    @property
    def uses_dev_secret(self) -> bool:
        return self.jwt_secret == DEV_JWT_SECRET


settings = Settings()
