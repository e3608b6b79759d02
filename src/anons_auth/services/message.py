"""Challenge message codec.

Agents sign a plain-text, line-oriented message in the style of
Sign-In-With-Ethereum so any wallet ``personal_sign`` primitive can produce
the signature without custom tooling. ``build`` and ``parse`` are exact
inverses for every message ``build`` can produce.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Final

from anons_auth.core.security import is_valid_address

HEADER_SUFFIX: Final[str] = " wants you to sign in with your Agent account:"
MESSAGE_VERSION: Final[str] = "1"
DEFAULT_VALIDITY: Final[timedelta] = timedelta(minutes=5)

_URI = "URI"
_VERSION = "Version"
_AGENT_ID = "Agent ID"
_AGENT_REGISTRY = "Agent Registry"
_CHAIN_ID = "Chain ID"
_NONCE = "Nonce"
_ISSUED_AT = "Issued At"
_EXPIRATION_TIME = "Expiration Time"

_FIELD_ORDER: Final[tuple[str, ...]] = (
    _URI,
    _VERSION,
    _AGENT_ID,
    _AGENT_REGISTRY,
    _CHAIN_ID,
    _NONCE,
    _ISSUED_AT,
    _EXPIRATION_TIME,
)
_REQUIRED_FIELDS: Final[frozenset[str]] = frozenset(
    {_URI, _VERSION, _CHAIN_ID, _NONCE, _ISSUED_AT, _EXPIRATION_TIME}
)


class MessageParseError(ValueError):
    """Raised when a challenge message is syntactically invalid."""


@dataclass(frozen=True)
class ChallengeMessage:
    """Structured form of the challenge an agent signs."""

    domain: str
    address: str
    uri: str
    chain_id: int
    nonce: str
    issued_at: datetime
    expiration_time: datetime
    statement: str | None = None
    agent_id: int | None = None
    agent_registry: str | None = None
    version: str = MESSAGE_VERSION

    def is_expired(self, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        return self.expiration_time <= current

    def seconds_remaining(self, now: datetime | None = None) -> int:
        current = now or datetime.now(UTC)
        return max(0, int((self.expiration_time - current).total_seconds()))


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(raw: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as err:
        raise MessageParseError(f"Invalid timestamp: {raw!r}") from err
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return _truncate_to_millis(parsed.astimezone(UTC))


def _truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def build(message: ChallengeMessage) -> str:
    """Render a challenge message to its canonical text form."""
    lines = [f"{message.domain}{HEADER_SUFFIX}", message.address, ""]
    if message.statement:
        lines.extend([message.statement, ""])

    values = {
        _URI: message.uri,
        _VERSION: message.version,
        _AGENT_ID: None if message.agent_id is None else str(message.agent_id),
        _AGENT_REGISTRY: message.agent_registry,
        _CHAIN_ID: str(message.chain_id),
        _NONCE: message.nonce,
        _ISSUED_AT: format_timestamp(message.issued_at),
        _EXPIRATION_TIME: format_timestamp(message.expiration_time),
    }
    lines.extend(f"{label}: {values[label]}" for label in _FIELD_ORDER if values[label] is not None)
    return "\n".join(lines)


def build_challenge(
    *,
    domain: str,
    address: str,
    uri: str,
    chain_id: int,
    nonce: str,
    statement: str | None = None,
    agent_id: int | None = None,
    agent_registry: str | None = None,
    issued_at: datetime | None = None,
    validity: timedelta = DEFAULT_VALIDITY,
) -> ChallengeMessage:
    """Assemble a challenge whose expiration is ``issued_at + validity``."""
    issued = _truncate_to_millis(issued_at or datetime.now(UTC))
    return ChallengeMessage(
        domain=domain,
        address=address,
        uri=uri,
        chain_id=chain_id,
        nonce=nonce,
        issued_at=issued,
        expiration_time=issued + validity,
        statement=statement,
        agent_id=agent_id,
        agent_registry=agent_registry,
    )


def parse(text: str) -> ChallengeMessage:
    """Parse challenge text back into its fields.

    Purely syntactic: signatures and expiry are not checked here.

    Raises:
        MessageParseError: If the header, address or any mandatory field is
            missing or malformed.
    """
    lines = text.split("\n")
    if len(lines) < 3 or not lines[0].endswith(HEADER_SUFFIX):
        raise MessageParseError("Missing message header")

    domain = lines[0][: -len(HEADER_SUFFIX)]
    if not domain:
        raise MessageParseError("Missing domain")

    address = lines[1]
    if not is_valid_address(address):
        raise MessageParseError("Missing or invalid address")

    if lines[2] != "":
        raise MessageParseError("Expected blank line after address")

    cursor = 3
    statement: str | None = None
    if cursor < len(lines) and not lines[cursor].startswith(f"{_URI}: "):
        statement = lines[cursor]
        if cursor + 1 >= len(lines) or lines[cursor + 1] != "":
            raise MessageParseError("Expected blank line after statement")
        cursor += 2

    fields: dict[str, str] = {}
    for line in lines[cursor:]:
        label, sep, value = line.partition(": ")
        if not sep or label not in _FIELD_ORDER:
            raise MessageParseError(f"Unexpected line: {line!r}")
        if label in fields:
            raise MessageParseError(f"Duplicate field: {label}")
        fields[label] = value

    missing = sorted(_REQUIRED_FIELDS - fields.keys())
    if missing:
        raise MessageParseError(f"Missing required fields: {', '.join(missing)}")
    if not fields[_NONCE]:
        raise MessageParseError("Missing nonce")

    try:
        chain_id = int(fields[_CHAIN_ID])
        agent_id = int(fields[_AGENT_ID]) if _AGENT_ID in fields else None
    except ValueError as err:
        raise MessageParseError("Chain ID and Agent ID must be integers") from err

    return ChallengeMessage(
        domain=domain,
        address=address,
        uri=fields[_URI],
        version=fields[_VERSION],
        chain_id=chain_id,
        nonce=fields[_NONCE],
        issued_at=parse_timestamp(fields[_ISSUED_AT]),
        expiration_time=parse_timestamp(fields[_EXPIRATION_TIME]),
        statement=statement,
        agent_id=agent_id,
        agent_registry=fields.get(_AGENT_REGISTRY),
    )
