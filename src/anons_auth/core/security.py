"""Signature utilities built on Ethereum personal_sign recovery."""
from __future__ import annotations

import re

from eth_account import Account
from eth_account.messages import encode_defunct

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_valid_address(address: str) -> bool:
    """Return True if ``address`` is a 20-byte hex address with 0x prefix."""
    return bool(ADDRESS_PATTERN.match(address))


def normalize_address(address: str) -> str:
    """Return the lowercase key form of an address."""
    return address.strip().lower()


def recover_signer(message: str, signature: str) -> str | None:
    """Recover the address that produced an EIP-191 signature over ``message``.

    Returns None when the signature is malformed or recovery fails.
    """
    try:
        signable = encode_defunct(text=message)
        return Account.recover_message(signable, signature=signature)
    except Exception:
        return None


def verify_signature(message: str, signature: str, claimed_address: str) -> bool:
    """Verify a personal_sign signature.

    Args:
        message: Exact text the wallet signed.
        signature: Hex-encoded 65-byte signature (0x prefix optional).
        claimed_address: Address the caller claims to control.

    Returns:
        True if the signature recovers to ``claimed_address``; False otherwise.
    """
    if not signature or not is_valid_address(claimed_address):
        return False
    recovered = recover_signer(message, signature)
    if recovered is None:
        return False
    return normalize_address(recovered) == normalize_address(claimed_address)
