"""Solana address format checks."""

import re

import base58

# Base58 alphabet (no 0, O, I, l), 32-44 characters for a 32-byte public key
ADDRESS_PATTERN = re.compile(r'[1-9A-HJ-NP-Za-km-z]{32,44}')

PUBLIC_KEY_LENGTH = 32


def is_valid_address(address: str) -> bool:
    """Validate Solana address format. Pure check, no network access."""
    if not isinstance(address, str) or not ADDRESS_PATTERN.fullmatch(address):
        return False

    try:
        decoded = base58.b58decode(address)
    except ValueError:
        return False

    return len(decoded) == PUBLIC_KEY_LENGTH
