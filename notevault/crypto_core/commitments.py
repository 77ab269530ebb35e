# crypto_core/commitments.py
"""
Secret, commitment and nullifier derivation.

Layouts follow Solidity's abi.encodePacked so the vault contract can
recompute them:

    commitment = keccak256(secret:bytes32 || amount:uint256)
    nullifier  = keccak256(secret:bytes32 || amount:uint256 || tag:bytes32)

Everything here is pure: no I/O, no shared state, safe from any thread.
Inputs are encoded to fixed-width byte strings before hashing so the work
done does not depend on the secret or amount values.
"""
from __future__ import annotations

import re
import secrets
from typing import Optional

from Crypto.Hash import keccak

from notevault.errors import ValidationError

SECRET_BYTES = 32
UINT256_MAX = (1 << 256) - 1

_HEX32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def to_hex(b: bytes) -> str:
    return "0x" + b.hex()


def hex32_to_bytes(value: str, what: str = "value") -> bytes:
    if not isinstance(value, str) or not _HEX32_RE.match(value):
        raise ValidationError(f"{what} must be 0x-prefixed 32-byte hex")
    return bytes.fromhex(value[2:])


def uint256_bytes(amount: int, what: str = "amount") -> bytes:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{what} must be an integer in minor units")
    if amount < 0 or amount > UINT256_MAX:
        raise ValidationError(f"{what} out of uint256 range")
    return amount.to_bytes(32, "big")


# Fixed domain tag: re-deriving the nullifier of a note is idempotent.
NULLIFIER_DOMAIN: bytes = keccak256(b"notevault.nullifier.v1")


def generate_secret() -> str:
    """256-bit secret from the OS CSPRNG, as 0x-hex. Entropy errors propagate."""
    return to_hex(secrets.token_bytes(SECRET_BYTES))


def compute_commitment(secret: str, amount_minor: int) -> str:
    return to_hex(keccak256(hex32_to_bytes(secret, "secret") + uint256_bytes(amount_minor)))


def compute_nullifier(secret: str, amount_minor: int, salt: Optional[str] = None) -> str:
    """
    Nullifier for spending the note backed by `secret`.

    Without `salt` the fixed NULLIFIER_DOMAIN tag is used, so every spend
    attempt of the same note yields the same nullifier. A 32-byte hex `salt`
    replaces the tag for per-attempt domain separation.
    """
    tag = NULLIFIER_DOMAIN if salt is None else hex32_to_bytes(salt, "salt")
    return to_hex(keccak256(hex32_to_bytes(secret, "secret") + uint256_bytes(amount_minor) + tag))


def is_address(value: str) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


__all__ = [
    "NULLIFIER_DOMAIN",
    "keccak256",
    "to_hex",
    "hex32_to_bytes",
    "uint256_bytes",
    "generate_secret",
    "compute_commitment",
    "compute_nullifier",
    "is_address",
]
