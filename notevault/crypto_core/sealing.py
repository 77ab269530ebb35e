# crypto_core/sealing.py
"""
Passphrase-sealed ledger backups.

key = scrypt(passphrase, salt)  ->  XSalsa20-Poly1305 (libsodium SecretBox)
"""
from __future__ import annotations

import base64
from typing import Any, Dict

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

from notevault.errors import BackupImportError

SEAL_VERSION = 1
SEAL_ALGO = "scrypt+xsalsa20poly1305"
SCRYPT_N = 2 ** 15
SCRYPT_R = 8
SCRYPT_P = 1
# kdf_n comes from the blob being opened, so only these costs are honoured
SCRYPT_N_ALLOWED = frozenset(2 ** k for k in range(10, 21))


def derive_backup_key(passphrase: str, salt: bytes, n: int = SCRYPT_N) -> bytes:
    kdf = Scrypt(salt=salt, length=SecretBox.KEY_SIZE, n=n, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(passphrase.encode("utf-8"))


def seal(plaintext: bytes, passphrase: str, n: int = SCRYPT_N) -> Dict[str, Any]:
    if not passphrase:
        raise ValueError("passphrase must not be empty")
    if n not in SCRYPT_N_ALLOWED:
        raise ValueError(f"scrypt n must be a power of two between 2**10 and 2**20, got {n}")
    salt = nacl_random(16)
    box = SecretBox(derive_backup_key(passphrase, salt, n))
    nonce = nacl_random(SecretBox.NONCE_SIZE)
    ct = box.encrypt(plaintext, nonce)  # nonce || ciphertext
    return {
        "version": SEAL_VERSION,
        "algo": SEAL_ALGO,
        "kdf_n": n,
        "salt_hex": salt.hex(),
        "nonce_hex": nonce.hex(),
        "ciphertext_b64": base64.b64encode(ct[SecretBox.NONCE_SIZE:]).decode("ascii"),
    }


def is_sealed(blob: Any) -> bool:
    return isinstance(blob, dict) and blob.get("algo") == SEAL_ALGO and "ciphertext_b64" in blob


def unseal(blob: Dict[str, Any], passphrase: str) -> bytes:
    if not is_sealed(blob):
        raise BackupImportError("not a sealed backup")
    try:
        salt = bytes.fromhex(blob["salt_hex"])
        nonce = bytes.fromhex(blob["nonce_hex"])
        ct = base64.b64decode(blob["ciphertext_b64"], validate=True)
        n = int(blob.get("kdf_n", SCRYPT_N))
    except (KeyError, ValueError, TypeError) as e:
        raise BackupImportError(f"malformed sealed backup: {e}") from e
    if n not in SCRYPT_N_ALLOWED:
        raise BackupImportError(f"sealed backup asks for unsupported scrypt cost n={n}")
    try:
        box = SecretBox(derive_backup_key(passphrase, salt, n))
        return box.decrypt(ct, nonce)
    except ValueError as e:
        raise BackupImportError(f"malformed sealed backup: {e}") from e
    except CryptoError as e:
        raise BackupImportError("wrong passphrase or corrupted backup") from e
