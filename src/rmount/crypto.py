"""
Vault blob encryption.

Key derivation is Argon2id over the master password with a random
per-vault salt. The payload is sealed with AES-256-GCM, with the whole
binary header bound in as associated data so the salt and cost
parameters cannot be swapped without failing authentication.

Blob layout (big-endian)::

    magic "RMV1" | version u8 | time_cost u32 | memory_cost u32 |
    parallelism u8 | salt 16B | canary 32B | nonce 12B | ciphertext+tag

The canary is HMAC-SHA256(key, fixed label). Comparing it on unlock
tells a wrong password apart from a damaged file without decrypting
anything.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import struct
from dataclasses import dataclass

from argon2.exceptions import HashingError
from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CorruptVault, InvalidPassword

VAULT_MAGIC = b"RMV1"
VAULT_VERSION = 1
HEADER_FMT = ">4sBIIB16s32s12s"
HEADER_SIZE = struct.calcsize(HEADER_FMT)
SALT_LEN = 16
NONCE_LEN = 12
KEY_LEN = 32
TAG_LEN = 16
CANARY_LABEL = b"rmount/vault-canary/v1"

# upper bounds accepted from a vault header
MAX_TIME_COST = 64
MAX_MEMORY_COST = 4 * 1024 * 1024  # KiB, 4 GiB
MAX_PARALLELISM = 64


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters stored in the vault header."""

    time_cost: int = 3
    memory_cost: int = 65536
    parallelism: int = 4


@dataclass(frozen=True)
class VaultHeader:
    params: KdfParams
    salt: bytes
    canary: bytes
    nonce: bytes

    def pack(self) -> bytes:
        return struct.pack(
            HEADER_FMT,
            VAULT_MAGIC,
            VAULT_VERSION,
            self.params.time_cost,
            self.params.memory_cost,
            self.params.parallelism,
            self.salt,
            self.canary,
            self.nonce,
        )


def derive_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    """Derive the 32-byte vault key from the master password.

    Raises:
        CorruptVault: If Argon2 rejects the cost parameters.
    """
    try:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=params.time_cost,
            memory_cost=params.memory_cost,
            parallelism=params.parallelism,
            hash_len=KEY_LEN,
            type=Argon2Type.ID,
        )
    except HashingError as exc:
        raise CorruptVault(f"Key derivation failed: {exc}") from exc


def compute_canary(key: bytes) -> bytes:
    return hmac.new(key, CANARY_LABEL, hashlib.sha256).digest()


def new_salt() -> bytes:
    return os.urandom(SALT_LEN)


def parse_blob(blob: bytes) -> tuple[VaultHeader, bytes]:
    """Split a vault blob into header and ciphertext.

    Raises:
        CorruptVault: If the blob is truncated or not an rmount vault.
    """
    if len(blob) < HEADER_SIZE + TAG_LEN:
        raise CorruptVault("Vault file is too small or truncated")
    magic, version, t_cost, m_cost, par, salt, canary, nonce = struct.unpack(
        HEADER_FMT, blob[:HEADER_SIZE]
    )
    if magic != VAULT_MAGIC:
        raise CorruptVault("Not an rmount vault (bad magic)")
    if version != VAULT_VERSION:
        raise CorruptVault(f"Unsupported vault version {version}")
    if t_cost < 1 or par < 1 or m_cost < 8 * par:
        raise CorruptVault("Vault header has invalid KDF parameters")
    if t_cost > MAX_TIME_COST or m_cost > MAX_MEMORY_COST or par > MAX_PARALLELISM:
        raise CorruptVault("Vault header KDF parameters exceed the allowed maximum")
    header = VaultHeader(
        params=KdfParams(time_cost=t_cost, memory_cost=m_cost, parallelism=par),
        salt=salt,
        canary=canary,
        nonce=nonce,
    )
    return header, blob[HEADER_SIZE:]


def seal(key: bytes, salt: bytes, params: KdfParams, plaintext: bytes) -> bytes:
    """Encrypt ``plaintext`` into a complete vault blob with a fresh nonce."""
    header = VaultHeader(
        params=params,
        salt=salt,
        canary=compute_canary(key),
        nonce=os.urandom(NONCE_LEN),
    )
    aad = header.pack()
    ciphertext = AESGCM(key).encrypt(header.nonce, plaintext, aad)
    return aad + ciphertext


def open_with_key(key: bytes, blob: bytes) -> tuple[VaultHeader, bytes]:
    """Decrypt a blob with an already-derived key.

    Raises:
        InvalidPassword: If the canary does not match ``key``.
        CorruptVault: If the blob is malformed or fails authentication.
    """
    header, ciphertext = parse_blob(blob)
    if not hmac.compare_digest(compute_canary(key), header.canary):
        raise InvalidPassword("Incorrect master password")
    try:
        plaintext = AESGCM(key).decrypt(header.nonce, ciphertext, header.pack())
    except InvalidTag:
        raise CorruptVault("Vault authentication failed; file is damaged or tampered") from None
    return header, plaintext


def open_blob(password: str, blob: bytes) -> tuple[bytes, VaultHeader, bytes]:
    """Derive the key from the blob's own salt and decrypt it.

    Returns:
        Tuple of (key, header, plaintext).
    """
    header, _ = parse_blob(blob)
    key = derive_key(password, header.salt, header.params)
    header, plaintext = open_with_key(key, blob)
    return key, header, plaintext
