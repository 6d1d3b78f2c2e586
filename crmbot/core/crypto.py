"""AES-GCM sealing of credential columns.

Each value is sealed together with the name of the column it belongs to, so a
ciphertext copied into another column (or another deployment's key) fails to
open instead of yielding a wrong secret.
"""

from __future__ import annotations

from functools import lru_cache
from hashlib import sha256
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

from .config import get_settings
from .errors import DecryptionError


NONCE_SIZE = 12
TAG_SIZE = 16


@lru_cache(maxsize=4)
def _derive_key(master_key: str) -> bytes:
    return sha256(master_key.encode("utf-8")).digest()


def _key() -> bytes:
    return _derive_key(get_settings().enc_master_key)


def seal(plaintext: str, column: str) -> str:
    nonce = get_random_bytes(NONCE_SIZE)
    cipher = AES.new(_key(), AES.MODE_GCM, nonce=nonce)
    cipher.update(column.encode("ascii"))
    ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
    return (nonce + tag + ciphertext).hex()


def unseal(sealed: str, column: str) -> str:
    try:
        raw = bytes.fromhex(sealed)
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise ValueError("sealed value too short")
        cipher = AES.new(_key(), AES.MODE_GCM, nonce=raw[:NONCE_SIZE])
        cipher.update(column.encode("ascii"))
        plaintext = cipher.decrypt_and_verify(raw[NONCE_SIZE + TAG_SIZE:], raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE])
        return plaintext.decode("utf-8")
    except ValueError as exc:
        # bad hex, truncated value, wrong key or column (MAC check failed)
        raise DecryptionError(f"cannot decrypt {column}: {exc}") from exc


def seal_optional(value: Optional[str], column: str) -> Optional[str]:
    # empty strings are kept as-is so "missing credential" checks still see them
    return seal(value, column) if value else value


def unseal_optional(value: Optional[str], column: str) -> Optional[str]:
    return unseal(value, column) if value else value


def mask_secret(value: Optional[str], keep: int = 4) -> str:
    """Short, log-safe preview of a token."""
    if not value:
        return "-"
    return value[:keep] + "***" + value[-keep:] if len(value) > keep * 2 else "***"
