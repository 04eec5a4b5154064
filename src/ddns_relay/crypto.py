"""Authenticated encryption envelope (AES-256-GCM).

Token layout: base64(nonce || ciphertext || tag), with a fresh 12-byte nonce
drawn from ``os.urandom`` on every call to :func:`seal`.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ddns_relay.errors import DecryptionFailed, InvalidKeyLength

KEY_SIZE = 32
NONCE_SIZE = 12

KeyLike = Union[str, bytes]


def _key_bytes(key: KeyLike) -> bytes:
    raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if len(raw) != KEY_SIZE:
        raise InvalidKeyLength(f"encryption key must be exactly {KEY_SIZE} bytes, got {len(raw)}")
    return raw


def seal(key: KeyLike, plaintext: bytes) -> str:
    """Encrypt and authenticate ``plaintext`` under ``key``."""
    aead = AESGCM(_key_bytes(key))
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = aead.encrypt(nonce, plaintext, None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def open_sealed(key: KeyLike, token: str) -> bytes:
    """Decrypt a token produced by :func:`seal`.

    Bad encoding, truncated data and tag mismatch all raise the same
    :class:`DecryptionFailed`.
    """
    aead = AESGCM(_key_bytes(key))
    try:
        data = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise DecryptionFailed("decryption failed") from None

    if len(data) < NONCE_SIZE:
        raise DecryptionFailed("decryption failed")

    nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
    try:
        return aead.decrypt(nonce, ciphertext, None)
    except InvalidTag:
        raise DecryptionFailed("decryption failed") from None


def generate_key() -> str:
    """Return a new random key: 24 random bytes, base64 encoded to 32 characters."""
    return base64.b64encode(os.urandom(24)).decode("ascii")
