"""Credential encryption at rest (AES-256-GCM).

Stored credential blobs (tenant API keys, third-party OAuth token sets) are
JSON objects.  When a key is configured they are wrapped in an envelope:

    {"__enc": "v1", "data": base64(nonce || ciphertext)}

The envelope is itself a JSON object so it fits the same ``jsonb`` column as
the plaintext form.  ``decrypt`` accepts both shapes, so rows written before a
key was configured keep working.
"""

from __future__ import annotations

import base64
import binascii
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

ENVELOPE_VERSION = "v1"


class CredentialDecryptError(ValueError):
    """Raised when an encrypted credential blob cannot be decrypted."""


def generate_key() -> str:
    """Return a new base64-encoded 256-bit key suitable for AC2_CREDENTIAL_ENCRYPTION_KEY."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def is_encrypted(value: object) -> bool:
    return isinstance(value, dict) and value.get("__enc") == ENVELOPE_VERSION


class CredentialCipher:
    def __init__(self, key: str | bytes | None = None, *, aad: bytes = b"ac2:credentials"):
        if isinstance(key, str):
            key = base64.b64decode(key) if key else None
        if key is not None and len(key) != 32:
            raise ValueError("credential encryption key must be 32 bytes")
        self._aead = AESGCM(key) if key else None
        self._aad = aad

    @property
    def enabled(self) -> bool:
        return self._aead is not None

    def encrypt(self, credentials: dict) -> dict:
        if self._aead is None:
            return credentials
        plaintext = json.dumps(credentials, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(12)
        ciphertext = self._aead.encrypt(nonce, plaintext, self._aad)
        return {
            "__enc": ENVELOPE_VERSION,
            "data": base64.b64encode(nonce + ciphertext).decode("ascii"),
        }

    def decrypt(self, value: object) -> dict:
        # asyncpg's jsonb codec returns dicts, but rows written as text come back as str
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise CredentialDecryptError("credential blob is not JSON") from e
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise CredentialDecryptError("credential blob must be a JSON object")
        if not is_encrypted(value):
            return value
        if self._aead is None:
            raise CredentialDecryptError("encrypted credentials but no encryption key configured")

        try:
            raw = base64.b64decode(value["data"], validate=True)
            plaintext = self._aead.decrypt(raw[:12], raw[12:], self._aad)
        except (KeyError, binascii.Error, InvalidTag, ValueError) as e:
            raise CredentialDecryptError("credential blob failed to decrypt") from e
        return json.loads(plaintext)
