"""
Secret Box
==========

AES-256-GCM sealing for private-key material at rest (wallet keys and
Ed25519 request-signing keys).

Envelope format (JSON string, all fields base64):

    {"iv": <12-byte nonce>, "encrypted": <ciphertext>, "tag": <16-byte GCM tag>}

Security:
- The master key is loaded once at startup; a missing or wrong-size key
  is a startup error, never a per-call one
- Plaintexts and keys are never logged
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16


class SecretBoxError(Exception):
    """Base exception for secret box failures."""


class SecretBoxKeyError(SecretBoxError):
    """Master key missing or malformed. Fatal at startup."""


class AuthenticationFailed(SecretBoxError):
    """Envelope failed tag verification or could not be parsed."""


class SecretBox:
    """Symmetric authenticated encryption with a fixed 32-byte key."""

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE_BYTES:
            raise SecretBoxKeyError(f"Master encryption key must be exactly {KEY_SIZE_BYTES} bytes")
        self._aead = AESGCM(bytes(key))

    @classmethod
    def from_hex(cls, key_hex: str | None) -> "SecretBox":
        if not key_hex:
            raise SecretBoxKeyError("MASTER_ENCRYPTION_KEY environment variable not set")
        if len(key_hex) != KEY_SIZE_BYTES * 2:
            raise SecretBoxKeyError("MASTER_ENCRYPTION_KEY must be 32 bytes (64 hex characters)")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise SecretBoxKeyError("MASTER_ENCRYPTION_KEY is not valid hex") from exc
        return cls(key)

    @classmethod
    def from_env(cls, var_name: str = "MASTER_ENCRYPTION_KEY") -> "SecretBox":
        return cls.from_hex(os.getenv(var_name))

    @staticmethod
    def generate_key_hex() -> str:
        """Generate a new random master key (64 hex chars)."""
        return secrets.token_hex(KEY_SIZE_BYTES)

    def seal(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE_BYTES], sealed[-TAG_SIZE_BYTES:]
        envelope = {
            "iv": base64.b64encode(nonce).decode("ascii"),
            "encrypted": base64.b64encode(ciphertext).decode("ascii"),
            "tag": base64.b64encode(tag).decode("ascii"),
        }
        return json.dumps(envelope, separators=(",", ":"))

    def open(self, envelope: str) -> str:
        try:
            data = json.loads(envelope)
            nonce = base64.b64decode(data["iv"], validate=True)
            ciphertext = base64.b64decode(data["encrypted"], validate=True)
            tag = base64.b64decode(data["tag"], validate=True)
        except (ValueError, TypeError, KeyError, binascii.Error) as exc:
            raise AuthenticationFailed("Malformed secret envelope") from exc

        if len(nonce) != NONCE_SIZE_BYTES or len(tag) != TAG_SIZE_BYTES:
            raise AuthenticationFailed("Secret envelope has invalid nonce or tag length")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise AuthenticationFailed("Secret envelope failed authentication") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailed("Secret envelope plaintext is not UTF-8") from exc
