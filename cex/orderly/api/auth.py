"""
Orderly API Authentication Helper
=================================

Ed25519 request signing for Orderly private REST endpoints.

Canonical string (no separators, no whitespace inside the JSON body):

    <timestamp ms><METHOD><path incl. query><compact JSON body>

The body is omitted entirely for GET/DELETE requests. The signature is the
Ed25519 signature of the UTF-8 canonical string, URL-safe base64 without
padding.

Security:
- Never logs private keys or signatures
- Timestamps are sanity-checked locally (+/-300s) so clock drift fails fast
  with an actionable message; the venue still enforces its own window

Reference:
- https://orderly.network/docs/build-on-omnichain/evm-api/api-authentication
"""

import base64
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import base58
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey

from cex.orderly.api.errors import ClockSkewError
from core.types import CanonicalRequest

TIMESTAMP_WINDOW_MS = 300 * 1000
ORDERLY_KEY_PREFIX = "ed25519:"

_BODYLESS_METHODS = frozenset({"GET", "DELETE"})


def now_ms() -> int:
    return int(time.time() * 1000)


def compact_json(body: Any) -> str:
    """Serialize a request body with no whitespace between tokens."""
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def build_canonical_request(method: str, path: str, body: Any = None, timestamp: Optional[int] = None) -> CanonicalRequest:
    """
    Build the canonical request for signing.

    Args:
        method: HTTP method (case-insensitive)
        path: Request path including any query string (e.g., "/v1/client/holding")
        body: JSON-serializable body; ignored for GET/DELETE
        timestamp: Millisecond timestamp (default: now)

    Returns:
        CanonicalRequest with the serialized body (or None)
    """
    upper = method.upper()
    body_str = None
    if body is not None and upper not in _BODYLESS_METHODS:
        body_str = compact_json(body)
    return CanonicalRequest(
        timestamp=now_ms() if timestamp is None else int(timestamp),
        method=upper,
        path=path,
        body=body_str,
    )


def validate_timestamp(timestamp: int, *, now: Optional[int] = None) -> None:
    """
    Reject timestamps too far from local time.

    Raises:
        ClockSkewError: If |now - timestamp| exceeds 300 seconds
    """
    current = now_ms() if now is None else now
    diff = abs(current - int(timestamp))
    if diff > TIMESTAMP_WINDOW_MS:
        raise ClockSkewError(
            f"Timestamp skew too large: {diff}ms (max {TIMESTAMP_WINDOW_MS}ms). Local time may be incorrect"
        )


def encode_signature(signature: bytes) -> str:
    return base64.urlsafe_b64encode(signature).decode("ascii").rstrip("=")


def encode_public_key(public_key: bytes) -> str:
    return base58.b58encode(public_key).decode("ascii")


def generate_keypair() -> tuple[str, str]:
    """
    Generate a new Ed25519 keypair.

    Returns:
        (private key seed as 64 hex chars, public key base58)
    """
    signing_key = SigningKey.generate()
    return bytes(signing_key).hex(), encode_public_key(bytes(signing_key.verify_key))


def _load_signing_key(private_key_hex: str) -> SigningKey:
    clean = private_key_hex[2:] if private_key_hex.startswith("0x") else private_key_hex
    try:
        seed = bytes.fromhex(clean)
        return SigningKey(seed)
    except (ValueError, TypeError, CryptoError) as exc:
        raise ValueError("Ed25519 private key must be a 32-byte hex seed") from exc


@dataclass
class RequestSigner:
    """
    Signs REST requests for one venue account.

    Example:
        >>> priv, pub = generate_keypair()
        >>> signer = RequestSigner.from_private_key_hex(priv, account_id="0xabc")
        >>> sig = signer.sign("GET", "/v1/positions", timestamp=1700000000000, check_clock=False)
        >>> "=" in sig or "+" in sig or "/" in sig
        False
    """

    account_id: str
    signing_key: SigningKey

    @classmethod
    def from_private_key_hex(cls, private_key_hex: str, *, account_id: str) -> "RequestSigner":
        return cls(account_id=account_id, signing_key=_load_signing_key(private_key_hex))

    @property
    def public_key(self) -> str:
        """Base58 public key without prefix."""
        return encode_public_key(bytes(self.signing_key.verify_key))

    @property
    def orderly_key(self) -> str:
        return f"{ORDERLY_KEY_PREFIX}{self.public_key}"

    def sign_canonical(self, request: CanonicalRequest) -> str:
        signed = self.signing_key.sign(request.to_message().encode("utf-8"))
        return encode_signature(signed.signature)

    def sign(
        self,
        method: str,
        path: str,
        body: Any = None,
        timestamp: Optional[int] = None,
        *,
        check_clock: bool = True,
    ) -> str:
        """
        Sign one request.

        Same (method, path, body, timestamp, key) always yields the same
        signature; Ed25519 signing is deterministic.

        Raises:
            ClockSkewError: If check_clock is set and timestamp is outside the window
        """
        request = build_canonical_request(method, path, body, timestamp)
        if check_clock:
            validate_timestamp(request.timestamp)
        return self.sign_canonical(request)

    def build_headers(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        timestamp: Optional[int] = None,
        recv_window: Optional[int] = None,
    ) -> Dict[str, str]:
        """
        Build authentication headers for an Orderly private REST request.

        Returns:
            Dict with Content-Type, orderly-timestamp, orderly-account-id,
            orderly-key, orderly-signature (and x-recv-window if given)
        """
        request = build_canonical_request(method, path, body, timestamp)
        validate_timestamp(request.timestamp)

        content_type = (
            "application/x-www-form-urlencoded"
            if request.method in _BODYLESS_METHODS
            else "application/json"
        )
        headers = {
            "Content-Type": content_type,
            "orderly-timestamp": str(request.timestamp),
            "orderly-account-id": self.account_id,
            "orderly-key": self.orderly_key,
            "orderly-signature": self.sign_canonical(request),
        }
        if recv_window:
            headers["x-recv-window"] = str(recv_window)
        return headers
