"""Request-signing key management.

Ed25519 keys are generated here, sealed with the master SecretBox and stored
per venue account. A key past its expiry is treated as absent. Rotation
supersedes the previous key rather than editing it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from cex.orderly.api.auth import RequestSigner, generate_keypair
from core.persistence.interfaces import SigningKeyStore
from core.security.secret_box import SecretBox
from core.types import KeyScope, SigningKey, utc_now

logger = logging.getLogger(__name__)

DEFAULT_EXPIRATION_DAYS = 365


@dataclass(frozen=True)
class KeyExpiration:
    expires_at: datetime
    is_expired: bool
    days_remaining: int


class KeyService:
    def __init__(
        self,
        *,
        store: SigningKeyStore,
        secret_box: SecretBox,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._box = secret_box
        self._clock = clock

    def generate_key(
        self,
        *,
        account_id: str,
        scope: KeyScope = "trading",
        expiration_days: int = DEFAULT_EXPIRATION_DAYS,
    ) -> SigningKey:
        """Create a sealed keypair. Not persisted until `save_key`."""
        if expiration_days < 1:
            raise ValueError("expiration_days must be >= 1")
        private_hex, public_b58 = generate_keypair()
        now = self._clock()
        return SigningKey(
            account_id=account_id,
            public_key=public_b58,
            encrypted_private_key=self._box.seal(private_hex),
            scope=scope,
            expires_at=now + timedelta(days=expiration_days),
            created_at=now,
        )

    def save_key(self, key: SigningKey) -> None:
        """Persist `key` as the account's current key, superseding any previous one."""
        previous = self._store.get_current_signing_key(account_id=key.account_id)
        if previous is not None and previous.public_key != key.public_key:
            self._store.supersede_signing_key(
                account_id=key.account_id,
                public_key=previous.public_key,
                superseded_at=self._clock(),
            )
            logger.info("Superseded signing key %s for account %s", previous.orderly_key, key.account_id)
        self._store.insert_signing_key(key=key)

    def load_key(self, account_id: str) -> Optional[SigningKey]:
        key = self._store.get_current_signing_key(account_id=account_id)
        if key is None:
            return None
        if key.is_expired(self._clock()):
            logger.warning("Signing key expired for account %s", account_id)
            return None
        return key

    def has_valid_key(self, account_id: str) -> bool:
        return self.load_key(account_id) is not None

    def load_signer(self, account_id: str) -> Optional[RequestSigner]:
        """Open the current key into a signer; None if absent or expired."""
        key = self.load_key(account_id)
        if key is None:
            return None
        private_hex = self._box.open(key.encrypted_private_key)
        return RequestSigner.from_private_key_hex(private_hex, account_id=account_id)

    def revoke(self, account_id: str) -> bool:
        """Supersede the current key without a replacement."""
        key = self._store.get_current_signing_key(account_id=account_id)
        if key is None:
            return False
        return self._store.supersede_signing_key(
            account_id=account_id,
            public_key=key.public_key,
            superseded_at=self._clock(),
        )

    def expiration(self, account_id: str) -> Optional[KeyExpiration]:
        key = self._store.get_current_signing_key(account_id=account_id)
        if key is None:
            return None
        now = self._clock()
        remaining = key.expires_at - now
        return KeyExpiration(
            expires_at=key.expires_at,
            is_expired=now > key.expires_at,
            days_remaining=max(0, remaining.days),
        )
