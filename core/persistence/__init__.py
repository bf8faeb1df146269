"""Persistence interfaces.

These protocols define the persistence boundary. Implementations can be backed by
PostgreSQL (production) or process memory (tests, local development).
"""

from .interfaces import (
    AccountStore,
    CorruptRecordError,
    CursorStore,
    DepositStore,
    LedgerStore,
    SigningKeyStore,
)
