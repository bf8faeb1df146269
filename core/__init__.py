"""Core domain modules.

This package contains the custody building blocks:

- security: sealing of key material at rest
- custody: custodial wallets, venue onboarding and request-signing keys
- deposits: chain scanning, the deposit state machine and balance views
- notifications: operator alerts (Telegram, Discord)
- persistence: persistence boundary (interfaces)
- storage: concrete persistence implementations (memory, PostgreSQL)
"""
