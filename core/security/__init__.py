"""Key material protection."""

from core.security.secret_box import AuthenticationFailed, SecretBox, SecretBoxError, SecretBoxKeyError

__all__ = [
    "AuthenticationFailed",
    "SecretBox",
    "SecretBoxError",
    "SecretBoxKeyError",
]
