"""
Vault Exceptions — error taxonomy shared by every vault operation.

Each error carries the HTTP status it is surfaced with and a ``public_message``
that is safe to return to external callers. ``details`` may hold record ids
for internal logs, never key material or plaintext.
"""
from typing import Any, Optional


class VaultError(Exception):
    """Base exception for all credential vault errors."""

    status: int = 500
    public_message: Optional[str] = None

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message

    @property
    def public(self) -> str:
        """Message returned to external callers."""
        return self.public_message or self.message


class ConfigurationError(VaultError):
    """Missing or malformed key material or settings. Always fatal."""

    status = 500
    public_message = "Server configuration error"


class AuthenticationError(VaultError):
    """Missing, malformed or expired credentials on the request."""

    status = 401


class AuthorizationError(VaultError):
    """Caller is authenticated but not permitted."""

    status = 403


class NotFoundError(VaultError):
    """Requested record or owning resource does not exist."""

    status = 404


class ValidationError(VaultError):
    """Malformed request body or parameters."""

    status = 400


class ConflictError(VaultError):
    """Concurrent rotation or a row changed underneath a write."""

    status = 409


class CryptoIntegrityError(VaultError):
    """AEAD tag verification failed: tampered data or the wrong key."""

    status = 500
    public_message = "Decryption failed"


class RateLimitError(VaultError):
    """Admission control rejected the request."""

    status = 429
    public_message = "Rate limit exceeded"

    def __init__(self, retry_after: int, action: str = ''):
        super().__init__(
            f"Rate limit exceeded for {action or 'request'}",
            {"retry_after_seconds": retry_after, "action": action},
        )
        self.retry_after = retry_after
        self.action = action
