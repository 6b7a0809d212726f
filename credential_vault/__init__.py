"""Credential Vault.

Encrypted storage of third-party access material with per-record key
versioning, in-place key rotation and an authorization gate around every
read, write and rotation.
"""
from .version import __version__
from .exceptions import (
    VaultError,
    ConfigurationError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
    ConflictError,
    CryptoIntegrityError,
    RateLimitError,
)
from .vault import (
    CredentialEncryptor,
    CredentialVault,
    KeyProvider,
    MemoryStore,
    PostgresStore,
    RotationCoordinator,
    generate_key,
)

__all__ = [
    "__version__",
    "VaultError",
    "ConfigurationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "CryptoIntegrityError",
    "RateLimitError",
    "CredentialEncryptor",
    "CredentialVault",
    "KeyProvider",
    "MemoryStore",
    "PostgresStore",
    "RotationCoordinator",
    "generate_key",
]
