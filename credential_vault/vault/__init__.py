"""Credential Vault core — AEAD encryption, key epochs, storage and rotation.

Security Note (Threat Model):
    Secrets are decrypted in process memory only while a single request
    (or a single rotated row) is being served. Key material is read from
    the environment and is never persisted next to the ciphertexts it
    protects.
"""

from .crypto import CredentialEncryptor, EncryptedPayload, validate_key
from .config import KeyEpoch, KeyProvider, generate_key, key_fingerprint
from .store import AbstractStore, MemoryStore, PostgresStore, ROTATION_TABLES
from .key_rotation import RotationCoordinator
from .credential_vault import CredentialVault

__all__ = [
    "CredentialEncryptor",
    "EncryptedPayload",
    "validate_key",
    "KeyEpoch",
    "KeyProvider",
    "generate_key",
    "key_fingerprint",
    "AbstractStore",
    "MemoryStore",
    "PostgresStore",
    "ROTATION_TABLES",
    "RotationCoordinator",
    "CredentialVault",
]
