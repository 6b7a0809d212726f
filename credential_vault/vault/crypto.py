"""
Vault Crypto Core — AES-256-GCM encryption of credential blobs.

Storage layout per record: ``ciphertext``, ``iv`` (12 bytes) and ``tag``
(16 bytes) kept in separate columns, base64-encoded. The AEAD primitive works
on ``ciphertext || tag`` as one blob; the split happens only here.

Security Note:
    Never log plaintext, ciphertext or key values.
    Nonces are random 96-bit, drawn fresh for every call and never cached.
"""
import os
import base64
import binascii
import logging
from typing import NamedTuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import ConfigurationError, CryptoIntegrityError

logger = logging.getLogger("credential_vault.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256


def validate_key(key: bytes) -> bytes:
    """Ensure ``key`` is exactly 32 raw bytes.

    Raises:
        ConfigurationError: On any other length or type. Keys are never
            truncated or padded.
    """
    if not isinstance(key, (bytes, bytearray)):
        raise ConfigurationError(
            f"Encryption key must be bytes, got {type(key).__name__}"
        )
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"Encryption key must be exactly {KEY_LENGTH} bytes, got {len(key)}"
        )
    return bytes(key)


def decode_key(value: str, name: str = "key") -> bytes:
    """Decode a base64 key string and validate its length.

    Raises:
        ConfigurationError: If ``value`` is not valid base64 or does not
            decode to exactly 32 bytes.
    """
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as err:
        raise ConfigurationError(f"{name} is not valid base64") from err
    if len(raw) != KEY_LENGTH:
        raise ConfigurationError(
            f"{name} must decode to exactly {KEY_LENGTH} bytes, got {len(raw)}"
        )
    return raw


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as err:
        raise CryptoIntegrityError(f"Stored {field} is not valid base64") from err


class EncryptedPayload(NamedTuple):
    """Result of one encryption: unpacks as ``(ciphertext, iv, tag)``."""

    ciphertext: bytes
    iv: bytes
    tag: bytes

    def to_columns(self) -> dict[str, str]:
        """Encode as the base64 strings persisted by the stores."""
        return {
            "ciphertext": _b64(self.ciphertext),
            "iv": _b64(self.iv),
            "tag": _b64(self.tag),
        }

    @classmethod
    def from_columns(
        cls, ciphertext: str, iv: str, tag: str,
    ) -> "EncryptedPayload":
        """Decode persisted base64 columns.

        Raises:
            CryptoIntegrityError: If a column is not valid base64.
        """
        return cls(
            _unb64(ciphertext, "ciphertext"),
            _unb64(iv, "iv"),
            _unb64(tag, "tag"),
        )


class CredentialEncryptor:
    """Stateless AEAD encrypt/decrypt over a 256-bit key."""

    def encrypt(self, plaintext: bytes, key: bytes) -> EncryptedPayload:
        """Encrypt ``plaintext`` under ``key`` with a fresh random IV.

        Args:
            plaintext: Data to encrypt.
            key: Raw 32-byte key.

        Returns:
            EncryptedPayload with the ciphertext, the 12-byte IV and the
            16-byte authentication tag.

        Raises:
            ConfigurationError: If ``key`` is not exactly 32 bytes.
        """
        cipher = AESGCM(validate_key(key))
        iv = os.urandom(NONCE_SIZE)
        sealed = cipher.encrypt(iv, plaintext, None)
        return EncryptedPayload(sealed[:-TAG_SIZE], iv, sealed[-TAG_SIZE:])

    def decrypt(
        self,
        ciphertext: bytes,
        iv: bytes,
        tag: bytes,
        key: bytes,
    ) -> bytes:
        """Verify and decrypt one payload.

        Raises:
            ConfigurationError: If ``key`` is not exactly 32 bytes.
            CryptoIntegrityError: If the tag does not verify (tampered
                data or wrong key) or the IV/tag have the wrong size.
        """
        cipher = AESGCM(validate_key(key))
        if len(iv) != NONCE_SIZE:
            raise CryptoIntegrityError(
                f"IV must be {NONCE_SIZE} bytes, got {len(iv)}"
            )
        if len(tag) != TAG_SIZE:
            raise CryptoIntegrityError(
                f"Authentication tag must be {TAG_SIZE} bytes, got {len(tag)}"
            )
        try:
            return cipher.decrypt(iv, bytes(ciphertext) + bytes(tag), None)
        except InvalidTag as err:
            raise CryptoIntegrityError(
                "Authentication tag verification failed"
            ) from err

    def decrypt_payload(
        self, payload: Union[EncryptedPayload, tuple], key: bytes,
    ) -> bytes:
        """Decrypt an ``EncryptedPayload`` (or a ``(ct, iv, tag)`` tuple)."""
        ciphertext, iv, tag = payload
        return self.decrypt(ciphertext, iv, tag, key)
