"""
Vault Configuration — Key epochs and validated key material.

Reads key material from environment variables:
    CURRENT_KEY = <base64-encoded 32-byte key>      (always required)
    CURRENT_KEY_VERSION = <integer, default 1>
    NEXT_KEY = <base64-encoded 32-byte key>         (only during rotation)

Security Note:
    Never log key material. Only log key versions and fingerprints.
"""
import os
import hmac
import base64
import hashlib
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..exceptions import ConfigurationError
from .crypto import KEY_LENGTH, decode_key

logger = logging.getLogger("credential_vault.vault")

_FINGERPRINT_LABEL = b"credential-vault/key-fingerprint/v1"


def key_fingerprint(key: bytes) -> str:
    """Return a short, non-reversible fingerprint for a key.

    HMAC-SHA256 of a fixed label keyed by ``key``, truncated to 16 hex chars.
    """
    digest = hmac.new(key, _FINGERPRINT_LABEL, hashlib.sha256).hexdigest()
    return digest[:16]


def generate_key() -> str:
    """Generate a random 32-byte key and return it as a base64 string.

    This is a utility for operators preparing ``NEXT_KEY``.
    """
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


class KeyEpoch(BaseModel):
    """One key and the version it stamps on ciphertexts."""

    version: int = Field(ge=1)
    key: bytes

    model_config = {"frozen": True}

    @field_validator("key")
    @classmethod
    def validate_length(cls, v: bytes) -> bytes:
        if len(v) != KEY_LENGTH:
            raise ValueError(
                f"key must be exactly {KEY_LENGTH} bytes, got {len(v)}"
            )
        return v

    @property
    def fingerprint(self) -> str:
        return key_fingerprint(self.key)

    def __repr__(self) -> str:
        return f"<KeyEpoch v{self.version} fp={self.fingerprint}>"

    __str__ = __repr__


class KeyProvider(BaseModel):
    """Resolves the active key and, while a rotation is in flight, the next.

    ``current()`` encrypts every new write and is the source key of a
    rotation. ``next()`` is the rotation destination and is ``None`` outside
    a rotation window.
    """

    current_key: KeyEpoch
    next_key: Optional[bytes] = None

    @field_validator("next_key")
    @classmethod
    def validate_next_length(cls, v: Optional[bytes]) -> Optional[bytes]:
        if v is not None and len(v) != KEY_LENGTH:
            raise ValueError(
                f"next key must be exactly {KEY_LENGTH} bytes, got {len(v)}"
            )
        return v

    @model_validator(mode="after")
    def validate_distinct(self) -> "KeyProvider":
        """A rotation onto the same key would only burn a version number."""
        if self.next_key is not None and hmac.compare_digest(
            self.next_key, self.current_key.key
        ):
            raise ValueError("NEXT_KEY must differ from CURRENT_KEY")
        return self

    def __repr__(self) -> str:
        nxt = key_fingerprint(self.next_key) if self.next_key else None
        return (
            f"<KeyProvider current=v{self.current_key.version}"
            f" fp={self.current_key.fingerprint} next_fp={nxt}>"
        )

    __str__ = __repr__

    def current(self) -> KeyEpoch:
        return self.current_key

    def next(self) -> Optional[KeyEpoch]:
        """Key for ``current_version + 1``, or None outside rotation."""
        if self.next_key is None:
            return None
        return KeyEpoch(
            version=self.current_key.version + 1, key=self.next_key,
        )

    def key_for(self, version: int) -> Optional[KeyEpoch]:
        """Key that produced ciphertexts stamped with ``version``, if held."""
        if version == self.current_key.version:
            return self.current_key
        nxt = self.next()
        if nxt is not None and version == nxt.version:
            return nxt
        return None

    def require_next(self) -> KeyEpoch:
        """Like ``next()`` but fatal when no rotation key is configured.

        Raises:
            ConfigurationError: If NEXT_KEY is not configured.
        """
        nxt = self.next()
        if nxt is None:
            raise ConfigurationError(
                "NEXT_KEY not configured. Set the new key before rotating."
            )
        return nxt

    @classmethod
    def from_keys(
        cls,
        current: bytes,
        version: int = 1,
        next_key: Optional[bytes] = None,
    ) -> "KeyProvider":
        """Build a provider from raw keys.

        Raises:
            ConfigurationError: If any key is malformed.
        """
        try:
            return cls(
                current_key=KeyEpoch(version=version, key=current),
                next_key=next_key,
            )
        except ValueError as err:
            raise ConfigurationError(f"Invalid key material: {err}") from err

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "KeyProvider":
        """Create a KeyProvider from CURRENT_KEY / NEXT_KEY.

        Raises:
            ConfigurationError: If CURRENT_KEY is missing, or a key is not
                base64 or does not decode to exactly 32 bytes.
        """
        env = os.environ if environ is None else environ
        raw_current = env.get("CURRENT_KEY")
        if not raw_current:
            raise ConfigurationError(
                "CURRENT_KEY is not configured. "
                "Set CURRENT_KEY=<base64-encoded-32-byte-key>"
            )
        current = decode_key(raw_current, "CURRENT_KEY")
        raw_version = env.get("CURRENT_KEY_VERSION", "1")
        try:
            version = int(raw_version)
        except ValueError as err:
            raise ConfigurationError(
                "CURRENT_KEY_VERSION must be an integer"
            ) from err
        raw_next = env.get("NEXT_KEY")
        next_key = decode_key(raw_next, "NEXT_KEY") if raw_next else None
        provider = cls.from_keys(current, version=version, next_key=next_key)
        logger.debug("Loaded key provider: %r", provider)
        return provider
