"""
Credential Vault settings.

Everything except key material (see ``vault.config``) is read here from the
environment:
    VAULT_BACKEND = postgres | memory
    VAULT_DSN = postgres://...
    VAULT_REDIS_URL = redis://...            (optional)
    VAULT_JWT_SECRET, VAULT_JWT_ALGORITHM, VAULT_JWT_AUDIENCE, VAULT_JWT_ISSUER
    VAULT_SERVICE_SECRET
    VAULT_RATE_<ACTION> = <max_requests>/<window_seconds>
    VAULT_HOST, VAULT_PORT
"""
import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import ConfigurationError

ADMIN_ROLE = 'admin'

SUBMIT_ACTION = 'submit'
READ_ACTION = 'read'
REVOKE_ACTION = 'revoke'
ROTATE_ACTION = 'rotate'
RUNTIME_ACTION = 'runtime'
LIST_ACTION = 'list'

SENSITIVE_RESPONSE_WARNING = (
    "SENSITIVE DATA - Do not log, store, or transmit these credentials"
)


class RateLimitRule(BaseModel):
    """Admission budget for one action."""

    max_requests: int = Field(ge=1)
    window_seconds: int = Field(ge=1)

    @classmethod
    def parse(cls, value: str) -> "RateLimitRule":
        """Parse ``"<max>/<seconds>"``."""
        try:
            max_requests, window = value.split("/", 1)
            return cls(
                max_requests=int(max_requests), window_seconds=int(window),
            )
        except ValueError as err:
            raise ConfigurationError(
                f"Invalid rate limit rule {value!r}, expected <max>/<seconds>"
            ) from err


DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    SUBMIT_ACTION: RateLimitRule(max_requests=10, window_seconds=60),
    READ_ACTION: RateLimitRule(max_requests=30, window_seconds=60),
    LIST_ACTION: RateLimitRule(max_requests=60, window_seconds=60),
    REVOKE_ACTION: RateLimitRule(max_requests=10, window_seconds=60),
    ROTATE_ACTION: RateLimitRule(max_requests=3, window_seconds=300),
    RUNTIME_ACTION: RateLimitRule(max_requests=120, window_seconds=60),
}


class VaultSettings(BaseModel):
    """Validated service settings."""

    backend: str = Field(default="postgres")
    dsn: Optional[str] = None
    redis_url: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = Field(default="HS256")
    jwt_audience: Optional[str] = None
    jwt_issuer: Optional[str] = None
    service_secret: Optional[str] = None
    rate_limits: dict[str, RateLimitRule] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000, ge=1, le=65535)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("postgres", "memory"):
            raise ValueError(f"Unsupported vault backend: {v}")
        return v

    @field_validator("jwt_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        # "none" would accept unsigned tokens
        if v.lower() == "none":
            raise ValueError("Unsigned identity tokens are not accepted")
        return v

    def rule_for(self, action: str) -> RateLimitRule:
        return self.rate_limits.get(action, DEFAULT_RATE_LIMITS[READ_ACTION])

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "VaultSettings":
        """Create VaultSettings from environment variables.

        Raises:
            ConfigurationError: If a value is malformed.
        """
        env = os.environ if environ is None else environ
        rate_limits = dict(DEFAULT_RATE_LIMITS)
        for action in DEFAULT_RATE_LIMITS:
            raw = env.get(f"VAULT_RATE_{action.upper()}")
            if raw:
                rate_limits[action] = RateLimitRule.parse(raw)
        try:
            return cls(
                backend=env.get("VAULT_BACKEND", "postgres"),
                dsn=env.get("VAULT_DSN"),
                redis_url=env.get("VAULT_REDIS_URL"),
                jwt_secret=env.get("VAULT_JWT_SECRET"),
                jwt_algorithm=env.get("VAULT_JWT_ALGORITHM", "HS256"),
                jwt_audience=env.get("VAULT_JWT_AUDIENCE"),
                jwt_issuer=env.get("VAULT_JWT_ISSUER"),
                service_secret=env.get("VAULT_SERVICE_SECRET"),
                rate_limits=rate_limits,
                host=env.get("VAULT_HOST", "0.0.0.0"),
                port=int(env.get("VAULT_PORT", "5000")),
            )
        except ValueError as err:
            raise ConfigurationError(f"Invalid vault settings: {err}") from err
