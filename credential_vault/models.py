"""Vault data models and request schemas.

Request schemas reject unknown fields and are validated before any
business logic runs.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .vault.crypto import EncryptedPayload


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class RotationTable(str, Enum):
    """Credential-bearing tables a rotation may target."""

    ACTIVATION_CREDENTIALS = "activation_credentials"
    INTEGRATION_CONNECTIONS = "integration_connections"
    VPS_INSTANCES = "vps_instances"


class CredentialRecord(BaseModel):
    """One encrypted secret blob belonging to an owning resource.

    ``ciphertext``, ``iv``, ``auth_tag`` (base64) and ``key_version`` are
    always written together.
    """

    id: str
    owner_ref: str
    credential_kind: str
    service_name: str
    ciphertext: str = Field(repr=False)
    iv: str = Field(repr=False)
    auth_tag: str = Field(repr=False)
    key_version: int = Field(ge=1)
    status: CredentialStatus = CredentialStatus.ACTIVE
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == CredentialStatus.ACTIVE

    def payload(self) -> EncryptedPayload:
        return EncryptedPayload.from_columns(
            self.ciphertext, self.iv, self.auth_tag,
        )

    def summary(self) -> dict[str, Any]:
        """Metadata-only view, safe to return to any authorized caller."""
        return self.model_dump(
            mode="json",
            exclude={"ciphertext", "iv", "auth_tag"},
        )


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SubmitCredentialRequest(_Request):
    owner_ref: StrictStr = Field(min_length=1, max_length=255)
    credential_kind: StrictStr = Field(
        min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_\-]*$",
    )
    service_name: StrictStr = Field(min_length=1, max_length=255)
    secret_fields: dict[StrictStr, StrictStr] = Field(min_length=1, repr=False)
    metadata: Optional[dict[str, Any]] = None

    @field_validator("secret_fields")
    @classmethod
    def validate_field_names(cls, v: dict[str, str]) -> dict[str, str]:
        for name in v:
            if not name or len(name) > 255:
                raise ValueError(
                    "secret field names must be 1-255 characters"
                )
        return v


class ReadCredentialRequest(_Request):
    """Admin read by credential id, or by owner (optionally narrowed to a kind)."""

    credential_id: Optional[StrictStr] = Field(default=None, min_length=1)
    owner_ref: Optional[StrictStr] = Field(default=None, min_length=1)
    credential_kind: Optional[StrictStr] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_selector(self) -> "ReadCredentialRequest":
        if (self.credential_id is None) == (self.owner_ref is None):
            raise ValueError(
                "exactly one of credential_id or owner_ref is required"
            )
        if self.credential_id is not None and self.credential_kind is not None:
            raise ValueError(
                "credential_kind only narrows an owner_ref lookup"
            )
        return self


class OwnedCredentialRequest(_Request):
    owner_ref: StrictStr = Field(min_length=1, max_length=255)
    credential_kind: Optional[StrictStr] = Field(default=None, min_length=1)


class RevokeCredentialRequest(_Request):
    credential_id: StrictStr = Field(min_length=1)
    reason: Optional[StrictStr] = Field(default=None, max_length=500)


class RotateRequest(_Request):
    table: RotationTable
    old_key_version: StrictInt = Field(ge=1)
    dry_run: StrictBool = True


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class SubmitCredentialResponse(BaseModel):
    id: str
    credential_kind: str
    service_name: str
    status: CredentialStatus
    created_at: Optional[datetime] = None


class RotationError(BaseModel):
    row_id: str
    message: str


class RotationResult(BaseModel):
    rotated: int = 0
    errors: list[RotationError] = Field(default_factory=list)
    new_key_version: int
    dry_run: bool
    table: RotationTable
    message: str = ""


def parse_request(model: type[BaseModel], data: Any) -> BaseModel:
    """Validate a request body (raw JSON bytes/str or a mapping).

    Raises:
        ValidationError (vault): listing offending field locations only,
            never the submitted values.
    """
    try:
        if isinstance(data, (bytes, bytearray, str)):
            return model.model_validate_json(data)
        return model.model_validate(data)
    except PydanticValidationError as err:
        problems = [
            {
                "field": ".".join(str(p) for p in e["loc"]) or "body",
                "error": e["msg"],
            }
            for e in err.errors(include_input=False, include_url=False)
        ]
        raise ValidationError(
            "Invalid request body", {"fields": problems},
        ) from None
