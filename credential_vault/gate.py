"""
Access Gate — caller identity and authorization for every vault operation.

Three modes:
- admin-only: signed identity token plus an ``admin`` role grant.
- owner-or-admin: signed identity token whose user owns the target
  resource, or holds the ``admin`` grant.
- service: pre-shared secret compared in constant time.

Malformed tokens are rejected before any identity or role lookup.

Security Note:
    Never log bearer tokens or the shared secret.
"""
import re
import logging
from dataclasses import dataclass
from typing import Optional

import jwt

from .audit import AuditLog
from .conf import ADMIN_ROLE, VaultSettings
from .directory import AbstractDirectory
from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
)

logger = logging.getLogger("credential_vault.gate")

_SEGMENT = re.compile(r"^[A-Za-z0-9_\-]+={0,2}$")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    user_id: Optional[str]
    is_admin: bool = False
    is_service: bool = False

    @property
    def actor(self) -> str:
        if self.is_service:
            return "service"
        return self.user_id or "anonymous"


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the credential from an ``Authorization: Bearer ...`` header.

    Raises:
        AuthenticationError: If the header is missing or not a Bearer value.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing or invalid Authorization header")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthenticationError("Missing or invalid Authorization header")
    return token


def is_well_formed_token(token: str) -> bool:
    """Cheap structural check: three non-empty base64url segments."""
    parts = token.split(".")
    if len(parts) != 3:
        return False
    return all(_SEGMENT.match(part) for part in parts)


def _fold_compare(provided: bytes, expected: bytes) -> tuple[int, int]:
    """XOR-fold ``provided`` against ``expected``.

    Always iterates ``len(expected)`` times; a length mismatch is folded into
    the result instead of returning early.

    Returns:
        (mismatch, steps): mismatch is 0 only for equal inputs.
    """
    length = len(expected)
    padded = provided[:length].ljust(length, b"\x00")
    mismatch = int(len(provided) != length)
    steps = 0
    for i in range(length):
        mismatch |= padded[i] ^ expected[i]
        steps += 1
    return mismatch, steps


def constant_time_equals(provided: str, expected: str) -> bool:
    """Compare a caller-supplied secret against the configured one."""
    mismatch, _ = _fold_compare(
        provided.encode("utf-8"), expected.encode("utf-8"),
    )
    return mismatch == 0


class TokenVerifier:
    """Resolves a signed identity token (JWT) to a user id."""

    def __init__(
        self,
        secret: Optional[str],
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
    ):
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience
        self._issuer = issuer

    @classmethod
    def from_settings(cls, settings: VaultSettings) -> "TokenVerifier":
        return cls(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )

    async def resolve(self, token: str) -> str:
        """Verify ``token`` and return its subject.

        Raises:
            ConfigurationError: If no verification secret is configured.
            AuthenticationError: If the token is invalid or expired.
        """
        if not self._secret:
            raise ConfigurationError("VAULT_JWT_SECRET is not configured")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as err:
            raise AuthenticationError("Token expired") from err
        except jwt.InvalidTokenError as err:
            logger.warning("Identity token rejected: %s", type(err).__name__)
            raise AuthenticationError("Invalid or expired token") from err
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("Invalid or expired token")
        return subject


class AccessGate:
    """Authentication and authorization in front of the vault."""

    def __init__(
        self,
        verifier: TokenVerifier,
        directory: AbstractDirectory,
        service_secret: Optional[str] = None,
        audit: Optional[AuditLog] = None,
    ):
        self._verifier = verifier
        self._directory = directory
        self._service_secret = service_secret
        self._audit = audit or AuditLog()

    async def _deny(self, actor: str, target: str, reason: str) -> None:
        logger.warning("Access denied actor=%s target=%s: %s", actor, target, reason)
        await self._audit.emit(
            actor=actor, action="access.denied", target=target,
            status="denied", details={"reason": reason},
        )

    async def identify(self, authorization: Optional[str]) -> Principal:
        """Validate the identity token; no role lookup yet.

        Raises:
            AuthenticationError: Missing, malformed, invalid or expired token.
        """
        token = bearer_token(authorization)
        if not is_well_formed_token(token):
            raise AuthenticationError("Malformed identity token")
        user_id = await self._verifier.resolve(token)
        return Principal(user_id=user_id)

    async def require_admin(self, authorization: Optional[str]) -> Principal:
        """Admin-only mode.

        Raises:
            AuthenticationError: See ``identify``.
            AuthorizationError: The user holds no admin grant.
        """
        principal = await self.identify(authorization)
        if not await self._directory.has_role(principal.user_id, ADMIN_ROLE):
            await self._deny(principal.actor, "admin", "admin access required")
            raise AuthorizationError("Admin access required")
        return Principal(user_id=principal.user_id, is_admin=True)

    async def authorize_owner(
        self,
        principal: Principal,
        owner_ref: str,
        allow_admin: bool = True,
    ) -> Principal:
        """Allow the owner of ``owner_ref`` (and, optionally, admins).

        Raises:
            NotFoundError: ``owner_ref`` does not resolve to a resource.
            AuthorizationError: Caller neither owns it nor is admin.
        """
        owner = await self._directory.owner_of(owner_ref)
        if owner is None:
            raise NotFoundError(
                "Owning resource not found", {"owner_ref": owner_ref},
            )
        if owner == principal.user_id:
            return principal
        if allow_admin and (
            principal.is_admin
            or await self._directory.has_role(principal.user_id, ADMIN_ROLE)
        ):
            return Principal(user_id=principal.user_id, is_admin=True)
        await self._deny(principal.actor, f"owner:{owner_ref}", "not the owner")
        raise AuthorizationError(
            "You do not have permission to access credentials of this resource"
        )

    async def require_owner(
        self, authorization: Optional[str], owner_ref: str,
    ) -> Principal:
        """Only the owner of ``owner_ref``."""
        principal = await self.identify(authorization)
        return await self.authorize_owner(principal, owner_ref, allow_admin=False)

    async def require_owner_or_admin(
        self, authorization: Optional[str], owner_ref: str,
    ) -> Principal:
        principal = await self.identify(authorization)
        return await self.authorize_owner(principal, owner_ref)

    async def require_service(self, authorization: Optional[str]) -> Principal:
        """Service/cron mode: shared secret in a Bearer header.

        Raises:
            ConfigurationError: No shared secret configured.
            AuthenticationError: Missing header.
            AuthorizationError: Secret does not match.
        """
        if not self._service_secret:
            raise ConfigurationError("VAULT_SERVICE_SECRET is not configured")
        provided = bearer_token(authorization)
        if not constant_time_equals(provided, self._service_secret):
            await self._deny("service", "service", "invalid shared secret")
            raise AuthorizationError("Invalid service secret")
        return Principal(user_id=None, is_service=True)
