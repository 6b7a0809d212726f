"""
CredentialVault — the public API of the credential vault.

Every operation follows the same path: AccessGate -> RateLimiter ->
operation (CredentialStore and/or RotationCoordinator, which in turn use
KeyProvider and CredentialEncryptor) -> audit entry.

- ``submit()`` — owner encrypts and stores (or supersedes) a credential
- ``read()`` — admin decrypts credentials by id or by owner
- ``read_owned()`` — owner or admin decrypts the credentials of a resource
- ``runtime()`` — service caller resolves active credentials of a resource
- ``list_credentials()`` — owner or admin lists credential metadata
- ``revoke()`` — owner or admin marks a credential revoked
- ``rotate()`` — admin re-encrypts a table under the next key

Security Note:
    Never log plaintext or ciphertext values. Only log record ids, kinds,
    owner refs and key versions.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Optional

from ..audit import AuditLog
from ..conf import (
    LIST_ACTION,
    READ_ACTION,
    REVOKE_ACTION,
    ROTATE_ACTION,
    RUNTIME_ACTION,
    SENSITIVE_RESPONSE_WARNING,
    SUBMIT_ACTION,
)
from ..data import SecretFields
from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    CryptoIntegrityError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    VaultError,
)
from ..gate import AccessGate, Principal
from ..models import (
    CredentialRecord,
    CredentialStatus,
    OwnedCredentialRequest,
    ReadCredentialRequest,
    RevokeCredentialRequest,
    RotateRequest,
    RotationResult,
    SubmitCredentialRequest,
    SubmitCredentialResponse,
)
from ..ratelimit import RateLimiter
from .config import KeyProvider
from .crypto import CredentialEncryptor
from .key_rotation import RotationCoordinator
from .store import AbstractStore

logger = logging.getLogger("credential_vault.vault")


class CredentialVault:
    """Encrypted credential storage guarded by access control.

    All collaborators are passed in; the vault keeps no state between
    calls beyond these handles.
    """

    def __init__(
        self,
        store: AbstractStore,
        keys: KeyProvider,
        gate: AccessGate,
        limiter: Optional[RateLimiter] = None,
        audit: Optional[AuditLog] = None,
        encryptor: Optional[CredentialEncryptor] = None,
    ):
        self._store = store
        self._keys = keys
        self._gate = gate
        self._limiter = limiter or RateLimiter()
        self._audit = audit or AuditLog()
        self._encryptor = encryptor or CredentialEncryptor()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _privileged(
        self,
        action: str,
        principal: Principal,
        target: str,
        details: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Audit the wrapped block as ok or error; never swallows errors."""
        extra: dict[str, Any] = dict(details or {})
        try:
            yield extra
        except Exception as err:
            extra["error"] = type(err).__name__
            await self._audit.emit(
                actor=principal.actor, action=action, target=target,
                status="error", details=extra,
            )
            raise
        await self._audit.emit(
            actor=principal.actor, action=action, target=target,
            status="ok", details=extra,
        )

    async def _refused(
        self, action: str, actor: str, target: str, err: VaultError,
    ) -> None:
        await self._audit.emit(
            actor=actor, action=action, target=target, status="denied",
            details={"reason": type(err).__name__, "status": err.status},
        )

    async def _authenticate(
        self, action: str, target: str, check: Awaitable[Principal],
    ) -> Principal:
        """Await a gate check; unauthenticated callers are audited too."""
        try:
            return await check
        except AuthenticationError as err:
            await self._refused(action, "anonymous", target, err)
            raise

    async def _admit(
        self,
        action: str,
        limit: str,
        principal: Principal,
        target: str,
        ip: Optional[str],
    ) -> None:
        """Rate limit ``principal``; a rejection is audited before raising."""
        try:
            await self._limiter.enforce(limit, principal.user_id, ip)
        except RateLimitError as err:
            await self._refused(action, principal.actor, target, err)
            raise

    def _seal(self, fields: SecretFields) -> dict[str, str]:
        current = self._keys.current()
        return self._encryptor.encrypt(fields.encode(), current.key).to_columns()

    def _open(self, record: CredentialRecord) -> SecretFields:
        """Decrypt one record with the key of its version.

        Raises:
            ConfigurationError: No key is configured for the record's version.
            CryptoIntegrityError: Tag mismatch or undecodable payload.
        """
        epoch = self._keys.key_for(record.key_version)
        if epoch is None:
            raise ConfigurationError(
                f"No key configured for key_version={record.key_version}",
                {"credential_id": record.id},
            )
        plaintext = self._encryptor.decrypt_payload(record.payload(), epoch.key)
        try:
            return SecretFields.decode(plaintext)
        except ValueError as err:
            raise CryptoIntegrityError(
                "Decrypted payload is malformed", {"credential_id": record.id},
            ) from err

    def _reveal(self, records: list[CredentialRecord]) -> list[dict[str, Any]]:
        """Decrypt records; a failing record is reported, not raised."""
        revealed = []
        for record in records:
            item = record.summary()
            try:
                item["secret_fields"] = self._open(record).reveal()
            except (CryptoIntegrityError, ConfigurationError) as err:
                logger.error(
                    "Failed to decrypt credential id=%s: %s",
                    record.id, type(err).__name__,
                )
                item["error"] = "decryption failed"
            revealed.append(item)
        return revealed

    def _disclosure(
        self, principal: Principal, records: list[CredentialRecord],
    ) -> dict[str, Any]:
        return {
            "credentials": self._reveal(records),
            "accessed_by": principal.actor,
            "accessed_at": datetime.now(timezone.utc).isoformat(),
            "warning": SENSITIVE_RESPONSE_WARNING,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        authorization: Optional[str],
        request: SubmitCredentialRequest,
        ip: Optional[str] = None,
    ) -> dict[str, Any]:
        """Encrypt and store a credential for ``request.owner_ref``.

        Re-submission for the same (owner_ref, credential_kind) supersedes
        the active record. The plaintext is never echoed back.
        """
        target = f"owner:{request.owner_ref}/{request.credential_kind}"
        principal = await self._authenticate(
            "credential.write", target,
            self._gate.require_owner(authorization, request.owner_ref),
        )
        await self._admit("credential.write", SUBMIT_ACTION, principal, target, ip)
        async with self._privileged("credential.write", principal, target) as audit:
            fields = SecretFields(request.secret_fields)
            record = await self._store.upsert_credential(
                owner_ref=request.owner_ref,
                credential_kind=request.credential_kind,
                service_name=request.service_name,
                columns=self._seal(fields),
                key_version=self._keys.current().version,
                created_by=principal.user_id,
                metadata=request.metadata or {},
            )
            audit["credential_id"] = record.id
        logger.info(
            "Credential stored: id=%s owner=%s kind=%s",
            record.id, record.owner_ref, record.credential_kind,
        )
        return SubmitCredentialResponse(
            id=record.id,
            credential_kind=record.credential_kind,
            service_name=record.service_name,
            status=record.status,
            created_at=record.created_at,
        ).model_dump(mode="json")

    async def read(
        self,
        authorization: Optional[str],
        request: ReadCredentialRequest,
        ip: Optional[str] = None,
    ) -> dict[str, Any]:
        """Admin-only decryption by credential id or by owner."""
        if request.credential_id:
            target = f"credential:{request.credential_id}"
        else:
            target = f"owner:{request.owner_ref}"
        principal = await self._authenticate(
            "credential.read", target, self._gate.require_admin(authorization),
        )
        await self._admit("credential.read", READ_ACTION, principal, target, ip)
        async with self._privileged("credential.read", principal, target) as audit:
            if request.credential_id:
                record = await self._store.get_credential(request.credential_id)
                records = [record] if record else []
            else:
                records = await self._store.find_credentials(
                    request.owner_ref, request.credential_kind, active_only=False,
                )
            if not records:
                raise NotFoundError("No credentials found")
            response = self._disclosure(principal, records)
            await self._store.mark_verified([r.id for r in records])
            audit["credential_ids"] = [r.id for r in records]
        return response

    async def read_owned(
        self,
        authorization: Optional[str],
        request: OwnedCredentialRequest,
        ip: Optional[str] = None,
    ) -> dict[str, Any]:
        """Owner-or-admin decryption of the active credentials of a resource."""
        target = f"owner:{request.owner_ref}"
        principal = await self._authenticate(
            "credential.read", target,
            self._gate.require_owner_or_admin(authorization, request.owner_ref),
        )
        await self._admit("credential.read", READ_ACTION, principal, target, ip)
        async with self._privileged("credential.read", principal, target) as audit:
            records = await self._store.find_credentials(
                request.owner_ref, request.credential_kind,
            )
            if not records:
                raise NotFoundError("No credentials found")
            audit["credential_ids"] = [r.id for r in records]
            return self._disclosure(principal, records)

    async def runtime(
        self,
        authorization: Optional[str],
        owner_ref: Optional[str],
        credential_kind: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> dict[str, Any]:
        """Service-to-service resolution of active credentials."""
        target = f"owner:{owner_ref}"
        principal = await self._authenticate(
            "credential.read", target, self._gate.require_service(authorization),
        )
        if not owner_ref:
            raise ValidationError("owner_ref is required")
        await self._admit("credential.read", RUNTIME_ACTION, principal, target, ip)
        async with self._privileged("credential.read", principal, target) as audit:
            records = await self._store.find_credentials(owner_ref, credential_kind)
            if not records:
                raise NotFoundError("No credentials found")
            audit["credential_ids"] = [r.id for r in records]
            return self._disclosure(principal, records)

    async def list_credentials(
        self,
        authorization: Optional[str],
        owner_ref: Optional[str],
        ip: Optional[str] = None,
    ) -> dict[str, Any]:
        """Metadata of every credential (active and revoked) of a resource."""
        if not owner_ref:
            raise ValidationError("owner_ref is required")
        target = f"owner:{owner_ref}"
        principal = await self._authenticate(
            "credential.list", target,
            self._gate.require_owner_or_admin(authorization, owner_ref),
        )
        await self._admit("credential.list", LIST_ACTION, principal, target, ip)
        records = await self._store.find_credentials(owner_ref, active_only=False)
        return {"credentials": [r.summary() for r in records]}

    async def revoke(
        self,
        authorization: Optional[str],
        request: RevokeCredentialRequest,
        ip: Optional[str] = None,
    ) -> dict[str, Any]:
        """Mark a credential revoked. Records are never physically deleted."""
        target = f"credential:{request.credential_id}"
        principal = await self._authenticate(
            "credential.revoke", target, self._gate.identify(authorization),
        )
        record = await self._store.get_credential(request.credential_id)
        if record is None:
            raise NotFoundError("Credential not found")
        principal = await self._gate.authorize_owner(principal, record.owner_ref)
        await self._admit("credential.revoke", REVOKE_ACTION, principal, target, ip)
        async with self._privileged("credential.revoke", principal, target):
            if record.status == CredentialStatus.REVOKED:
                raise ValidationError("Credential is already revoked")
            revoked = await self._store.revoke_credential(
                record.id,
                revoked_by=principal.user_id,
                reason=request.reason or "User requested revocation",
            )
            if revoked is None:
                raise ConflictError("Credential changed while revoking")
        logger.info("Credential %s revoked by %s", record.id, principal.actor)
        return {
            "id": revoked.id,
            "service_name": revoked.service_name,
            "status": revoked.status.value,
            "revoked_at": revoked.revoked_at.isoformat() if revoked.revoked_at else None,
            "revoked_by": revoked.revoked_by,
        }

    async def rotate(
        self,
        authorization: Optional[str],
        request: RotateRequest,
        ip: Optional[str] = None,
    ) -> dict[str, Any]:
        """Admin-only re-encryption of one table (see RotationCoordinator)."""
        target = f"table:{request.table.value}/v{request.old_key_version}"
        principal = await self._authenticate(
            "credential.rotate", target, self._gate.require_admin(authorization),
        )
        await self._admit("credential.rotate", ROTATE_ACTION, principal, target, ip)
        coordinator = RotationCoordinator(self._store, self._keys, self._encryptor)
        async with self._privileged(
            "credential.rotate", principal, target, {"dry_run": request.dry_run},
        ) as audit:
            result: RotationResult = await coordinator.rotate(
                request.table, request.old_key_version, dry_run=request.dry_run,
            )
            audit["rotated"] = result.rotated
            audit["errors"] = len(result.errors)
        return result.model_dump(mode="json")
