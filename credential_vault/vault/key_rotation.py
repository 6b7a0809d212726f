"""
Vault Key Rotation — Re-encryption of credential rows under the next key.

Walks every row of one table whose ``key_version`` equals ``old_key_version``
exactly, decrypts it with ``KeyProvider.current()`` and re-encrypts it with
``KeyProvider.next()``. Each row is written in its own compare-and-set
update, so the operation is idempotent and resumable: rows already rotated
no longer match the selection.

A failing row is recorded in ``errors`` and the batch carries on. A dry run
performs the same selection plus a decrypt check per row and writes nothing.

Security Note:
    Plaintext exists in memory only during re-encryption of each row.
    Never log plaintext or ciphertext values.
"""
import logging
from typing import Any, Optional

from ..exceptions import (
    ConfigurationError,
    ConflictError,
    CryptoIntegrityError,
    VaultError,
)
from ..models import RotationError, RotationResult, RotationTable
from .config import KeyEpoch, KeyProvider
from .crypto import CredentialEncryptor, EncryptedPayload
from .store import ROTATION_TABLES, AbstractStore, TableSpec

logger = logging.getLogger("credential_vault.vault")


class RotationCoordinator:
    """Batch re-encryption of one table from ``old_key_version`` to the next.

    States: IDLE -> PREVIEW -> IDLE for a dry run, IDLE -> ROTATING ->
    COMPLETE otherwise. The coordinator keeps no state between calls.
    """

    def __init__(
        self,
        store: AbstractStore,
        keys: KeyProvider,
        encryptor: Optional[CredentialEncryptor] = None,
    ):
        self._store = store
        self._keys = keys
        self._encryptor = encryptor or CredentialEncryptor()

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _payloads(
        self, table: TableSpec, row: dict[str, Any],
    ) -> list[tuple[Any, EncryptedPayload]]:
        """Encrypted groups present on ``row``."""
        found = []
        for group in table.groups:
            ciphertext = row.get(group.ciphertext)
            if ciphertext is None:
                continue
            iv, tag = row.get(group.iv), row.get(group.tag)
            if iv is None or tag is None:
                raise CryptoIntegrityError(
                    f"{group.label} ciphertext present without iv/tag"
                )
            found.append(
                (group, EncryptedPayload.from_columns(ciphertext, iv, tag))
            )
        return found

    def _check_row(
        self, table: TableSpec, row: dict[str, Any], source: KeyEpoch,
    ) -> None:
        """Decrypt every group of ``row`` and discard the plaintext."""
        for _, payload in self._payloads(table, row):
            self._encryptor.decrypt_payload(payload, source.key)

    def _reencrypt_row(
        self,
        table: TableSpec,
        row: dict[str, Any],
        source: KeyEpoch,
        target: KeyEpoch,
    ) -> dict[str, str]:
        """Re-encrypt all groups of ``row``; returns the new column values."""
        columns: dict[str, str] = {}
        for group, payload in self._payloads(table, row):
            plaintext = self._encryptor.decrypt_payload(payload, source.key)
            sealed = self._encryptor.encrypt(plaintext, target.key).to_columns()
            columns[group.ciphertext] = sealed["ciphertext"]
            columns[group.iv] = sealed["iv"]
            columns[group.tag] = sealed["tag"]
        return columns

    @staticmethod
    def _failure(row_id: str, err: Exception) -> RotationError:
        if isinstance(err, CryptoIntegrityError):
            message = "decryption failed"
        elif isinstance(err, VaultError):
            message = err.message
        else:
            message = f"{type(err).__name__}: {err}"
        return RotationError(row_id=row_id, message=message)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def rotate(
        self,
        table: RotationTable,
        old_key_version: int,
        dry_run: bool = True,
    ) -> RotationResult:
        """Rotate (or preview rotating) ``table`` off ``old_key_version``.

        Args:
            table: Credential-bearing table to process.
            old_key_version: Exact key_version of the rows to rotate.
            dry_run: When True, only select and check decryptability.

        Returns:
            RotationResult with the count of rotated (or rotatable) rows and
            one entry per failed row.

        Raises:
            ConfigurationError: On a real rotation, if NEXT_KEY is missing
                or ``old_key_version`` is not the CURRENT_KEY version.
            ConflictError: If another rotation of the same
                (table, old_key_version) is in progress.
        """
        table = RotationTable(table)
        spec = ROTATION_TABLES[table]
        new_key_version = old_key_version + 1
        source = self._keys.current()
        if source.version != old_key_version:
            if not dry_run:
                raise ConfigurationError(
                    f"Cannot rotate {spec.name} from key_version="
                    f"{old_key_version}: CURRENT_KEY is v{source.version}",
                    {"table": spec.name, "key_version": old_key_version},
                )
            logger.warning(
                "Previewing %s at key_version=%d while CURRENT_KEY is v%d",
                spec.name, old_key_version, source.version,
            )

        if dry_run:
            result = await self._preview(spec, table, old_key_version, source)
        else:
            target = self._keys.require_next()
            logger.info(
                "Starting key rotation of %s from v%d (fp=%s) to v%d (fp=%s)",
                spec.name, old_key_version, source.fingerprint,
                new_key_version, target.fingerprint,
            )
            async with self._store.rotation_lock(spec, old_key_version):
                result = await self._rotate(
                    spec, table, old_key_version, source, target,
                )

        logger.info(
            "Key rotation %s table=%s dry_run=%s rotated=%d errors=%d",
            "preview" if dry_run else "complete",
            spec.name, dry_run, result.rotated, len(result.errors),
        )
        return result

    async def _preview(
        self,
        spec: TableSpec,
        table: RotationTable,
        old_key_version: int,
        source: KeyEpoch,
    ) -> RotationResult:
        rows = await self._store.select_for_rotation(spec, old_key_version)
        logger.info(
            "Found %d %s row(s) on key_version=%d",
            len(rows), spec.name, old_key_version,
        )
        result = RotationResult(
            new_key_version=old_key_version + 1, dry_run=True, table=table,
        )
        for row in rows:
            row_id = str(row[spec.id_column])
            try:
                self._check_row(spec, row, source)
                result.rotated += 1
            except Exception as err:
                logger.error(
                    "Dry run: row id=%s of %s would not decrypt: %s",
                    row_id, spec.name, type(err).__name__,
                )
                result.errors.append(self._failure(row_id, err))
        result.message = (
            f"DRY_RUN: {result.rotated} records would be rotated from "
            f"key_version={old_key_version} to "
            f"key_version={result.new_key_version}"
        )
        return result

    async def _rotate(
        self,
        spec: TableSpec,
        table: RotationTable,
        old_key_version: int,
        source: KeyEpoch,
        target: KeyEpoch,
    ) -> RotationResult:
        rows = await self._store.select_for_rotation(spec, old_key_version)
        logger.info(
            "Found %d %s row(s) on key_version=%d",
            len(rows), spec.name, old_key_version,
        )
        result = RotationResult(
            new_key_version=old_key_version + 1, dry_run=False, table=table,
        )
        for row in rows:
            row_id = str(row[spec.id_column])
            try:
                columns = self._reencrypt_row(spec, row, source, target)
                written = await self._store.write_rotation(
                    spec, row_id, columns,
                    old_key_version, result.new_key_version,
                    expected={
                        group.ciphertext: row.get(group.ciphertext)
                        for group in spec.groups
                    },
                )
                if not written:
                    raise ConflictError(
                        "row changed during rotation", {"row_id": row_id},
                    )
                result.rotated += 1
            except Exception as err:
                logger.error(
                    "Error rotating row id=%s of %s: %s",
                    row_id, spec.name, type(err).__name__,
                )
                result.errors.append(self._failure(row_id, err))
        result.message = (
            f"ROTATION_COMPLETE: {result.rotated} records re-encrypted. "
            f"{len(result.errors)} errors."
        )
        return result
