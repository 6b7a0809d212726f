"""
Credential Store — persistence of encrypted credential records.

Two backends share one contract:
- ``PostgresStore``: asyncpg-compatible pool, parametrized SQL.
- ``MemoryStore``: in-process dictionaries, for development and tests.

Every write is a single-row statement. ``ciphertext``, ``iv``, ``tag`` and
``key_version`` always travel in the same statement; no multi-row
transaction is assumed.

Security Note:
    Stores only ever see base64 ciphertext. Never log column values.
"""
import uuid
import hashlib
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import orjson

from ..exceptions import ConflictError
from ..models import CredentialRecord, CredentialStatus, RotationTable

logger = logging.getLogger("credential_vault.vault")


# ---------------------------------------------------------------------------
# Table layout
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncryptedColumns:
    """Column names of one ``(ciphertext, iv, tag)`` group."""

    label: str
    ciphertext: str
    iv: str
    tag: str

    @property
    def names(self) -> tuple[str, str, str]:
        return (self.ciphertext, self.iv, self.tag)


@dataclass(frozen=True)
class TableSpec:
    """A credential-bearing table: its encrypted groups share one key_version."""

    name: str
    groups: tuple[EncryptedColumns, ...]
    id_column: str = "id"
    version_column: str = "key_version"

    @property
    def encrypted_columns(self) -> list[str]:
        return [name for group in self.groups for name in group.names]


CREDENTIALS_TABLE = TableSpec(
    name=RotationTable.ACTIVATION_CREDENTIALS.value,
    groups=(
        EncryptedColumns(
            "credentials", "encrypted_data", "encryption_iv", "encryption_tag",
        ),
    ),
)

ROTATION_TABLES: dict[RotationTable, TableSpec] = {
    RotationTable.ACTIVATION_CREDENTIALS: CREDENTIALS_TABLE,
    RotationTable.INTEGRATION_CONNECTIONS: TableSpec(
        name=RotationTable.INTEGRATION_CONNECTIONS.value,
        groups=(
            EncryptedColumns(
                "payload", "encrypted_payload", "encryption_iv", "encryption_tag",
            ),
        ),
    ),
    RotationTable.VPS_INSTANCES: TableSpec(
        name=RotationTable.VPS_INSTANCES.value,
        groups=(
            EncryptedColumns(
                "ssh",
                "encrypted_ssh_private_key",
                "ssh_encryption_iv",
                "ssh_encryption_tag",
            ),
            EncryptedColumns(
                "n8n",
                "encrypted_n8n_credentials",
                "n8n_encryption_iv",
                "n8n_encryption_tag",
            ),
        ),
    ),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _record_from_row(row: Any) -> CredentialRecord:
    """Map an ``activation_credentials`` row (asyncpg Record or dict)."""
    metadata = row["metadata"]
    if isinstance(metadata, (str, bytes)):
        metadata = orjson.loads(metadata)
    return CredentialRecord(
        id=str(row["id"]),
        owner_ref=row["owner_ref"],
        credential_kind=row["credential_kind"],
        service_name=row["service_name"],
        ciphertext=row["encrypted_data"],
        iv=row["encryption_iv"],
        auth_tag=row["encryption_tag"],
        key_version=row["key_version"],
        status=row["status"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_verified_at=row["last_verified_at"],
        revoked_at=row["revoked_at"],
        revoked_by=row["revoked_by"],
        revocation_reason=row["revocation_reason"],
        metadata=metadata or {},
    )


class AbstractStore(ABC):
    """Persistence contract used by the vault and the rotation coordinator."""

    @abstractmethod
    async def upsert_credential(
        self,
        *,
        owner_ref: str,
        credential_kind: str,
        service_name: str,
        columns: dict[str, str],
        key_version: int,
        created_by: Optional[str],
        metadata: dict[str, Any],
    ) -> CredentialRecord:
        """Insert, or supersede the active record for (owner_ref, kind).

        ``columns`` holds base64 ``ciphertext``, ``iv`` and ``tag``.
        """

    @abstractmethod
    async def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    async def find_credentials(
        self,
        owner_ref: str,
        credential_kind: Optional[str] = None,
        *,
        active_only: bool = True,
    ) -> list[CredentialRecord]:
        ...

    @abstractmethod
    async def revoke_credential(
        self,
        credential_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
    ) -> Optional[CredentialRecord]:
        """Mark an active record revoked. Returns None if it was not active."""

    @abstractmethod
    async def mark_verified(self, credential_ids: list[str]) -> None:
        """Stamp ``last_verified_at`` on records an admin just decrypted."""

    @abstractmethod
    async def select_for_rotation(
        self, table: TableSpec, key_version: int,
    ) -> list[dict[str, Any]]:
        """Rows of ``table`` whose key_version equals ``key_version`` exactly."""

    @abstractmethod
    async def write_rotation(
        self,
        table: TableSpec,
        row_id: str,
        columns: dict[str, str],
        old_version: int,
        new_version: int,
        expected: Optional[dict[str, Optional[str]]] = None,
    ) -> bool:
        """Write re-encrypted columns and the new version in one update.

        Compare-and-set on ``key_version == old_version`` and on every
        column in ``expected`` (the ciphertexts as selected). Returns False
        if the row no longer matched.
        """

    @abstractmethod
    def rotation_lock(self, table: TableSpec, key_version: int):
        """Async context manager held for the length of a rotation batch.

        Raises:
            ConflictError: If another rotation holds the same lock.
        """


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryStore(AbstractStore):
    """Dictionary-backed store with the same semantics as PostgresStore."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {
            spec.name: {} for spec in ROTATION_TABLES.values()
        }
        self._locks: set[tuple[str, int]] = set()

    def table(self, name: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(name, {})

    def insert_row(self, table: str, row: dict[str, Any]) -> str:
        """Insert a raw row (used to seed non-credential tables)."""
        row = dict(row)
        row_id = str(row.setdefault("id", uuid.uuid4().hex))
        row["id"] = row_id
        self.table(table)[row_id] = row
        return row_id

    def _credentials(self) -> dict[str, dict[str, Any]]:
        return self.table(CREDENTIALS_TABLE.name)

    async def upsert_credential(
        self,
        *,
        owner_ref: str,
        credential_kind: str,
        service_name: str,
        columns: dict[str, str],
        key_version: int,
        created_by: Optional[str],
        metadata: dict[str, Any],
    ) -> CredentialRecord:
        now = _utcnow()
        values = {
            "service_name": service_name,
            "encrypted_data": columns["ciphertext"],
            "encryption_iv": columns["iv"],
            "encryption_tag": columns["tag"],
            "key_version": key_version,
            "created_by": created_by,
            "metadata": dict(metadata),
            "updated_at": now,
        }
        for row in self._credentials().values():
            if (
                row["owner_ref"] == owner_ref
                and row["credential_kind"] == credential_kind
                and row["status"] == CredentialStatus.ACTIVE.value
            ):
                row.update(values)
                return _record_from_row(row)
        row = {
            "id": str(uuid.uuid4()),
            "owner_ref": owner_ref,
            "credential_kind": credential_kind,
            "status": CredentialStatus.ACTIVE.value,
            "created_at": now,
            "last_verified_at": None,
            "revoked_at": None,
            "revoked_by": None,
            "revocation_reason": None,
            **values,
        }
        self._credentials()[row["id"]] = row
        return _record_from_row(row)

    async def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        row = self._credentials().get(credential_id)
        return _record_from_row(row) if row else None

    async def find_credentials(
        self,
        owner_ref: str,
        credential_kind: Optional[str] = None,
        *,
        active_only: bool = True,
    ) -> list[CredentialRecord]:
        rows = [
            row for row in self._credentials().values()
            if row["owner_ref"] == owner_ref
            and (credential_kind is None or row["credential_kind"] == credential_kind)
            and (not active_only or row["status"] == CredentialStatus.ACTIVE.value)
        ]
        rows.sort(key=lambda r: (r["credential_kind"], r["created_at"]))
        return [_record_from_row(row) for row in rows]

    async def revoke_credential(
        self,
        credential_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
    ) -> Optional[CredentialRecord]:
        row = self._credentials().get(credential_id)
        if not row or row["status"] != CredentialStatus.ACTIVE.value:
            return None
        now = _utcnow()
        row.update({
            "status": CredentialStatus.REVOKED.value,
            "revoked_at": now,
            "revoked_by": revoked_by,
            "revocation_reason": reason,
            "updated_at": now,
        })
        return _record_from_row(row)

    async def mark_verified(self, credential_ids: list[str]) -> None:
        now = _utcnow()
        for credential_id in credential_ids:
            row = self._credentials().get(credential_id)
            if row:
                row["last_verified_at"] = now

    async def select_for_rotation(
        self, table: TableSpec, key_version: int,
    ) -> list[dict[str, Any]]:
        rows = []
        for row in self.table(table.name).values():
            if row.get(table.version_column) != key_version:
                continue
            if all(row.get(g.ciphertext) is None for g in table.groups):
                continue
            rows.append(dict(row))
        rows.sort(key=lambda r: str(r[table.id_column]))
        return rows

    async def write_rotation(
        self,
        table: TableSpec,
        row_id: str,
        columns: dict[str, str],
        old_version: int,
        new_version: int,
        expected: Optional[dict[str, Optional[str]]] = None,
    ) -> bool:
        row = self.table(table.name).get(row_id)
        if row is None or row.get(table.version_column) != old_version:
            return False
        if any(row.get(name) != value for name, value in (expected or {}).items()):
            return False
        row.update(columns)
        row[table.version_column] = new_version
        row["updated_at"] = _utcnow()
        return True

    @asynccontextmanager
    async def rotation_lock(
        self, table: TableSpec, key_version: int,
    ) -> AsyncIterator[None]:
        lock = (table.name, key_version)
        if lock in self._locks:
            raise ConflictError(
                f"Rotation already in progress for {table.name} "
                f"key_version={key_version}",
                {"table": table.name, "key_version": key_version},
            )
        self._locks.add(lock)
        try:
            yield
        finally:
            self._locks.discard(lock)


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

_RECORD_COLUMNS = """
id::text AS id, owner_ref, credential_kind, service_name,
encrypted_data, encryption_iv, encryption_tag, key_version, status,
created_by, created_at, updated_at, last_verified_at,
revoked_at, revoked_by, revocation_reason, metadata
"""

_UPSERT_CREDENTIAL = f"""
INSERT INTO activation_credentials
    (owner_ref, credential_kind, service_name, encrypted_data,
     encryption_iv, encryption_tag, key_version, status, created_by, metadata)
VALUES ($1, $2, $3, $4, $5, $6, $7, 'active', $8, $9::jsonb)
ON CONFLICT (owner_ref, credential_kind) WHERE status = 'active'
DO UPDATE SET service_name = EXCLUDED.service_name,
             encrypted_data = EXCLUDED.encrypted_data,
             encryption_iv = EXCLUDED.encryption_iv,
             encryption_tag = EXCLUDED.encryption_tag,
             key_version = EXCLUDED.key_version,
             created_by = EXCLUDED.created_by,
             metadata = EXCLUDED.metadata,
             updated_at = NOW()
RETURNING {_RECORD_COLUMNS}
"""

_SELECT_BY_ID = f"""
SELECT {_RECORD_COLUMNS}
FROM activation_credentials
WHERE id::text = $1
"""

_SELECT_BY_OWNER = f"""
SELECT {_RECORD_COLUMNS}
FROM activation_credentials
WHERE owner_ref = $1
  AND ($2::text IS NULL OR credential_kind = $2)
  AND (NOT $3::boolean OR status = 'active')
ORDER BY credential_kind, created_at
"""

_REVOKE_CREDENTIAL = f"""
UPDATE activation_credentials
SET status = 'revoked', revoked_at = NOW(), revoked_by = $2,
    revocation_reason = $3, updated_at = NOW()
WHERE id::text = $1 AND status = 'active'
RETURNING {_RECORD_COLUMNS}
"""

_MARK_VERIFIED = """
UPDATE activation_credentials
SET last_verified_at = NOW()
WHERE id::text = ANY($1::text[])
"""

_TRY_LOCK = "SELECT pg_try_advisory_lock($1)"
_UNLOCK = "SELECT pg_advisory_unlock($1)"


def _rotation_lock_id(table: str, key_version: int) -> int:
    """Stable signed 64-bit advisory lock id for (table, key_version)."""
    digest = hashlib.blake2b(
        f"credential-vault:rotate:{table}:{key_version}".encode("utf-8"),
        digest_size=8,
    ).digest()
    return int.from_bytes(digest, "big", signed=True)


def _select_rotation_sql(table: TableSpec) -> str:
    columns = ", ".join(table.encrypted_columns)
    present = " OR ".join(f"{g.ciphertext} IS NOT NULL" for g in table.groups)
    return (
        f"SELECT {table.id_column}::text AS {table.id_column}, "
        f"{table.version_column}, {columns}\n"
        f"FROM {table.name}\n"
        f"WHERE {table.version_column} = $1 AND ({present})\n"
        f"ORDER BY {table.id_column}"
    )


def _update_rotation_sql(
    table: TableSpec, names: list[str], guards: tuple[str, ...] = (),
) -> str:
    allowed = set(table.encrypted_columns)
    assignments = []
    for idx, name in enumerate(names, start=1):
        if name not in allowed:
            raise ValueError(f"{name} is not an encrypted column of {table.name}")
        assignments.append(f"{name} = ${idx}")
    n = len(names)
    assignments.append(f"{table.version_column} = ${n + 1}")
    assignments.append("updated_at = NOW()")
    conditions = [
        f"{table.id_column}::text = ${n + 2}",
        f"{table.version_column} = ${n + 3}",
    ]
    for idx, name in enumerate(guards, start=n + 4):
        if name not in allowed:
            raise ValueError(f"{name} is not an encrypted column of {table.name}")
        conditions.append(f"{name} IS NOT DISTINCT FROM ${idx}")
    return (
        f"UPDATE {table.name}\n"
        f"SET {', '.join(assignments)}\n"
        f"WHERE {' AND '.join(conditions)}"
    )


def _rowcount(status: str) -> int:
    """Parse asyncpg's command tag, e.g. ``"UPDATE 1"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class PostgresStore(AbstractStore):
    """Store backed by an asyncpg-compatible connection pool."""

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def upsert_credential(
        self,
        *,
        owner_ref: str,
        credential_kind: str,
        service_name: str,
        columns: dict[str, str],
        key_version: int,
        created_by: Optional[str],
        metadata: dict[str, Any],
    ) -> CredentialRecord:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _UPSERT_CREDENTIAL,
                owner_ref,
                credential_kind,
                service_name,
                columns["ciphertext"],
                columns["iv"],
                columns["tag"],
                key_version,
                created_by,
                orjson.dumps(metadata).decode("utf-8"),
            )
        return _record_from_row(row)

    async def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_BY_ID, credential_id)
        return _record_from_row(row) if row else None

    async def find_credentials(
        self,
        owner_ref: str,
        credential_kind: Optional[str] = None,
        *,
        active_only: bool = True,
    ) -> list[CredentialRecord]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                _SELECT_BY_OWNER, owner_ref, credential_kind, active_only,
            )
        return [_record_from_row(row) for row in rows]

    async def revoke_credential(
        self,
        credential_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
    ) -> Optional[CredentialRecord]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _REVOKE_CREDENTIAL, credential_id, revoked_by, reason,
            )
        return _record_from_row(row) if row else None

    async def mark_verified(self, credential_ids: list[str]) -> None:
        if not credential_ids:
            return
        async with self._db.acquire() as conn:
            await conn.execute(_MARK_VERIFIED, list(credential_ids))

    async def select_for_rotation(
        self, table: TableSpec, key_version: int,
    ) -> list[dict[str, Any]]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_select_rotation_sql(table), key_version)
        return [dict(row) for row in rows]

    async def write_rotation(
        self,
        table: TableSpec,
        row_id: str,
        columns: dict[str, str],
        old_version: int,
        new_version: int,
        expected: Optional[dict[str, Optional[str]]] = None,
    ) -> bool:
        names = list(columns)
        guards = tuple(expected or {})
        sql = _update_rotation_sql(table, names, guards)
        async with self._db.acquire() as conn:
            status = await conn.execute(
                sql,
                *[columns[name] for name in names],
                new_version,
                row_id,
                old_version,
                *[expected[name] for name in guards],
            )
        return _rowcount(status) == 1

    @asynccontextmanager
    async def rotation_lock(
        self, table: TableSpec, key_version: int,
    ) -> AsyncIterator[None]:
        lock_id = _rotation_lock_id(table.name, key_version)
        async with self._db.acquire() as conn:
            acquired = await conn.fetchval(_TRY_LOCK, lock_id)
            if not acquired:
                raise ConflictError(
                    f"Rotation already in progress for {table.name} "
                    f"key_version={key_version}",
                    {"table": table.name, "key_version": key_version},
                )
            try:
                yield
            finally:
                await conn.execute(_UNLOCK, lock_id)
