"""Tests for the SQL issued by the Postgres-backed store and directory."""
from datetime import datetime, timezone

import pytest

from credential_vault.directory import PostgresDirectory
from credential_vault.exceptions import ConflictError
from credential_vault.models import CredentialStatus, RotationTable
from credential_vault.vault.store import (
    CREDENTIALS_TABLE,
    ROTATION_TABLES,
    PostgresStore,
    _rotation_lock_id,
    _rowcount,
    _update_rotation_sql,
)

from .conftest import FakeConnection, FakePool

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def credential_row(**overrides):
    row = {
        "id": "5b1e0e1e-0000-4000-8000-000000000001",
        "owner_ref": "req-42",
        "credential_kind": "stripe",
        "service_name": "Stripe",
        "encrypted_data": "Y2lwaGVy",
        "encryption_iv": "AAAAAAAAAAAAAAAA",
        "encryption_tag": "AAAAAAAAAAAAAAAAAAAAAA==",
        "key_version": 1,
        "status": "active",
        "created_by": "user-alice",
        "created_at": NOW,
        "updated_at": NOW,
        "last_verified_at": None,
        "revoked_at": None,
        "revoked_by": None,
        "revocation_reason": None,
        "metadata": '{"source":"wizard"}',
    }
    row.update(overrides)
    return row


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def pg_store(conn):
    return PostgresStore(FakePool(conn))


class TestCredentialQueries:
    async def test_upsert(self, pg_store, conn):
        conn.fetchrow_result = credential_row()
        record = await pg_store.upsert_credential(
            owner_ref="req-42",
            credential_kind="stripe",
            service_name="Stripe",
            columns={"ciphertext": "Y2lwaGVy", "iv": "IV==", "tag": "TAG="},
            key_version=1,
            created_by="user-alice",
            metadata={"source": "wizard"},
        )
        (method, sql, args), = conn.calls
        assert method == "fetchrow"
        assert "ON CONFLICT (owner_ref, credential_kind) WHERE status = 'active'" in sql
        assert args == (
            "req-42", "stripe", "Stripe", "Y2lwaGVy", "IV==", "TAG=", 1,
            "user-alice", '{"source":"wizard"}',
        )
        assert record.metadata == {"source": "wizard"}
        assert record.status is CredentialStatus.ACTIVE

    async def test_get_missing(self, pg_store, conn):
        assert await pg_store.get_credential("nope") is None
        assert conn.calls[0][2] == ("nope",)

    async def test_find_by_owner(self, pg_store, conn):
        conn.fetch_result = [credential_row(), credential_row(id="x", status="revoked")]
        records = await pg_store.find_credentials("req-42", active_only=False)
        assert [r.status for r in records] == [
            CredentialStatus.ACTIVE, CredentialStatus.REVOKED,
        ]
        assert conn.calls[0][2] == ("req-42", None, False)

    async def test_revoke_only_active(self, pg_store, conn):
        assert await pg_store.revoke_credential(
            "id-1", revoked_by="user-alice", reason="leaked",
        ) is None
        method, sql, args = conn.calls[0]
        assert "status = 'active'" in sql
        assert args == ("id-1", "user-alice", "leaked")

    async def test_mark_verified(self, pg_store, conn):
        await pg_store.mark_verified([])
        assert conn.calls == []
        await pg_store.mark_verified(["a", "b"])
        assert conn.calls[0][2] == (["a", "b"],)


class TestRotationQueries:
    async def test_select_exact_version(self, pg_store, conn):
        spec = ROTATION_TABLES[RotationTable.VPS_INSTANCES]
        conn.fetch_result = [{"id": "vm-7", "key_version": 1}]
        rows = await pg_store.select_for_rotation(spec, 1)
        assert rows == [{"id": "vm-7", "key_version": 1}]
        method, sql, args = conn.calls[0]
        assert "FROM vps_instances" in sql
        assert "key_version = $1" in sql
        assert (
            "encrypted_ssh_private_key IS NOT NULL OR "
            "encrypted_n8n_credentials IS NOT NULL"
        ) in sql
        assert args == (1,)

    async def test_write_is_compare_and_set(self, pg_store, conn):
        columns = {
            "encrypted_data": "c", "encryption_iv": "i", "encryption_tag": "t",
        }
        assert await pg_store.write_rotation(CREDENTIALS_TABLE, "id-1", columns, 1, 2)
        method, sql, args = conn.calls[0]
        assert method == "execute"
        assert "key_version = $4" in sql
        assert "WHERE id::text = $5 AND key_version = $6" in sql
        assert args == ("c", "i", "t", 2, "id-1", 1)

    async def test_write_guards_selected_ciphertext(self, pg_store, conn):
        spec = ROTATION_TABLES[RotationTable.VPS_INSTANCES]
        columns = {
            "encrypted_ssh_private_key": "c",
            "ssh_encryption_iv": "i",
            "ssh_encryption_tag": "t",
        }
        expected = {
            "encrypted_ssh_private_key": "old-ssh",
            "encrypted_n8n_credentials": None,
        }
        assert await pg_store.write_rotation(
            spec, "vm-7", columns, 1, 2, expected=expected,
        )
        method, sql, args = conn.calls[0]
        assert (
            "WHERE id::text = $5 AND key_version = $6 "
            "AND encrypted_ssh_private_key IS NOT DISTINCT FROM $7 "
            "AND encrypted_n8n_credentials IS NOT DISTINCT FROM $8"
        ) in sql
        assert args == ("c", "i", "t", 2, "vm-7", 1, "old-ssh", None)

    async def test_write_lost_race(self, pg_store, conn):
        conn.execute_result = "UPDATE 0"
        assert not await pg_store.write_rotation(
            CREDENTIALS_TABLE, "id-1", {"encrypted_data": "c"}, 1, 2,
        )

    def test_update_rejects_unknown_column(self):
        with pytest.raises(ValueError):
            _update_rotation_sql(CREDENTIALS_TABLE, ["owner_ref"])
        with pytest.raises(ValueError):
            _update_rotation_sql(
                CREDENTIALS_TABLE, ["encrypted_data"], guards=("status",),
            )

    @pytest.mark.parametrize("status, expected", [
        ("UPDATE 1", 1), ("UPDATE 0", 0), ("", 0), (None, 0),
    ])
    def test_rowcount(self, status, expected):
        assert _rowcount(status) == expected


class TestAdvisoryLock:
    async def test_acquire_and_release(self, pg_store, conn):
        conn.fetchval_result = True
        async with pg_store.rotation_lock(CREDENTIALS_TABLE, 1):
            pass
        lock_id = _rotation_lock_id("activation_credentials", 1)
        assert [(c[0], c[2]) for c in conn.calls] == [
            ("fetchval", (lock_id,)),
            ("execute", (lock_id,)),
        ]
        assert "pg_advisory_unlock" in conn.calls[1][1]

    async def test_held_elsewhere(self, pg_store, conn):
        conn.fetchval_result = False
        with pytest.raises(ConflictError):
            async with pg_store.rotation_lock(CREDENTIALS_TABLE, 1):
                pass
        assert len(conn.calls) == 1

    def test_lock_ids_differ_per_table_and_version(self):
        ids = {
            _rotation_lock_id(table, version)
            for table in ("activation_credentials", "vps_instances")
            for version in (1, 2)
        }
        assert len(ids) == 4
        assert all(-(2 ** 63) <= i < 2 ** 63 for i in ids)


class TestPostgresDirectory:
    async def test_owner_lookup_falls_through_tables(self, conn):
        conn.fetchval_result = lambda sql, *args: (
            "user-bob" if "vps_instances" in sql else None
        )
        directory = PostgresDirectory(FakePool(conn))
        assert await directory.owner_of("vm-7") == "user-bob"
        assert [c[2] for c in conn.calls] == [("vm-7",), ("vm-7",)]

    async def test_unknown_owner(self, conn):
        directory = PostgresDirectory(FakePool(conn))
        assert await directory.owner_of("nope") is None

    async def test_has_role(self, conn):
        conn.fetchval_result = True
        directory = PostgresDirectory(FakePool(conn))
        assert await directory.has_role("user-carol", "admin") is True
        assert conn.calls[0][2] == ("user-carol", "admin")
