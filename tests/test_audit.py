"""Tests for the best-effort audit log."""
import logging

import orjson

from credential_vault.audit import AuditLog, sanitize_details

from .conftest import BrokenPool, FakePool


class TestSanitize:
    def test_redacts_sensitive_keys(self):
        details = {
            "api_key": "sk_live_abc123",
            "Authorization": "Bearer x",
            "client_secret": "s",
            "refresh_token": "t",
            "service_name": "stripe",
        }
        clean = sanitize_details(details)
        assert clean["api_key"] == "[REDACTED]"
        assert clean["Authorization"] == "[REDACTED]"
        assert clean["client_secret"] == "[REDACTED]"
        assert clean["refresh_token"] == "[REDACTED]"
        assert clean["service_name"] == "stripe"

    def test_email_keeps_domain_only(self):
        clean = sanitize_details({"email": "alice@example.com"})
        assert clean["email"] == "***@example.com"

    def test_input_not_mutated(self):
        details = {"password": "hunter2"}
        sanitize_details(details)
        assert details == {"password": "hunter2"}

    def test_empty(self):
        assert sanitize_details(None) is None
        assert sanitize_details({}) is None


class TestAuditLog:
    async def test_without_pool_logs_only(self, caplog):
        with caplog.at_level(logging.INFO, logger="credential_vault.audit"):
            ok = await AuditLog().emit(
                actor="user-1", action="credential.read", target="credential:1",
            )
        assert ok is True
        assert "action=credential.read" in caplog.text

    async def test_persists_entry(self):
        pool = FakePool()
        ok = await AuditLog(pool).emit(
            actor="user-1",
            action="credential.submit",
            target="credential:1",
            details={"service_name": "stripe", "api_key": "sk_live_abc123"},
        )
        assert ok is True
        (method, sql, args), = pool.conn.calls
        assert method == "execute"
        assert "INSERT INTO credential_audit" in sql
        actor, action, target, status, details, created_at = args
        assert (actor, action, target, status) == (
            "user-1", "credential.submit", "credential:1", "ok",
        )
        assert orjson.loads(details) == {
            "service_name": "stripe", "api_key": "[REDACTED]",
        }
        assert "sk_live_abc123" not in details
        assert created_at.tzinfo is not None

    async def test_store_failure_never_raises(self, caplog):
        with caplog.at_level(logging.ERROR, logger="credential_vault.audit"):
            ok = await AuditLog(BrokenPool()).emit(
                actor="user-1", action="credential.read",
            )
        assert ok is False
        assert "Failed to record audit entry" in caplog.text

    async def test_execute_failure_never_raises(self):
        pool = FakePool()
        pool.conn.execute_result = RuntimeError("relation does not exist")
        ok = await AuditLog(pool).emit(actor=None, action="rotation.run")
        assert ok is False
