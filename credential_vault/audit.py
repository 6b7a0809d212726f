"""
Vault Audit Log — best-effort record of every privileged operation.

Every decrypt-for-read, write, revoke and rotation emits one entry
(actor, action, target, status, timestamp). Entries always go to the
``credential_vault.audit`` logger and, when a pool is configured, to the
``credential_audit`` table. A failure to persist an entry is logged at
error level and never blocks or reverses the audited action.

Usage:
    audit = AuditLog(db_pool)
    await audit.emit(actor="user-1", action="credential.read",
                     target="credential:uuid", details={...})
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import orjson

logger = logging.getLogger("credential_vault.audit")

_INSERT_AUDIT = """
INSERT INTO credential_audit (actor, action, target, status, details, created_at)
VALUES ($1, $2, $3, $4, $5::jsonb, $6)
"""

_SENSITIVE_KEYS = ('password', 'token', 'secret', 'key', 'authorization', 'cookie')


def sanitize_details(details: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Redact sensitive-looking keys and reduce emails to their domain."""
    if not details:
        return None
    sanitized = dict(details)
    for name, value in details.items():
        lowered = name.lower()
        if any(sk in lowered for sk in _SENSITIVE_KEYS):
            sanitized[name] = '[REDACTED]'
        elif lowered == 'email' and isinstance(value, str) and '@' in value:
            sanitized[name] = f"***@{value.split('@', 1)[1]}"
    return sanitized


class AuditLog:
    """Audit sink. ``db_pool`` is an asyncpg-compatible pool or None."""

    def __init__(self, db_pool: Any = None):
        self._db = db_pool

    async def emit(
        self,
        *,
        actor: Optional[str],
        action: str,
        target: Optional[str] = None,
        status: str = "ok",
        details: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Record one audit entry.

        Returns True when the entry was persisted (or no pool is configured),
        False when persisting failed. Never raises.
        """
        clean = sanitize_details(details)
        timestamp = datetime.now(timezone.utc)
        logger.info(
            "audit action=%s actor=%s target=%s status=%s",
            action, actor or "anonymous", target, status,
        )
        if self._db is None:
            return True
        try:
            async with self._db.acquire() as conn:
                await conn.execute(
                    _INSERT_AUDIT,
                    actor,
                    action,
                    target,
                    status,
                    orjson.dumps(clean).decode("utf-8") if clean else None,
                    timestamp,
                )
            return True
        except Exception as err:
            logger.error(
                "Failed to record audit entry action=%s target=%s: %s",
                action, target, err,
            )
            return False
