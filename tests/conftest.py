"""Shared fixtures: keys, identity tokens, in-memory backends and fakes."""
import time
import secrets
from contextlib import asynccontextmanager

import jwt
import pytest

from credential_vault.audit import AuditLog
from credential_vault.conf import RateLimitRule, VaultSettings
from credential_vault.directory import MemoryDirectory
from credential_vault.gate import AccessGate, TokenVerifier
from credential_vault.ratelimit import RateLimiter
from credential_vault.vault import CredentialVault, KeyProvider, MemoryStore

JWT_SECRET = "test-identity-signing-secret-0123456789abcdef"
SERVICE_SECRET = "svc-shared-secret-0123456789"

ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"  # admin


def make_token(sub, secret=JWT_SECRET, expires_in=300, **claims):
    payload = {"sub": sub, "exp": int(time.time()) + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def bearer(token):
    return f"Bearer {token}"


# --- Fakes ---

class FakePipeline:
    """Buffers commands like redis.asyncio.client.Pipeline."""

    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.commands = []

    def incr(self, key):
        self.commands.append(("incr", key, None, False))
        return self

    def expire(self, key, seconds, nx=False):
        self.commands.append(("expire", key, seconds, nx))
        return self

    async def execute(self):
        self.redis.executions += 1
        if self.redis.fail:
            raise ConnectionError("redis unavailable")
        results = []
        for name, key, seconds, nx in self.commands:
            if name == "incr":
                self.redis.counters[key] = self.redis.counters.get(key, 0) + 1
                results.append(self.redis.counters[key])
            elif nx and key in self.redis.expiry:
                results.append(False)
            else:
                self.redis.expiry[key] = seconds
                results.append(True)
        self.commands = []
        return results


class FakeRedis:
    """Subset of redis.asyncio.Redis used by the rate limiter."""

    def __init__(self, fail=False):
        self.fail = fail
        self.counters = {}
        self.expiry = {}
        self.executions = 0

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ttl(self, key):
        return self.expiry.get(key, -1)


class FakeConnection:
    """Records calls made by the Postgres-backed components."""

    def __init__(self):
        self.calls = []
        self.fetchrow_result = None
        self.fetch_result = []
        self.fetchval_result = None
        self.execute_result = "UPDATE 1"

    async def fetchrow(self, sql, *args):
        self.calls.append(("fetchrow", sql, args))
        return self.fetchrow_result

    async def fetch(self, sql, *args):
        self.calls.append(("fetch", sql, args))
        return self.fetch_result

    async def fetchval(self, sql, *args):
        self.calls.append(("fetchval", sql, args))
        if callable(self.fetchval_result):
            return self.fetchval_result(sql, *args)
        return self.fetchval_result

    async def execute(self, sql, *args):
        self.calls.append(("execute", sql, args))
        if isinstance(self.execute_result, Exception):
            raise self.execute_result
        return self.execute_result


class FakePool:
    def __init__(self, conn=None):
        self.conn = conn or FakeConnection()

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


class BrokenPool:
    @asynccontextmanager
    async def acquire(self):
        raise ConnectionError("database unavailable")
        yield  # pragma: no cover


# --- Fixtures ---

@pytest.fixture
def current_key():
    return secrets.token_bytes(32)


@pytest.fixture
def next_key():
    return secrets.token_bytes(32)


@pytest.fixture
def keys(current_key):
    return KeyProvider.from_keys(current_key, version=1)


@pytest.fixture
def rotation_keys(current_key, next_key):
    return KeyProvider.from_keys(current_key, version=1, next_key=next_key)


@pytest.fixture
def settings():
    return VaultSettings(
        backend="memory",
        jwt_secret=JWT_SECRET,
        service_secret=SERVICE_SECRET,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def directory():
    directory = MemoryDirectory(
        owners={"req-42": ALICE, "req-99": BOB, "vm-7": BOB},
    )
    directory.grant(CAROL, "admin")
    return directory


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def gate(settings, directory):
    return AccessGate(
        TokenVerifier.from_settings(settings),
        directory,
        service_secret=SERVICE_SECRET,
        audit=AuditLog(),
    )


@pytest.fixture
def vault(store, keys, gate, redis, settings):
    return CredentialVault(
        store, keys, gate, limiter=RateLimiter(redis, settings), audit=AuditLog(),
    )


@pytest.fixture
def alice():
    return bearer(make_token(ALICE))


@pytest.fixture
def bob():
    return bearer(make_token(BOB))


@pytest.fixture
def admin():
    return bearer(make_token(CAROL))


@pytest.fixture
def tight_settings(settings):
    limits = dict(settings.rate_limits)
    limits["submit"] = RateLimitRule(max_requests=2, window_seconds=60)
    return settings.model_copy(update={"rate_limits": limits})
