"""Application factory for the credential vault service.

The asyncpg pool and the redis client are opened on startup and closed on
cleanup; nothing else is shared between requests.
"""
import logging
from typing import Any, AsyncIterator, Optional

import asyncpg
from aiohttp import web
from redis import asyncio as aioredis

from .audit import AuditLog
from .conf import VaultSettings
from .directory import AbstractDirectory, MemoryDirectory, PostgresDirectory
from .exceptions import ConfigurationError
from .gate import AccessGate, TokenVerifier
from .handlers import VAULT_KEY, error_middleware, setup_routes
from .ratelimit import RateLimiter
from .vault.config import KeyProvider
from .vault.credential_vault import CredentialVault
from .vault.store import AbstractStore, MemoryStore, PostgresStore

logger = logging.getLogger("credential_vault")

SETTINGS_KEY = web.AppKey("vault_settings", VaultSettings)


def build_vault(
    settings: VaultSettings,
    keys: KeyProvider,
    store: AbstractStore,
    directory: AbstractDirectory,
    redis: Any = None,
    db_pool: Any = None,
) -> CredentialVault:
    """Wire a CredentialVault from its collaborators."""
    audit = AuditLog(db_pool)
    gate = AccessGate(
        TokenVerifier.from_settings(settings),
        directory,
        service_secret=settings.service_secret,
        audit=audit,
    )
    return CredentialVault(
        store,
        keys,
        gate,
        limiter=RateLimiter(redis, settings),
        audit=audit,
    )


def create_app(
    settings: Optional[VaultSettings] = None,
    keys: Optional[KeyProvider] = None,
    *,
    store: Optional[AbstractStore] = None,
    directory: Optional[AbstractDirectory] = None,
    redis: Any = None,
) -> web.Application:
    """Build the aiohttp application.

    ``store``/``directory``/``redis`` may be injected; otherwise they are
    created from ``settings`` on startup.

    Raises:
        ConfigurationError: Missing or malformed key material or settings.
    """
    settings = settings or VaultSettings.from_env()
    keys = keys or KeyProvider.from_env()
    if settings.backend == "postgres" and store is None and not settings.dsn:
        raise ConfigurationError("VAULT_DSN is required for the postgres backend")

    app = web.Application(middlewares=[error_middleware])
    app[SETTINGS_KEY] = settings

    async def resources(app: web.Application) -> AsyncIterator[None]:
        pool = None
        redis_client = redis
        if redis_client is None and settings.redis_url:
            redis_client = aioredis.from_url(settings.redis_url)
        if store is not None:
            vault_store = store
            vault_directory = directory or MemoryDirectory()
        elif settings.backend == "memory":
            vault_store = MemoryStore()
            vault_directory = directory or MemoryDirectory()
        else:
            pool = await asyncpg.create_pool(settings.dsn, min_size=1, max_size=10)
            vault_store = PostgresStore(pool)
            vault_directory = directory or PostgresDirectory(pool)
        app[VAULT_KEY] = build_vault(
            settings, keys, vault_store, vault_directory,
            redis=redis_client, db_pool=pool,
        )
        logger.info(
            "Credential vault ready: backend=%s key_version=%d rotation_key=%s",
            settings.backend, keys.current().version,
            "set" if keys.next() else "unset",
        )
        yield
        if pool is not None:
            await pool.close()
        if redis_client is not None and redis is None:
            await redis_client.aclose()

    app.cleanup_ctx.append(resources)
    setup_routes(app)
    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = VaultSettings.from_env()
    web.run_app(create_app(settings), host=settings.host, port=settings.port)
