"""
Directory — ownership and role lookups used by the access gate.

``owner_of(owner_ref)`` resolves the user who owns the resource a credential
grants access to (an activation request, a provisioned VM).
``has_role(user_id, role)`` checks grants in ``user_roles``.
"""
from abc import ABC, abstractmethod
from typing import Any, Optional

_SELECT_OWNER = "SELECT user_id::text FROM {table} WHERE id::text = $1"

_HAS_ROLE = """
SELECT EXISTS (
    SELECT 1 FROM user_roles WHERE user_id::text = $1 AND role = $2
)
"""


class AbstractDirectory(ABC):

    @abstractmethod
    async def owner_of(self, owner_ref: str) -> Optional[str]:
        """User id owning ``owner_ref``, or None if the resource is unknown."""

    @abstractmethod
    async def has_role(self, user_id: str, role: str) -> bool:
        ...


class MemoryDirectory(AbstractDirectory):
    """In-process directory for development and tests."""

    def __init__(
        self,
        owners: Optional[dict[str, str]] = None,
        roles: Optional[dict[str, set[str]]] = None,
    ):
        self.owners: dict[str, str] = dict(owners or {})
        self.roles: dict[str, set[str]] = {
            user: set(granted) for user, granted in (roles or {}).items()
        }

    def add_owner(self, owner_ref: str, user_id: str) -> None:
        self.owners[owner_ref] = user_id

    def grant(self, user_id: str, role: str) -> None:
        self.roles.setdefault(user_id, set()).add(role)

    async def owner_of(self, owner_ref: str) -> Optional[str]:
        return self.owners.get(owner_ref)

    async def has_role(self, user_id: str, role: str) -> bool:
        return role in self.roles.get(user_id, ())


class PostgresDirectory(AbstractDirectory):
    """Directory over an asyncpg-compatible pool.

    Owning resources are looked up in ``owner_tables`` in order; each must
    have ``id`` and ``user_id`` columns.
    """

    def __init__(
        self,
        db_pool: Any,
        owner_tables: tuple[str, ...] = ("installation_requests", "vps_instances"),
    ):
        self._db = db_pool
        self._owner_tables = owner_tables

    async def owner_of(self, owner_ref: str) -> Optional[str]:
        async with self._db.acquire() as conn:
            for table in self._owner_tables:
                user_id = await conn.fetchval(
                    _SELECT_OWNER.format(table=table), owner_ref,
                )
                if user_id is not None:
                    return user_id
        return None

    async def has_role(self, user_id: str, role: str) -> bool:
        async with self._db.acquire() as conn:
            return bool(await conn.fetchval(_HAS_ROLE, user_id, role))
