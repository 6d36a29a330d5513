"""
Gatekeeper — User Store
=========================

What:  Lookup of user records by id for the identity resolver.
How:   `UserStore.find_by_id(id)` returns a plain dict without secret fields,
       or None when the user does not exist (or is deactivated).
Who:   IdentityResolver (bearer and session paths).

Implementations:
    SqlUserStore       Async SQLAlchemy against the `users` table (production).
    InMemoryUserStore  Dict-backed; used by tests and local development.

Exceptions from a store propagate; the resolver is responsible for turning
them into an anonymous resolution.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.models.user import User
from gatekeeper.security.principal import strip_secrets

logger = logging.getLogger(__name__)


class UserStore(ABC):
    """Read-only user lookup contract."""

    @abstractmethod
    async def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return the user without secret fields, or None."""

    async def ping(self) -> bool:
        """Lightweight reachability probe for the health endpoint."""
        return True


class InMemoryUserStore(UserStore):
    def __init__(self, users: Iterable[Mapping[str, Any]] = ()):
        self._users: Dict[str, Dict[str, Any]] = {}
        for user in users:
            self.add(user)

    def add(self, user: Mapping[str, Any]) -> None:
        user_id = user.get("id") or user.get("_id")
        self._users[str(user_id)] = dict(user)

    async def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._users.get(str(user_id))
        if user is None or user.get("is_active") is False:
            return None
        return strip_secrets(user)


class SqlUserStore(UserStore):
    """
    Looks users up in PostgreSQL.

    Args:
        session_factory: Zero-argument callable returning an async context
            manager that yields an AsyncSession (defaults to
            `gatekeeper.database.session_scope`).
    """

    def __init__(self, session_factory: Optional[Callable[[], Any]] = None):
        if session_factory is None:
            from gatekeeper.database import session_scope
            session_factory = session_scope
        self._session_factory = session_factory

    async def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            return await self._find(session, str(user_id))

    @staticmethod
    async def _find(session: AsyncSession, user_id: str) -> Optional[Dict[str, Any]]:
        result = await session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None or not user.is_active:
            return None
        return user.to_public_dict()

    async def ping(self) -> bool:
        from sqlalchemy import text

        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("User store unreachable: %s", str(e))
            return False
