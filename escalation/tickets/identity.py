from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escalation.db.models import UserTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    name: str
    role: str


class IdentityProvider(Protocol):
    async def lookup(self, actor_id: str) -> Identity | None:
        ...


class StaticIdentityProvider:
    """Identity lookups served from an in-memory mapping."""

    def __init__(self, identities: dict[str, Identity] | None = None) -> None:
        self._identities = dict(identities or {})

    async def lookup(self, actor_id: str) -> Identity | None:
        return self._identities.get(actor_id)


class UserTableIdentityProvider:
    """Resolve actor ids against the ``users`` table; failures yield ``None``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def lookup(self, actor_id: str) -> Identity | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(UserTable, actor_id)
        except SQLAlchemyError:
            logger.warning("Identity lookup failed for %s", actor_id, exc_info=True)
            return None
        if row is None:
            return None
        return Identity(name=row.name, role=row.role)
