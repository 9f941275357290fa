"""
Session Repository
==================

Storage boundary for conversation sessions. The orchestrator only needs
create / get / put (plus delete and id listing for housekeeping), so any
store that can hold one JSON document per session id fits behind it.

Implementations:
- InMemorySessionRepository: single-process dict with per-key locks
- PostgresSessionRepository: asyncpg pool, one JSONB row per session
"""

import asyncio
import copy
import weakref
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from stageflow.agent.models import Session
from stageflow.utils.config import Config
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


class SessionRepository(ABC):
    """Abstract interface for session storage."""

    @abstractmethod
    async def create(self, session: Optional[Session] = None) -> str:
        """
        Store a new session.

        Args:
            session: Session to store (a fresh one when omitted)

        Returns:
            The session id
        """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        """Fetch an independent copy of a session, or None."""

    @abstractmethod
    async def put(self, session_id: str, session: Session) -> None:
        """Replace the stored session."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session; True if it existed."""

    @abstractmethod
    async def list_ids(self) -> List[str]:
        """Ids of all stored sessions."""

    async def close(self) -> None:
        return None


class InMemorySessionRepository(SessionRepository):
    """
    Dict-backed repository for single-process deployments and tests.

    Sessions are copied on the way in and out, so callers never share a
    mutable record, and each key has its own lock.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def create(self, session: Optional[Session] = None) -> str:
        session = session or Session()
        async with self._lock(session.session_id):
            self._sessions[session.session_id] = copy.deepcopy(session)
        logger.debug("repository.memory.created", extra={"session_id": session.session_id})
        return session.session_id

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock(session_id):
            stored = self._sessions.get(session_id)
            return copy.deepcopy(stored) if stored is not None else None

    async def put(self, session_id: str, session: Session) -> None:
        async with self._lock(session_id):
            self._sessions[session_id] = copy.deepcopy(session)

    async def delete(self, session_id: str) -> bool:
        async with self._lock(session_id):
            return self._sessions.pop(session_id, None) is not None

    async def list_ids(self) -> List[str]:
        return list(self._sessions)


def create_repository(config: Config) -> SessionRepository:
    """
    Build the repository selected by ``database.session_store``.

    The Postgres repository still needs ``await repo.connect()``.
    """
    store = config.database.session_store
    if store == "postgres":
        from stageflow.database.postgres import PostgresSessionRepository
        return PostgresSessionRepository(
            config.database.database_url,
            min_size=config.database.min_pool_size,
            max_size=config.database.max_pool_size,
        )
    logger.info("repository.memory.selected")
    return InMemorySessionRepository()
