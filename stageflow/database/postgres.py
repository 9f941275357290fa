"""
PostgreSQL Session Repository
=============================

Stores each session as one JSONB document keyed by session id.

Usage:
    repo = PostgresSessionRepository("postgresql://localhost/stageflow")
    await repo.connect()
    await repo.ensure_schema()
"""

import json
from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg

from stageflow.agent.models import Session
from stageflow.database.repository import SessionRepository
from stageflow.database.retry import RetryConfig, with_retry
from stageflow.utils.errors import PersistenceError
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stageflow_sessions (
    session_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    current_stage TEXT NOT NULL,
    data JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_stageflow_sessions_status ON stageflow_sessions (status);
"""

UPSERT_SQL = """
INSERT INTO stageflow_sessions (session_id, status, current_stage, data)
VALUES ($1, $2, $3, $4::jsonb)
ON CONFLICT (session_id) DO UPDATE
SET status = EXCLUDED.status,
    current_stage = EXCLUDED.current_stage,
    data = EXCLUDED.data,
    updated_at = NOW()
"""

STORE_RETRY = RetryConfig(max_retries=3, base_delay=0.5)


class PostgresSessionRepository(SessionRepository):
    """Session repository backed by an asyncpg pool."""

    def __init__(self, connection_url: str, min_size: int = 2, max_size: int = 10,
                 pool: Optional[asyncpg.Pool] = None):
        if pool is None and not connection_url.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                f"Invalid database URL. Must be PostgreSQL connection string. "
                f"Got: {connection_url[:20]}..."
            )
        self.connection_url = connection_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool = pool

    async def connect(self) -> None:
        """Create the connection pool."""
        if self.pool is not None:
            return
        self.pool = await asyncpg.create_pool(
            self.connection_url,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=60,
        )
        logger.info(
            "repository.postgres.connected",
            extra={"min_size": self.min_size, "max_size": self.max_size}
        )

    async def close(self) -> None:
        """Close connection pool."""
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("repository.postgres.disconnected")

    @asynccontextmanager
    async def acquire(self):
        if self.pool is None:
            raise PersistenceError("Repository is not connected", operation="acquire")
        async with self.pool.acquire() as conn:
            yield conn

    @with_retry(STORE_RETRY)
    async def ensure_schema(self) -> None:
        async with self.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def create(self, session: Optional[Session] = None) -> str:
        session = session or Session()
        await self.put(session.session_id, session)
        logger.debug("repository.postgres.created", extra={"session_id": session.session_id})
        return session.session_id

    async def get(self, session_id: str) -> Optional[Session]:
        row = await self._fetch(session_id)
        if row is None:
            return None
        data = row["data"]
        if isinstance(data, str):
            data = json.loads(data)
        return Session.from_dict(data)

    async def put(self, session_id: str, session: Session) -> None:
        payload = json.dumps(session.to_dict())
        try:
            await self._upsert(session_id, session.status.value, session.current_stage.value, payload)
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to store session {session_id}: {e}", operation="put") from e

    async def delete(self, session_id: str) -> bool:
        result = await self._execute("DELETE FROM stageflow_sessions WHERE session_id = $1", session_id)
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return result.endswith(" 1")

    async def list_ids(self) -> List[str]:
        rows = await self._fetch_all("SELECT session_id FROM stageflow_sessions ORDER BY created_at")
        return [row["session_id"] for row in rows]

    @with_retry(STORE_RETRY)
    async def _fetch(self, session_id: str):
        async with self.acquire() as conn:
            return await conn.fetchrow(
                "SELECT data FROM stageflow_sessions WHERE session_id = $1", session_id
            )

    @with_retry(STORE_RETRY)
    async def _fetch_all(self, query: str):
        async with self.acquire() as conn:
            return await conn.fetch(query)

    @with_retry(STORE_RETRY)
    async def _execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    @with_retry(STORE_RETRY)
    async def _upsert(self, session_id: str, status: str, stage: str, payload: str) -> None:
        async with self.acquire() as conn:
            await conn.execute(UPSERT_SQL, session_id, status, stage, payload)
