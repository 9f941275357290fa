"""
Tests for session repositories.

The in-memory repository is exercised directly; the PostgreSQL repository
runs against a fake asyncpg pool that keeps rows in a dict.
"""

import gc
from contextlib import asynccontextmanager

import asyncpg
import pytest

from stageflow.agent.models import Session, SessionStatus, Stage
from stageflow.database.postgres import UPSERT_SQL, PostgresSessionRepository
from stageflow.database.repository import InMemorySessionRepository, create_repository
from stageflow.utils.errors import PersistenceError


class FakeConnection:
    """Just enough of an asyncpg connection for the repository's queries."""

    def __init__(self):
        self.rows = {}
        self.queries = []
        self.fail_with = None

    async def execute(self, query, *args):
        self.queries.append(query)
        if self.fail_with is not None:
            raise self.fail_with
        if query == UPSERT_SQL:
            session_id, status, stage, payload = args
            self.rows[session_id] = {"status": status, "current_stage": stage, "data": payload}
            return "INSERT 0 1"
        if query.startswith("DELETE"):
            existed = self.rows.pop(args[0], None) is not None
            return f"DELETE {1 if existed else 0}"
        return "CREATE TABLE"

    async def fetchrow(self, query, session_id):
        row = self.rows.get(session_id)
        return {"data": row["data"]} if row else None

    async def fetch(self, query):
        return [{"session_id": session_id} for session_id in self.rows]


class FakePool:
    def __init__(self):
        self.connection = FakeConnection()
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.connection

    async def close(self):
        self.closed = True


def sample_session():
    session = Session(current_stage=Stage.DESIGN, progress=70)
    session.add_message("user", "Hi")
    session.collected_data["business"] = "Bakery"
    return session


class TestInMemoryRepository:

    @pytest.mark.asyncio
    async def test_create_get_put_delete(self):
        repo = InMemorySessionRepository()
        session_id = await repo.create(sample_session())

        loaded = await repo.get(session_id)
        assert loaded.current_stage == Stage.DESIGN
        assert loaded.history[0].content == "Hi"

        loaded.status = SessionStatus.PAUSED
        await repo.put(session_id, loaded)
        assert (await repo.get(session_id)).status == SessionStatus.PAUSED

        assert await repo.list_ids() == [session_id]
        assert await repo.delete(session_id) is True
        assert await repo.delete(session_id) is False
        assert await repo.get(session_id) is None

    @pytest.mark.asyncio
    async def test_records_are_copied_in_and_out(self):
        repo = InMemorySessionRepository()
        session = sample_session()
        session_id = await repo.create(session)

        session.progress = 5
        loaded = await repo.get(session_id)
        loaded.collected_data["business"] = "Florist"

        again = await repo.get(session_id)
        assert again.progress == 70
        assert again.collected_data["business"] == "Bakery"

    @pytest.mark.asyncio
    async def test_create_without_session(self):
        repo = InMemorySessionRepository()
        session_id = await repo.create()
        assert (await repo.get(session_id)).current_stage == Stage.WELCOME

    @pytest.mark.asyncio
    async def test_key_locks_do_not_accumulate(self):
        repo = InMemorySessionRepository()
        session_ids = [await repo.create() for _ in range(3)]
        for session_id in session_ids:
            await repo.put(session_id, await repo.get(session_id))

        gc.collect()

        assert len(repo._locks) == 0
        assert sorted(await repo.list_ids()) == sorted(session_ids)


class TestPostgresRepository:

    @pytest.mark.asyncio
    async def test_round_trip_through_jsonb_payload(self):
        pool = FakePool()
        repo = PostgresSessionRepository("postgresql://test/stageflow", pool=pool)
        session = sample_session()

        session_id = await repo.create(session)
        loaded = await repo.get(session_id)

        assert loaded.to_dict() == session.to_dict()
        assert pool.connection.rows[session_id]["current_stage"] == "design"
        assert pool.connection.rows[session_id]["status"] == "active"

    @pytest.mark.asyncio
    async def test_list_and_delete(self):
        repo = PostgresSessionRepository("postgresql://test/stageflow", pool=FakePool())
        first = await repo.create(Session())
        second = await repo.create(Session())

        assert await repo.list_ids() == [first, second]
        assert await repo.delete(first) is True
        assert await repo.delete(first) is False
        assert await repo.get(first) is None

    @pytest.mark.asyncio
    async def test_ensure_schema_and_close(self):
        pool = FakePool()
        repo = PostgresSessionRepository("postgresql://test/stageflow", pool=pool)

        await repo.ensure_schema()
        await repo.close()

        assert "CREATE TABLE IF NOT EXISTS stageflow_sessions" in pool.connection.queries[0]
        assert pool.closed is True
        assert repo.pool is None

    @pytest.mark.asyncio
    async def test_database_errors_become_persistence_errors(self):
        pool = FakePool()
        error = asyncpg.PostgresError()
        error.sqlstate = "23505"
        pool.connection.fail_with = error
        repo = PostgresSessionRepository("postgresql://test/stageflow", pool=pool)

        with pytest.raises(PersistenceError) as exc_info:
            await repo.put("s1", Session(session_id="s1"))
        assert exc_info.value.context["operation"] == "put"

    @pytest.mark.asyncio
    async def test_unconnected_repository(self):
        repo = PostgresSessionRepository("postgresql://test/stageflow")
        with pytest.raises(PersistenceError):
            await repo.get("s1")

    def test_rejects_non_postgres_url(self):
        with pytest.raises(ValueError):
            PostgresSessionRepository("sqlite:///sessions.db")


class TestCreateRepository:

    def test_memory_store(self, test_config):
        assert isinstance(create_repository(test_config), InMemorySessionRepository)

    def test_postgres_store(self, test_config):
        test_config.database.session_store = "postgres"
        test_config.database.database_url = "postgresql://test/stageflow"

        repo = create_repository(test_config)

        assert isinstance(repo, PostgresSessionRepository)
        assert repo.pool is None
