"""
Pytest configuration and shared fixtures for the Stageflow test suite.

The model is replaced by scripted clients that replay canned chunk lists, so
every orchestrator test runs without network access.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from stageflow.agent.orchestrator import StageOrchestrator
from stageflow.database.repository import InMemorySessionRepository
from stageflow.llm.base import ModelClient, ModelRequest
from stageflow.utils.config import Config
from stageflow.utils.logging import clear_context


# =============================================================================
# Response builders
# =============================================================================

def make_response(
    reply: str = "Hello",
    intent: Optional[str] = None,
    stage: Optional[str] = None,
    progress: int = 0,
    done: bool = False,
    metadata: Optional[Dict[str, Any]] = None,
    interaction: Optional[Dict[str, Any]] = None,
    files: Optional[List[Dict[str, Any]]] = None,
) -> str:
    """Serialize a model response document."""
    document: Dict[str, Any] = {
        "immediate_display": {"reply": reply},
        "system_state": {
            "intent": intent or "respond",
            "current_stage": stage,
            "progress": progress,
            "done": done,
            "metadata": metadata or {},
        },
    }
    if interaction is not None:
        document["interaction"] = interaction
    if files is not None:
        document["files"] = files
    return json.dumps(document)


def chunked(text: str, size: int = 7) -> List[str]:
    """Split text into fixed-size chunks."""
    return [text[i:i + size] for i in range(0, len(text), size)]


# =============================================================================
# Scripted model clients
# =============================================================================

class ScriptedClient(ModelClient):
    """
    Replays canned chunk lists.

    Scripts are queued per stage; a stage with no queued script falls back
    to ``default``. Every request is recorded.
    """

    def __init__(self, default: Optional[List[str]] = None, delay: float = 0.0):
        self.default = default if default is not None else chunked(make_response())
        self.delay = delay
        self.scripts: Dict[str, List[List[str]]] = {}
        self.requests: List[ModelRequest] = []
        self.closed_streams = 0
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "scripted"

    def queue(self, stage: str, chunks: List[str]) -> None:
        self.scripts.setdefault(stage, []).append(chunks)

    async def stream(self, request: ModelRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        queued = self.scripts.get(request.stage) or []
        chunks = queued.pop(0) if queued else self.default
        try:
            for chunk in chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
        finally:
            self.closed_streams += 1

    async def aclose(self) -> None:
        self.closed = True


class FailingClient(ScriptedClient):
    """Streams ``before`` chunks, then raises ``error``."""

    def __init__(self, error: Exception, before: Optional[List[str]] = None):
        super().__init__(default=before or [])
        self.error = error

    async def stream(self, request: ModelRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        for chunk in self.default:
            yield chunk
        raise self.error


class SlowClient(ScriptedClient):
    """Never finishes: one chunk, then sleeps far past any test timeout."""

    async def stream(self, request: ModelRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        try:
            yield '{"immediate_display": {"reply": "Thinking'
            await asyncio.sleep(3600)
        finally:
            self.closed_streams += 1


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_logging_context():
    """Keep logging context variables from leaking between tests."""
    yield
    clear_context()


@pytest.fixture
def test_config():
    """Provide test configuration."""
    config = Config()
    config.llm.provider = "claude"
    config.database.session_store = "memory"
    config.orchestrator.turn_timeout = 5.0
    return config


@pytest.fixture
def repository():
    return InMemorySessionRepository()


@pytest.fixture
def scripted_client():
    return ScriptedClient()


@pytest.fixture
def orchestrator(repository, scripted_client, test_config):
    """Orchestrator wired to the in-memory repository and the scripted client."""
    return StageOrchestrator(repository, scripted_client, test_config)


async def collect(snapshots) -> list:
    """Drain an async snapshot iterator into a list."""
    return [snapshot async for snapshot in snapshots]
