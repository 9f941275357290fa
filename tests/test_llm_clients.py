"""
Tests for the streaming model clients and provider selection.

The Anthropic SDK client is replaced by a small fake; the OpenAI-compatible
client talks to an httpx.MockTransport.
"""

import json

import anthropic
import httpx
import pytest

from stageflow.llm.base import ModelRequest, normalize_messages
from stageflow.llm.claude_client import ClaudeClient
from stageflow.llm.openai_compatible import OpenAICompatibleClient
from stageflow.llm.provider_router import LLMProvider, create_model_client, get_default_provider
from stageflow.utils.errors import InvalidConfigError, ModelCallError
from conftest import collect


def request(**overrides):
    values = {
        "model": "test-model",
        "system_prompt": "You are the welcome agent.",
        "messages": [{"role": "user", "content": "Hi"}],
        "max_tokens": 256,
        "temperature": 0.2,
        "stage": "welcome",
    }
    values.update(overrides)
    return ModelRequest(**values)


# =============================================================================
# Anthropic fakes
# =============================================================================

class FakeTextStream:
    def __init__(self, chunks):
        self.chunks = chunks

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def text_stream(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk


class FakeMessages:
    def __init__(self, chunks=None, error=None):
        self.chunks = chunks or []
        self.error = error
        self.params = None

    def stream(self, **params):
        self.params = params
        if self.error is not None:
            raise self.error
        return FakeTextStream(self.chunks)


class FakeAnthropic:
    def __init__(self, chunks=None, error=None):
        self.messages = FakeMessages(chunks, error)
        self.closed = False

    async def close(self):
        self.closed = True


ANTHROPIC_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class TestClaudeClient:

    @pytest.mark.asyncio
    async def test_streams_text_chunks(self):
        fake = FakeAnthropic(chunks=['{"immediate', '_display": {}}'])
        client = ClaudeClient(api_key="sk-test", client=fake)

        chunks = await collect(client.stream(request()))

        assert chunks == ['{"immediate', '_display": {}}']
        params = fake.messages.params
        assert params["model"] == "test-model"
        assert params["system"] == "You are the welcome agent."
        assert params["max_tokens"] == 256
        assert params["temperature"] == 0.2
        assert params["messages"] == [{"role": "user", "content": "Hi"}]

    @pytest.mark.asyncio
    async def test_default_model_when_request_has_none(self):
        fake = FakeAnthropic(chunks=["x"])
        client = ClaudeClient(api_key="sk-test", default_model="fallback-model", client=fake)

        await collect(client.stream(request(model="")))

        assert fake.messages.params["model"] == "fallback-model"

    @pytest.mark.asyncio
    async def test_status_errors_carry_status_code(self):
        error = anthropic.RateLimitError(
            "rate limited",
            response=httpx.Response(429, request=ANTHROPIC_REQUEST),
            body=None,
        )
        client = ClaudeClient(api_key="sk-test", client=FakeAnthropic(error=error))

        with pytest.raises(ModelCallError) as exc_info:
            await collect(client.stream(request()))

        assert exc_info.value.context["status_code"] == 429
        assert exc_info.value.context["provider"] == "claude"

    @pytest.mark.asyncio
    async def test_connection_errors(self):
        error = anthropic.APIConnectionError(request=ANTHROPIC_REQUEST)
        client = ClaudeClient(api_key="sk-test", client=FakeAnthropic(error=error))

        with pytest.raises(ModelCallError):
            await collect(client.stream(request()))

    @pytest.mark.asyncio
    async def test_aclose_closes_sdk_client(self):
        fake = FakeAnthropic()
        client = ClaudeClient(api_key="sk-test", client=fake)

        await client.aclose()

        assert fake.closed is True


# =============================================================================
# OpenAI-compatible client
# =============================================================================

def sse_body(*events):
    lines = [f"data: {json.dumps(event)}" for event in events]
    lines.append("data: [DONE]")
    return "\n\n".join(lines) + "\n\n"


def delta(content=None, role=None):
    body = {}
    if content is not None:
        body["content"] = content
    if role is not None:
        body["role"] = role
    return {"choices": [{"index": 0, "delta": body}]}


class TestOpenAICompatibleClient:

    @pytest.mark.asyncio
    async def test_streams_deltas_until_done(self):
        seen = {}

        def handler(http_request):
            seen["url"] = str(http_request.url)
            seen["payload"] = json.loads(http_request.content)
            seen["auth"] = http_request.headers["authorization"]
            body = sse_body(delta(role="assistant"), delta("Hel"), {"choices": []}, delta("lo"))
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        client = OpenAICompatibleClient(
            "http://localhost:1234/v1/", transport=httpx.MockTransport(handler)
        )

        chunks = await collect(client.stream(request()))

        assert chunks == ["Hel", "lo"]
        assert seen["url"] == "http://localhost:1234/v1/chat/completions"
        assert seen["auth"] == "Bearer dummy"
        payload = seen["payload"]
        assert payload["stream"] is True
        assert payload["model"] == "test-model"
        assert payload["messages"][0] == {"role": "system", "content": "You are the welcome agent."}
        assert payload["messages"][1] == {"role": "user", "content": "Hi"}

    @pytest.mark.asyncio
    async def test_configured_model_overrides_request(self):
        seen = {}

        def handler(http_request):
            seen["payload"] = json.loads(http_request.content)
            return httpx.Response(200, text=sse_body(delta("ok")))

        client = OpenAICompatibleClient(
            "http://localhost:1234/v1", model="qwen2.5-coder", transport=httpx.MockTransport(handler)
        )
        await collect(client.stream(request()))

        assert seen["payload"]["model"] == "qwen2.5-coder"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(503, text="busy"))
        client = OpenAICompatibleClient("http://localhost:1234/v1", transport=transport)

        with pytest.raises(ModelCallError) as exc_info:
            await collect(client.stream(request()))

        assert exc_info.value.context["status_code"] == 503

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        def handler(http_request):
            raise httpx.ConnectError("connection refused", request=http_request)

        client = OpenAICompatibleClient("http://localhost:1234/v1", transport=httpx.MockTransport(handler))

        with pytest.raises(ModelCallError) as exc_info:
            await collect(client.stream(request()))

        assert "unreachable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_chunk(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, text="data: {oops\n\n"))
        client = OpenAICompatibleClient("http://localhost:1234/v1", transport=transport)

        with pytest.raises(ModelCallError):
            await collect(client.stream(request()))


# =============================================================================
# Message normalization and provider selection
# =============================================================================

class TestNormalizeMessages:

    def test_merges_consecutive_roles_and_drops_empty(self):
        messages = [
            {"role": "user", "content": "Hi"},
            {"role": "user", "content": "Anyone there?"},
            {"role": "assistant", "content": ""},
            {"role": "assistant", "content": "Yes"},
        ]

        assert normalize_messages(messages) == [
            {"role": "user", "content": "Hi\n\nAnyone there?"},
            {"role": "assistant", "content": "Yes"},
        ]

    def test_starts_with_user(self):
        normalized = normalize_messages([{"role": "assistant", "content": "Welcome back"}])
        assert normalized[0]["role"] == "user"
        assert normalized[1] == {"role": "assistant", "content": "Welcome back"}

    def test_input_is_not_mutated(self):
        messages = [{"role": "user", "content": "a"}, {"role": "user", "content": "b"}]
        normalize_messages(messages)
        assert messages[0]["content"] == "a"


class TestProviderRouter:

    def test_claude_is_default(self, test_config):
        test_config.llm.claude_api_key = "sk-test"

        client = create_model_client(test_config)

        assert isinstance(client, ClaudeClient)
        assert client.provider_name == "claude"

    def test_openai_compatible(self, test_config):
        test_config.llm.provider = "OpenAI_Compatible"
        test_config.llm.openai_api_base = "http://localhost:8080/v1"
        test_config.llm.openai_model = "llama"

        client = create_model_client(test_config)

        assert isinstance(client, OpenAICompatibleClient)
        assert client.base_url == "http://localhost:8080/v1"
        assert client.model == "llama"
        assert get_default_provider(test_config) == LLMProvider.OPENAI_COMPATIBLE

    def test_unknown_provider(self, test_config):
        test_config.llm.provider = "gpt-cloud"
        with pytest.raises(InvalidConfigError):
            create_model_client(test_config)
