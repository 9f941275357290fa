"""
OpenAI-Compatible Client
========================

Streaming client for OpenAI-compatible chat APIs (LMStudio, llama.cpp, vLLM).

All of them speak the same chat-completions protocol, so one client
implementation covers every local or self-hosted model server.
"""

import json
from typing import Optional, AsyncIterator, Any, Dict, List

import httpx

from stageflow.llm.base import ModelClient, ModelRequest, normalize_messages
from stageflow.utils.errors import ModelCallError
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


class OpenAICompatibleClient(ModelClient):
    """
    Client for OpenAI-compatible LLM APIs.

    Works with:
    - LMStudio (http://localhost:1234/v1)
    - llama.cpp server (http://localhost:8080/v1)
    - Any other OpenAI-compatible server
    """

    def __init__(
        self,
        base_url: str,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Base URL of the API (e.g., http://localhost:1234/v1)
            model: Model name overriding the one in each request
            api_key: API key (often not required for local servers)
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key or "dummy"  # Many local servers don't require real keys
        self.timeout = timeout
        self._transport = transport

        logger.info(
            "llm.openai_compatible.initialized",
            extra={"base_url": self.base_url, "model": self.model}
        )

    @property
    def provider_name(self) -> str:
        return "openai_compatible"

    async def _stream_request(
        self,
        endpoint: str,
        payload: Dict[str, Any]
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Make a streaming HTTP request to the API.

        Args:
            endpoint: API endpoint
            payload: Request payload

        Yields:
            Decoded ``data:`` chunks until ``[DONE]``
        """
        url = f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload["stream"] = True

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            async with client.stream("POST", url, json=payload, headers=headers) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[6:]
                    if data.strip() == "[DONE]":
                        break
                    yield json.loads(data)

    async def stream(self, request: ModelRequest) -> AsyncIterator[str]:
        """
        Stream a completion.

        Args:
            request: Model request built by a strategy

        Yields:
            Generated text chunks

        Raises:
            ModelCallError: On HTTP errors or malformed stream chunks
        """
        messages: List[Dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(normalize_messages(request.messages))

        model = self.model or request.model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }

        logger.debug(
            "llm.openai_compatible.stream.started",
            extra={"model": model, "stage": request.stage}
        )

        try:
            async for chunk in self._stream_request("/chat/completions", payload):
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                content = delta.get("content")
                if content:
                    yield content
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(
                "llm.openai_compatible.stream.failed",
                extra={"error": str(e), "status_code": status_code, "model": model}
            )
            raise ModelCallError(
                f"Model server returned {status_code}",
                provider=self.provider_name,
                status_code=status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("llm.openai_compatible.stream.failed", extra={"error": str(e), "model": model})
            raise ModelCallError(f"Model server unreachable: {e}", provider=self.provider_name) from e
        except json.JSONDecodeError as e:
            raise ModelCallError(f"Malformed stream chunk: {e}", provider=self.provider_name) from e

        logger.info("llm.openai_compatible.stream.completed", extra={"model": model})
