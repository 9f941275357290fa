"""
Claude Client
=============

Streaming wrapper for the Anthropic Claude API.

This is the default model provider for Stageflow.
"""

import os
from typing import Optional, AsyncIterator

import anthropic

from stageflow.llm.base import ModelClient, ModelRequest, normalize_messages
from stageflow.utils.errors import ModelCallError
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


class ClaudeClient(ModelClient):
    """
    Client for Anthropic Claude API.

    Args:
        api_key: Anthropic API key (from env if not provided)
        default_model: Model used when a request names none
        client: Pre-built AsyncAnthropic instance (tests)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        default_model: str = "claude-sonnet-4-5-20250929",
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY") or os.getenv("CLAUDE_API_KEY")
        self.default_model = default_model
        self._client = client

        if not self.api_key and client is None:
            logger.warning("llm.claude.no_api_key")

    @property
    def provider_name(self) -> str:
        return "claude"

    def _get_client(self) -> anthropic.AsyncAnthropic:
        """Get or create the Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def stream(self, request: ModelRequest) -> AsyncIterator[str]:
        """
        Stream a completion.

        Args:
            request: Model request built by a strategy

        Yields:
            Generated text chunks

        Raises:
            ModelCallError: If the API rejects the call or the stream breaks
        """
        client = self._get_client()
        model = request.model or self.default_model

        params = {
            "model": model,
            "max_tokens": request.max_tokens,
            "messages": normalize_messages(request.messages),
        }
        if request.system_prompt:
            params["system"] = request.system_prompt
        if request.temperature is not None:
            params["temperature"] = request.temperature

        logger.debug(
            "llm.claude.stream.started",
            extra={"model": model, "stage": request.stage, "messages": len(params["messages"])}
        )

        try:
            async with client.messages.stream(**params) as stream:
                async for text in stream.text_stream:
                    yield text
        except anthropic.APIStatusError as e:
            logger.error(
                "llm.claude.stream.failed",
                extra={"error": str(e), "status_code": e.status_code, "model": model}
            )
            raise ModelCallError(
                f"Claude API error: {e}", provider=self.provider_name, status_code=e.status_code
            ) from e
        except anthropic.APIError as e:
            logger.error("llm.claude.stream.failed", extra={"error": str(e), "model": model})
            raise ModelCallError(f"Claude API error: {e}", provider=self.provider_name) from e

        logger.info("llm.claude.stream.completed", extra={"model": model})

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
