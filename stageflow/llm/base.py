"""
Base Model Client
=================

Abstract interface for streaming model clients and the request they accept.
Every provider turns a ModelRequest into an async iterator of text chunks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional


@dataclass
class ModelRequest:
    """One model call, built by a stage strategy."""
    model: str
    system_prompt: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    max_tokens: int = 8192
    temperature: float = 0.7
    stage: Optional[str] = None


def normalize_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    Make a message list acceptable to chat APIs.

    Consecutive messages with the same role are merged and the list is made
    to start with a user message.
    """
    normalized: List[Dict[str, str]] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if not content:
            continue
        if normalized and normalized[-1]["role"] == role:
            normalized[-1]["content"] += "\n\n" + content
        else:
            normalized.append({"role": role, "content": content})
    if normalized and normalized[0]["role"] != "user":
        normalized.insert(0, {"role": "user", "content": "(conversation resumed)"})
    return normalized


class ModelClient(ABC):
    """
    Abstract interface for streaming model clients.

    Implementations raise ModelCallError for transport and API failures so
    the orchestrator sees one failure type per provider.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'claude', 'openai_compatible')."""
        pass

    @abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[str]:
        """
        Stream the model's output for a request.

        Args:
            request: Model, prompts and limits for the call

        Yields:
            Text chunks as they arrive
        """
        pass

    async def aclose(self) -> None:
        """Release pooled connections."""
        return None
