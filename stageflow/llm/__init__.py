"""
LLM Provider Module
===================

Streaming model clients used by the stage strategies.

Providers:
- claude: Anthropic Messages API (default)
- openai_compatible: LMStudio, llama.cpp and other chat-completions servers
"""

from stageflow.llm.base import ModelClient, ModelRequest
from stageflow.llm.provider_router import LLMProvider, create_model_client

__all__ = [
    "ModelClient",
    "ModelRequest",
    "LLMProvider",
    "create_model_client",
]
