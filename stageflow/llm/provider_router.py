"""
LLM Provider Router
===================

Picks the streaming model client for the configured provider.
"""

from enum import Enum

from stageflow.llm.base import ModelClient
from stageflow.utils.config import Config
from stageflow.utils.errors import InvalidConfigError
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


class LLMProvider(str, Enum):
    """Available LLM providers."""
    CLAUDE = "claude"
    OPENAI_COMPATIBLE = "openai_compatible"


def get_default_provider(config: Config) -> LLMProvider:
    """
    Resolve the configured provider.

    Raises:
        InvalidConfigError: If the provider name is unknown
    """
    try:
        return LLMProvider(config.llm.provider.lower())
    except ValueError:
        raise InvalidConfigError(
            "llm.provider", config.llm.provider,
            f"expected one of {', '.join(p.value for p in LLMProvider)}"
        ) from None


def create_model_client(config: Config) -> ModelClient:
    """
    Build the model client for the configured provider.

    Args:
        config: Application configuration

    Returns:
        A ModelClient ready to stream
    """
    provider = get_default_provider(config)
    logger.info("llm.provider.selected", extra={"provider": provider.value})

    if provider == LLMProvider.CLAUDE:
        from stageflow.llm.claude_client import ClaudeClient
        return ClaudeClient(
            api_key=config.llm.claude_api_key,
            default_model=config.models.welcome,
        )

    from stageflow.llm.openai_compatible import OpenAICompatibleClient
    return OpenAICompatibleClient(
        base_url=config.llm.openai_api_base,
        model=config.llm.openai_model,
        api_key=config.llm.openai_api_key,
        timeout=config.orchestrator.turn_timeout,
    )
