"""
LLM backends (OpenAI and compatible servers, Anthropic) behind one blocking
chat-completion interface, plus an offline dummy backend.

Usage:
    from storybible.llm import get_llm_client, LLMProviderType

    # Read STORYBIBLE_LLM_PROVIDER
    client = get_llm_client()

    # Or pick one explicitly
    client = get_llm_client(LLMProviderType.ANTHROPIC)
"""

from storybible.llm.providers import (
    DEFAULT_MODELS,
    AnthropicProvider,
    DummyProvider,
    LLMProvider,
    LLMProviderType,
    LLMResponse,
    OpenAIProvider,
    get_default_model,
    get_llm_client,
)

__all__ = [
    "LLMProvider",
    "LLMProviderType",
    "LLMResponse",
    "OpenAIProvider",
    "AnthropicProvider",
    "DummyProvider",
    "get_llm_client",
    "get_default_model",
    "DEFAULT_MODELS",
]
