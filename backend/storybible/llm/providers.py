"""
Chat-completion backends for the extraction agents.

Agents only see ``LLMProvider.chat_completion``; which backend answers is
picked once at startup from STORYBIBLE_LLM_PROVIDER. Self-hosted servers that
speak the OpenAI protocol (vLLM, Ollama, LM Studio) are reached through the
OpenAI backend with a custom base URL.

Usage:
    from storybible.llm import get_llm_client

    client = get_llm_client("anthropic")
    reply = client.chat_completion(
        messages=[{"role": "user", "content": "List the characters"}],
        model="claude-sonnet-4-5-20250929",
        json_mode=True,
    )
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

JSON_ONLY_INSTRUCTION = "Respond with a single JSON object only."


class LLMProviderType(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    DUMMY = "dummy"


DEFAULT_MODELS: dict[LLMProviderType, str] = {
    LLMProviderType.OPENAI: "gpt-4.1",
    LLMProviderType.ANTHROPIC: "claude-sonnet-4-5-20250929",
    LLMProviderType.DUMMY: "dummy",
}

# USD per million (input, output) tokens, matched by the longest model name prefix
_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.00, 8.00),
    "claude-sonnet-4-5": (3.00, 15.00),
    "dummy": (0.0, 0.0),
}


def get_default_model(provider: LLMProviderType) -> str:
    return DEFAULT_MODELS.get(provider, DEFAULT_MODELS[LLMProviderType.OPENAI])


@dataclass
class LLMResponse:
    """One completion, normalized across backends."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    raw_response: Any = None

    @property
    def cost_usd(self) -> float:
        """Estimated spend. Models without a price entry cost nothing."""
        model = self.model.lower()
        matches = [prefix for prefix in _PRICING if model.startswith(prefix)]
        if not matches:
            return 0.0
        input_price, output_price = _PRICING[max(matches, key=len)]
        return (self.input_tokens * input_price + self.output_tokens * output_price) / 1_000_000


class LLMProvider(ABC):
    """A blocking chat-completion backend."""

    @abstractmethod
    def chat_completion(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        timeout: float = 60.0,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Complete a conversation of ``{"role", "content"}`` messages.

        With ``json_mode`` the backend is asked for a single JSON object
        in whatever way it supports.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend is configured well enough to be called."""

    @property
    @abstractmethod
    def provider_type(self) -> LLMProviderType:
        ...


class OpenAIProvider(LLMProvider):
    """OpenAI, or any server implementing its chat-completions API."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self._api_key, base_url=self._base_url, max_retries=2)
        return self._client

    def chat_completion(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        timeout: float = 300.0,
        json_mode: bool = False,
    ) -> LLMResponse:
        request: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": timeout,
        }
        if max_tokens:
            request["max_tokens"] = max_tokens
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        response = self._get_client().chat.completions.create(**request)
        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            raw_response=response,
        )

    def is_available(self) -> bool:
        # Self-hosted compatible servers usually need no key
        return bool(self._api_key or self._base_url)

    @property
    def provider_type(self) -> LLMProviderType:
        return LLMProviderType.OPENAI


def _split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Anthropic takes system text as a parameter, not as a message."""
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    rest = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
    return system, rest


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API."""

    def __init__(self, api_key: str | None = None):
        self._api_key = api_key
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from anthropic import Anthropic
            self._client = Anthropic(api_key=self._api_key)
        return self._client

    def chat_completion(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        timeout: float = 300.0,
        json_mode: bool = False,
    ) -> LLMResponse:
        system, conversation = _split_system(messages)
        if json_mode:
            # No native JSON mode; ask for it in the system text
            system = f"{system}\n\n{JSON_ONLY_INSTRUCTION}".strip()

        request: dict[str, Any] = {
            "model": model,
            "messages": conversation,
            "max_tokens": max_tokens or 4096,
            "temperature": temperature,
            "timeout": timeout,
        }
        if system:
            request["system"] = system

        response = self._get_client().messages.create(**request)
        text = "".join(getattr(block, "text", "") for block in response.content or [])
        usage = response.usage
        input_tokens = usage.input_tokens if usage else 0
        output_tokens = usage.output_tokens if usage else 0
        return LLMResponse(
            content=text,
            model=response.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            raw_response=response,
        )

    def is_available(self) -> bool:
        return bool(self._api_key)

    @property
    def provider_type(self) -> LLMProviderType:
        return LLMProviderType.ANTHROPIC


class DummyProvider(LLMProvider):
    """Offline backend that answers every request with the same text."""

    def __init__(self, content: str = "{}"):
        self._content = content

    def chat_completion(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        timeout: float = 60.0,
        json_mode: bool = False,
    ) -> LLMResponse:
        return LLMResponse(content=self._content, model="dummy", input_tokens=0, output_tokens=0, total_tokens=0)

    def is_available(self) -> bool:
        return True

    @property
    def provider_type(self) -> LLMProviderType:
        return LLMProviderType.DUMMY


def get_llm_client(
    provider: LLMProviderType | str | None = None,
    *,
    openai_api_key: str | None = None,
    openai_base_url: str | None = None,
    anthropic_api_key: str | None = None,
) -> LLMProvider:
    """
    Build the configured backend.

    Keys and the OpenAI base URL fall back to OPENAI_API_KEY, OPENAI_BASE_URL
    and ANTHROPIC_API_KEY.

    Raises:
        ValueError: unknown provider, or the provider is missing credentials
    """
    kind = LLMProviderType((provider or os.environ.get("STORYBIBLE_LLM_PROVIDER", "openai")).lower())

    client: LLMProvider
    if kind == LLMProviderType.OPENAI:
        client = OpenAIProvider(
            api_key=openai_api_key or os.environ.get("OPENAI_API_KEY"),
            base_url=openai_base_url or os.environ.get("OPENAI_BASE_URL"),
        )
    elif kind == LLMProviderType.ANTHROPIC:
        client = AnthropicProvider(api_key=anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY"))
    else:
        client = DummyProvider()

    if not client.is_available():
        raise ValueError(f"{kind.value} provider is not configured (missing API key)")
    return client
