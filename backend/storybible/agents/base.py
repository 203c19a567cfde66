"""
Base classes for extraction agents.

BaseAgent provides unified LLM access (off the event loop), token tracking
and reply parsing. The abstract collaborator interfaces below are what the
orchestrator depends on; LLM-backed implementations live in the sibling
modules and tests substitute their own.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Any, ClassVar

import anyio

from storybible.agents.models import DocumentAnalysis, ExtractionContext, GapReport
from storybible.llm.providers import LLMProvider, LLMResponse, get_default_model
from storybible.pipeline.deduplication import CategoryDecision, DuplicateGroup
from storybible.pipeline.errors import AgentResponseError
from storybible.pipeline.models import (
    EntityCollections,
    ExtractorKey,
    Relationships,
    StoryEntity,
    World,
)

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\[\{].*?[\]\}])\s*```", re.DOTALL)
_RAW_OBJECT = re.compile(r"(\{[\s\S]*\})")


@dataclass
class AgentStats:
    """Tracks agent execution statistics."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    llm_calls: int = 0

    def add_response(self, response: LLMResponse) -> None:
        """Add token usage from an LLM response."""
        self.input_tokens += response.input_tokens
        self.output_tokens += response.output_tokens
        self.total_tokens += response.total_tokens
        self.cost_usd += response.cost_usd
        self.llm_calls += 1


def _close_truncated_array(content: str, list_key: str) -> str | None:
    """
    Cut a truncated reply back to the last complete object in ``list_key``
    and close the array and the enclosing object.
    """
    key_at = content.find(f'"{list_key}"')
    if key_at == -1:
        return None
    array_at = content.find("[", key_at)
    if array_at == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    last_object_end = -1
    for i in range(array_at, len(content)):
        char = content[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "[{":
            depth += 1
        elif char in "]}":
            depth -= 1
            if char == "}" and depth == 1:
                last_object_end = i
            if depth == 0:
                return None  # array is complete, truncation is elsewhere

    if last_object_end == -1:
        return content[: array_at + 1] + "]}"
    return content[: last_object_end + 1] + "]}"


def parse_json_reply(content: str, list_key: str | None = None) -> dict[str, Any]:
    """
    Parse an agent reply into a JSON object.

    Accepts bare JSON or a fenced code block. When ``list_key`` is given, a
    reply cut off mid-array is recovered up to its last complete entry.

    Raises:
        AgentResponseError: if no JSON object can be recovered
    """
    clean_content = content.strip()
    code_block_match = _CODE_BLOCK.search(clean_content)
    if code_block_match:
        clean_content = code_block_match.group(1)
    elif not clean_content.startswith(("{", "[")):
        object_match = _RAW_OBJECT.search(clean_content)
        if object_match:
            clean_content = object_match.group(1)

    try:
        parsed = json.loads(clean_content)
    except json.JSONDecodeError as e:
        recovered = _close_truncated_array(content.strip(), list_key) if list_key else None
        if recovered is None:
            raise AgentResponseError(f"Reply is not valid JSON: {e}") from e
        try:
            parsed = json.loads(recovered)
        except json.JSONDecodeError as e2:
            raise AgentResponseError(f"Reply is not valid JSON: {e2}") from e2
        logger.info("Recovered truncated JSON reply for '%s'", list_key)

    if isinstance(parsed, list) and list_key:
        return {list_key: parsed}
    if not isinstance(parsed, dict):
        raise AgentResponseError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


class BaseAgent(ABC):
    """
    Abstract base class for LLM-backed agents.

    Subclasses must implement:
        - name: Agent name for logging

    Provides:
        - Unified LLM access via await self.llm_call(), run in a worker thread
        - Automatic token/cost tracking
    """

    def __init__(self, llm: LLMProvider, model: str | None = None):
        """
        Initialize the agent.

        Args:
            llm: LLM provider for API calls
            model: Model to use (defaults to provider's default)
        """
        self._llm = llm
        self._model = model or get_default_model(llm.provider_type)
        self._stats = AgentStats()

    @property
    @abstractmethod
    def name(self) -> str:
        """Agent name for logging and identification."""
        pass

    async def llm_call(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int | None = None,
        json_mode: bool = True,
    ) -> LLMResponse:
        """
        Make an LLM call with automatic token tracking.

        The provider call is blocking; it runs in a worker thread so the event
        loop keeps publishing progress. Cancelling the awaiting task abandons
        the thread.
        """
        call = partial(
            self._llm.chat_completion,
            messages=messages,
            model=self._model,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
        response = await anyio.to_thread.run_sync(call, abandon_on_cancel=True)
        self._stats.add_response(response)
        return response

    def get_stats(self) -> AgentStats:
        """Get current execution statistics."""
        return self._stats

    def reset_stats(self) -> None:
        self._stats = AgentStats()

    def _make_system_message(self, content: str) -> dict[str, str]:
        return {"role": "system", "content": content}

    def _make_user_message(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


# =============================================================================
# Collaborator interfaces
# =============================================================================

class ExtractorAgent(ABC):
    """A Stage-2 extractor bound to one collection slice."""

    key: ClassVar[ExtractorKey]

    @abstractmethod
    async def extract(
        self, document: str, context: ExtractionContext
    ) -> list[StoryEntity] | World | None:
        """Entities for this extractor's slice (World or None for the world variant)."""


class DocumentAnalyzer(ABC):
    """Stage 1."""

    @abstractmethod
    async def analyze(self, document: str) -> DocumentAnalysis:
        ...


class RelationshipMapper(ABC):
    """Stage 3."""

    @abstractmethod
    async def map_relationships(
        self, document: str, collections: EntityCollections, analysis: DocumentAnalysis
    ) -> Relationships:
        ...


class GapAnalyzer(ABC):
    """Stage 4."""

    @abstractmethod
    async def find_gaps(
        self, document: str, collections: EntityCollections, analysis: DocumentAnalysis
    ) -> GapReport:
        ...


class CategoryResolver(ABC):
    """Stage 4.5: decides which category a duplicated name belongs to."""

    @abstractmethod
    async def resolve(self, groups: list[DuplicateGroup]) -> list[CategoryDecision]:
        ...
