"""
Stage-2 extractors.

One agent per collection slice. They share the document and the Stage-1
analysis, never each other's output, so the orchestrator runs all seven
concurrently.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from pydantic import ValidationError

from storybible.agents.base import BaseAgent, ExtractorAgent, parse_json_reply
from storybible.agents.models import ExtractionContext
from storybible.llm.providers import LLMProvider
from storybible.pipeline.errors import AgentResponseError
from storybible.pipeline.models import (
    Character,
    ExtractorKey,
    Faction,
    Item,
    Location,
    LoreEntry,
    StoryEntity,
    StoryEvent,
    World,
)

logger = logging.getLogger(__name__)

# Longest document excerpt sent to a single extractor call
MAX_PROMPT_CHARS = 120_000

# Fields assigned by the pipeline, never taken from a reply
_PIPELINE_FIELDS = ("id", "inferred_fields")


def _document_excerpt(document: str) -> str:
    if len(document) <= MAX_PROMPT_CHARS:
        return document
    return (
        document[:MAX_PROMPT_CHARS]
        + f"\n\n[Document truncated - full text is {len(document)} characters]"
    )


CHARACTER_PROMPT = """You are an expert at identifying characters in fiction and worldbuilding documents.

Extract EVERY character: people, named animals with personality or owners, and sentient creatures.
Include minor characters mentioned only once.

Return JSON:
{
  "characters": [
    {
      "name": "string (required)",
      "role": "protagonist|antagonist|supporting|minor|mentioned",
      "description": "string",
      "gender": "string or null",
      "age_group": "child|teen|young adult|adult|elderly|unknown",
      "species": "string or null",
      "appearance": "string or null",
      "personality": "string or null",
      "voice_description": "how they speak, or null",
      "is_deceased": boolean,
      "is_animal_companion": boolean
    }
  ]
}"""

LOCATION_PROMPT = """You are an expert at identifying places in fiction and worldbuilding documents.

Extract every location from planets down to single rooms. Record the containing location
in parent_name when the text makes it clear.

Return JSON:
{
  "locations": [
    {
      "name": "string (required)",
      "location_type": "planet|continent|country|region|city|town|village|district|building|room|wilderness|landmark|other",
      "description": "string",
      "atmosphere": "string describing the feel/mood",
      "parent_name": "string or null - name of containing location"
    }
  ]
}"""

ITEM_PROMPT = """You are an expert at identifying significant objects in fiction and worldbuilding documents.

Extract named or plot-relevant objects: weapons, vehicles, artifacts, tools, documents.
Named vehicles are items, not locations.

Return JSON:
{
  "items": [
    {
      "name": "string (required)",
      "item_type": "weapon|armor|vehicle|artifact|tool|document|clothing|other",
      "description": "string",
      "rarity": "common|uncommon|rare|legendary|artifact|unique",
      "is_magical": boolean,
      "current_owner": "character name or null"
    }
  ]
}"""

FACTION_PROMPT = """You are an expert at identifying organizations in fiction and worldbuilding documents.

Extract specific named groups with multiple members: guilds, houses, kingdoms, companies,
orders, gangs. General social structures belong to lore, not here.

Return JSON:
{
  "factions": [
    {
      "name": "string (required)",
      "faction_type": "military|political|religious|criminal|merchant|family|academic|other",
      "alignment": "string or null",
      "description": "string",
      "leader": "character name or null"
    }
  ]
}"""

LORE_PROMPT = """You are an expert at identifying world knowledge in fiction and worldbuilding documents.

Extract abstract knowledge: history, legends, prophecies, customs, laws, rules of magic,
creature types. Physical named things belong to other categories.

Return JSON:
{
  "lore": [
    {
      "title": "descriptive title (required)",
      "entry_type": "history|legend|prophecy|custom|law|magic|religion|creature|language|other",
      "content": "detailed explanation",
      "description": "one line summary"
    }
  ]
}"""

EVENT_PROMPT = """You are an expert at identifying plot events in fiction and worldbuilding documents.

Extract significant events in story order: battles, deaths, discoveries, betrayals, meetings.

Return JSON:
{
  "events": [
    {
      "name": "short event name (required)",
      "description": "what happens",
      "importance": "major|minor",
      "characters_involved": ["character names"],
      "location": "location name or null"
    }
  ]
}"""

WORLD_PROMPT = """You are an expert at analyzing story settings.

Describe the world the document takes place in.

Return JSON:
{
  "world": {
    "name": "world/setting name if mentioned, or descriptive name",
    "description": "comprehensive description of the setting",
    "genre": "fantasy|sci-fi|contemporary|historical|horror|romance|thriller|mystery|other",
    "time_period": "when the story takes place",
    "technology_level": "description of technology available",
    "magic_system": "description of magic if present, or null",
    "tone": "dark|light|gritty|whimsical|serious|comedic|mixed"
  }
}"""


class LLMExtractor(BaseAgent, ExtractorAgent):
    """Shared reply handling for the list-valued extractors."""

    list_key: ClassVar[str]
    entity_model: ClassVar[type[StoryEntity]]
    system_prompt: ClassVar[str]
    max_tokens: ClassVar[int] = 8000
    temperature: ClassVar[float] = 0.3

    @property
    def name(self) -> str:
        return self.key.value

    def build_prompt(self, document: str, context: ExtractionContext) -> str:
        analysis = context.analysis
        lines = [f"Document type: {analysis.document_type}"]
        estimate = analysis.content_estimates.get(self.list_key)
        if estimate:
            lines.append(f"Expected roughly {estimate} {self.list_key}.")
        if context.options.title:
            lines.append(f"Title: {context.options.title}")
        lines.append("")
        lines.append(f"Extract all {self.list_key} from this document:")
        lines.append("")
        lines.append(_document_excerpt(document))
        return "\n".join(lines)

    async def _request(self, document: str, context: ExtractionContext) -> dict[str, Any]:
        response = await self.llm_call(
            messages=[
                self._make_system_message(self.system_prompt),
                self._make_user_message(self.build_prompt(document, context)),
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return parse_json_reply(response.content, self.list_key)

    def parse_entities(self, raw: Any) -> list[StoryEntity]:
        """Validate reply entries, skipping the malformed ones."""
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise AgentResponseError(f"'{self.list_key}' should be a list, got {type(raw).__name__}")

        entities: list[StoryEntity] = []
        skipped = 0
        for item in raw:
            if not isinstance(item, dict):
                skipped += 1
                continue
            cleaned = {k: v for k, v in item.items() if k not in _PIPELINE_FIELDS}
            try:
                entities.append(self.entity_model.model_validate(cleaned))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning("%s skipped %d malformed entries", self.name, skipped)
        return entities

    async def extract(self, document: str, context: ExtractionContext) -> list[StoryEntity]:
        context.detail(f"{self.name}: scanning for {self.list_key}")
        data = await self._request(document, context)
        entities = self.parse_entities(data.get(self.list_key))
        context.detail(f"{self.name}: found {len(entities)} {self.list_key}")
        logger.info("%s extracted %d %s", self.name, len(entities), self.list_key)
        return entities


class CharacterExtractor(LLMExtractor):
    key = ExtractorKey.CHARACTER
    list_key = "characters"
    entity_model = Character
    system_prompt = CHARACTER_PROMPT
    max_tokens = 16000


class LocationExtractor(LLMExtractor):
    key = ExtractorKey.LOCATION
    list_key = "locations"
    entity_model = Location
    system_prompt = LOCATION_PROMPT


class ItemExtractor(LLMExtractor):
    key = ExtractorKey.ITEM
    list_key = "items"
    entity_model = Item
    system_prompt = ITEM_PROMPT


class FactionExtractor(LLMExtractor):
    key = ExtractorKey.FACTION
    list_key = "factions"
    entity_model = Faction
    system_prompt = FACTION_PROMPT


class LoreExtractor(LLMExtractor):
    key = ExtractorKey.LORE
    list_key = "lore"
    entity_model = LoreEntry
    system_prompt = LORE_PROMPT


class EventExtractor(LLMExtractor):
    key = ExtractorKey.EVENT
    list_key = "events"
    entity_model = StoryEvent
    system_prompt = EVENT_PROMPT


class WorldExtractor(BaseAgent, ExtractorAgent):
    """The one extractor whose slice is a single object."""

    key = ExtractorKey.WORLD

    @property
    def name(self) -> str:
        return self.key.value

    async def extract(self, document: str, context: ExtractionContext) -> World | None:
        context.detail(f"{self.name}: analyzing the setting")
        response = await self.llm_call(
            messages=[
                self._make_system_message(WORLD_PROMPT),
                self._make_user_message(
                    f"Document type: {context.analysis.document_type}\n\n"
                    f"Describe the world of this document:\n\n{_document_excerpt(document)}"
                ),
            ],
            temperature=0.3,
            max_tokens=4000,
        )
        data = parse_json_reply(response.content)
        raw = data.get("world")
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise AgentResponseError(f"'world' should be an object, got {type(raw).__name__}")
        try:
            world = World.model_validate(raw)
        except ValidationError as e:
            raise AgentResponseError(f"Malformed world description: {e.error_count()} errors") from e
        logger.info("%s extracted world '%s'", self.name, world.name)
        return world


EXTRACTOR_CLASSES: tuple[type[ExtractorAgent], ...] = (
    CharacterExtractor,
    WorldExtractor,
    LocationExtractor,
    ItemExtractor,
    FactionExtractor,
    LoreExtractor,
    EventExtractor,
)


def build_extractors(llm: LLMProvider, model: str | None = None) -> list[ExtractorAgent]:
    """One instance of every extractor, sharing a provider."""
    return [cls(llm, model) for cls in EXTRACTOR_CLASSES]  # type: ignore[call-arg]
