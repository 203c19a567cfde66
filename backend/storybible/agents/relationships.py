"""
Relationship Mapper (Stage 3) - cross-references the extracted entities and
maps the connections between them.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from storybible.agents.base import BaseAgent, RelationshipMapper, parse_json_reply
from storybible.agents.models import DocumentAnalysis
from storybible.pipeline.models import (
    RELATIONSHIP_CATEGORIES,
    EntityCollections,
    Relationship,
    Relationships,
)

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 60_000

SYSTEM_PROMPT = """You are an expert at mapping the connections inside a story world.

You receive the entities already extracted from a document and the document itself.
Only connect entities from the provided lists.

Return JSON with these arrays (each entry: {"source", "target", "relationship_type", "description"}):
{
  "character_relationships": [],   // character -> character (family, romantic, professional, rivalry)
  "character_location_links": [],  // character -> location (lives, works, born, visits)
  "character_lore_links": [],      // character -> lore entry
  "character_item_links": [],      // character -> item (owns, wields, seeks)
  "character_faction_links": [],   // character -> faction (leads, serves, opposes)
  "faction_memberships": [],       // member character -> faction
  "location_hierarchy": [],        // child location -> parent location
  "location_ownership": [],        // location -> owning character or faction
  "location_lore_links": [],       // location -> lore entry
  "lore_connections": [],          // lore entry -> lore entry
  "relationship_density": "low|medium|high (how interconnected are the characters)"
}"""

# Endpoint names found in replies besides source/target
_SOURCE_KEYS = ("source", "character_a", "character", "child", "member", "location", "from")
_TARGET_KEYS = ("target", "character_b", "parent", "faction", "owner", "lore", "item", "location", "to")

_DENSITY_KEYS = ("relationship_density", "relationship_density_score", "density")


def _endpoint(
    entry: dict[str, Any], keys: tuple[str, ...], skip: str | None = None
) -> tuple[str | None, str | None]:
    """First (key, value) among keys holding a non-empty string."""
    for key in keys:
        if key == skip:
            continue
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return key, value.strip()
    return None, None


def normalize_relationship(entry: Any) -> Relationship | None:
    """Map one reply entry onto Relationship, or None if an endpoint is missing."""
    if not isinstance(entry, dict):
        return None
    source_key, source = _endpoint(entry, _SOURCE_KEYS)
    _, target = _endpoint(entry, _TARGET_KEYS, skip=source_key)
    if not source or not target:
        return None
    extra = {k: v for k, v in entry.items() if k not in (*_SOURCE_KEYS, *_TARGET_KEYS)}
    try:
        return Relationship.model_validate({**extra, "source": source, "target": target})
    except ValidationError:
        return None


def parse_relationships(data: dict[str, Any]) -> Relationships:
    relationships = Relationships()
    dropped = 0
    for category in RELATIONSHIP_CATEGORIES:
        raw = data.get(category) or []
        if not isinstance(raw, list):
            dropped += 1
            continue
        parsed = [normalize_relationship(entry) for entry in raw]
        dropped += sum(1 for rel in parsed if rel is None)
        setattr(relationships, category, [rel for rel in parsed if rel is not None])

    for key in _DENSITY_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.lower() in ("low", "medium", "high"):
            relationships.density = value.lower()
            break

    if dropped:
        logger.warning("Relationship mapping dropped %d malformed entries", dropped)
    return relationships


class LLMRelationshipMapper(BaseAgent, RelationshipMapper):
    """LLM-backed Stage-3 mapper."""

    @property
    def name(self) -> str:
        return "RelationshipMapper"

    def _entity_summary(self, collections: EntityCollections) -> str:
        summary = {
            "characters": [c.name for c in collections.characters],
            "locations": [l.name for l in collections.locations],
            "items": [i.name for i in collections.items],
            "factions": [f.name for f in collections.factions],
            "lore": [l.title for l in collections.lore],
        }
        return json.dumps(summary, ensure_ascii=False, indent=2)

    async def map_relationships(
        self, document: str, collections: EntityCollections, analysis: DocumentAnalysis
    ) -> Relationships:
        if not collections.characters and not collections.locations:
            logger.info("No characters or locations extracted - skipping relationship mapping")
            return Relationships(density="low")

        response = await self.llm_call(
            messages=[
                self._make_system_message(SYSTEM_PROMPT),
                self._make_user_message(
                    f"Extracted entities:\n{self._entity_summary(collections)}\n\n"
                    f"Document ({analysis.document_type}):\n\n{document[:MAX_DOCUMENT_CHARS]}"
                ),
            ],
            temperature=0.2,
            max_tokens=12000,
        )
        relationships = parse_relationships(parse_json_reply(response.content))
        logger.info(
            "Relationship mapping complete - %d links, density: %s",
            relationships.total(),
            relationships.density,
        )
        return relationships
