"""
Category Resolver (Stage 4.5) - asks the model where each cross-category
duplicate really belongs. The reconciler falls back to category precedence
for any group the resolver does not rule on.
"""

from __future__ import annotations

import logging
from typing import Any

from storybible.agents.base import BaseAgent, CategoryResolver, parse_json_reply
from storybible.pipeline.deduplication import CategoryDecision, DuplicateGroup
from storybible.pipeline.models import CATEGORY_SLICES

logger = logging.getLogger(__name__)

DESCRIPTION_CHARS = 100

SYSTEM_PROMPT = """You are an expert at categorizing story elements. Each group below is one name
that was extracted into more than one category. Decide the single correct category.

CATEGORY DEFINITIONS:
- character: living beings that can act (people, named animals, sentient creatures)
- location: physical places (buildings, cities, regions, planets)
- item: physical objects that can be owned or used (weapons, vehicles, artifacts, tools)
- faction: organizations or groups with several members (guilds, kingdoms, companies)
- lore: abstract knowledge (history, rules, customs, prophecies), never physical things

RULES:
1. Named vehicles ("The Gyrocopter") are items, not locations
2. Named animals with a personality or an owner are characters, not lore creatures
3. A building is a location; the organization inside it is a faction
4. A specific named object is an item; a general type of object is lore
5. A specific named group is a faction; a general social structure is lore

Return JSON:
{
  "decisions": [
    {
      "name": "the group name",
      "correct_category": "character|location|item|faction|lore",
      "remove_from": ["categories to remove it from"],
      "reasoning": "brief explanation"
    }
  ]
}"""


def _describe(group: DuplicateGroup) -> str:
    lines = [f'DUPLICATE GROUP: "{group.key}"']
    for ref in group.members:
        description = group.descriptions.get(ref.id, "")[:DESCRIPTION_CHARS] or "no description"
        lines.append(f'- {ref.category.upper()}: "{ref.name}" - {description}')
    return "\n".join(lines)


def parse_decisions(data: dict[str, Any]) -> list[CategoryDecision]:
    """Decisions with a name and a known category; anything else is dropped."""
    raw = data.get("decisions")
    decisions: list[CategoryDecision] = []
    for entry in raw if isinstance(raw, list) else []:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        category = entry.get("correct_category") or entry.get("category")
        if not isinstance(name, str) or not name.strip():
            continue
        if not isinstance(category, str) or category.lower() not in CATEGORY_SLICES:
            logger.debug("Skipping decision for %r with category %r", name, category)
            continue
        reasoning = entry.get("reasoning")
        decisions.append(
            CategoryDecision(
                name=name,
                category=category.lower(),
                reasoning=reasoning if isinstance(reasoning, str) else None,
            )
        )
    return decisions


class LLMCategoryResolver(BaseAgent, CategoryResolver):
    """LLM-backed category resolver."""

    @property
    def name(self) -> str:
        return "CategoryResolver"

    async def resolve(self, groups: list[DuplicateGroup]) -> list[CategoryDecision]:
        if not groups:
            return []
        response = await self.llm_call(
            messages=[
                self._make_system_message(SYSTEM_PROMPT),
                self._make_user_message(
                    "Resolve these duplicates:\n\n" + "\n---\n".join(_describe(g) for g in groups)
                ),
            ],
            temperature=0.1,
            max_tokens=2000,
        )
        decisions = parse_decisions(parse_json_reply(response.content, "decisions"))
        logger.info("Category resolver ruled on %d of %d group(s)", len(decisions), len(groups))
        return decisions
