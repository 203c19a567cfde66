"""
Gap Analyzer (Stage 4) - infers missing character and location attributes,
enriches the world description and suggests a synopsis.

``apply_gap_report`` writes accepted inferences back into the collections:
a value is applied only when the field is missing or "unknown" and the
confidence is not low.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from storybible.agents.base import BaseAgent, GapAnalyzer, parse_json_reply
from storybible.agents.models import DocumentAnalysis, EntityInference, GapReport
from storybible.pipeline.models import EntityCollections, StoryEntity, Synopsis, World

logger = logging.getLogger(__name__)

SAMPLE_CHARS = 15_000

# Fields the analyzer is asked to fill
CHARACTER_GAP_FIELDS = ("gender", "age_group", "voice_description", "appearance", "role")
LOCATION_GAP_FIELDS = ("atmosphere", "location_type")

SYSTEM_PROMPT = """You are a story analyst filling gaps in an extracted story bible.

Infer missing attributes from context clues. Be honest about confidence:
high = strongly implied by the text, medium = reasonable inference, low = guess.

Return JSON:
{
  "character_inferences": [
    {
      "name": "character name",
      "inferred_fields": {
        "gender": { "value": "...", "confidence": "high|medium|low", "reasoning": "why" },
        "age_group": { "value": "...", "confidence": "...", "reasoning": "..." },
        "voice_description": { "value": "...", "confidence": "...", "reasoning": "..." },
        "appearance": { "value": "...", "confidence": "...", "reasoning": "..." },
        "role": { "value": "...", "confidence": "...", "reasoning": "..." }
      }
    }
  ],
  "location_inferences": [
    {
      "name": "location name",
      "inferred_fields": {
        "atmosphere": { "value": "...", "confidence": "...", "reasoning": "..." },
        "location_type": { "value": "...", "confidence": "...", "reasoning": "..." }
      }
    }
  ],
  "world_enhancements": { "genre": "...", "tone": "...", "time_period": "..." },
  "synopsis_suggestion": {
    "title": "suggested story title based on content",
    "synopsis": "2-3 paragraph summary: main characters, central conflict, setting, key plot points"
  },
  "completeness_score": number (0-100)
}"""


def _is_missing(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, str) and value.strip().lower() == "unknown")


def _missing_fields(entity: StoryEntity, fields: tuple[str, ...]) -> list[str]:
    return [f for f in fields if _is_missing(getattr(entity, f, None))]


def _parse_inferences(raw: Any) -> list[EntityInference]:
    if not isinstance(raw, list):
        return []
    inferences: list[EntityInference] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        fields = entry.get("inferred_fields")
        if isinstance(fields, dict):
            # Drop fields whose value is not an {value, confidence} object
            entry = {**entry, "inferred_fields": {k: v for k, v in fields.items() if isinstance(v, dict)}}
        try:
            inferences.append(EntityInference.model_validate(entry))
        except ValidationError:
            logger.debug("Skipping malformed inference entry: %r", entry.get("name"))
    return inferences


def parse_gap_report(data: dict[str, Any]) -> GapReport:
    synopsis_raw = data.get("synopsis_suggestion") or data.get("synopsis")
    synopsis = None
    if isinstance(synopsis_raw, dict) and (synopsis_raw.get("title") or synopsis_raw.get("synopsis")):
        synopsis = Synopsis(title=synopsis_raw.get("title"), synopsis=synopsis_raw.get("synopsis"))

    score = data.get("completeness_score")
    if score is None and isinstance(data.get("quality_assessment"), dict):
        score = data["quality_assessment"].get("completeness_score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        score = None

    enhancements = data.get("world_enhancements")
    return GapReport(
        character_inferences=_parse_inferences(data.get("character_inferences")),
        location_inferences=_parse_inferences(data.get("location_inferences")),
        world_enhancements=enhancements if isinstance(enhancements, dict) else {},
        synopsis=synopsis,
        completeness_score=score,
    )


@lru_cache(maxsize=None)
def _field_adapter(model: type[BaseModel], field: str) -> TypeAdapter | None:
    info = model.model_fields.get(field)
    return None if info is None else TypeAdapter(info.annotation)


def _coerce(model: type[BaseModel], field: str, value: Any) -> tuple[bool, Any]:
    """Validate one inferred value against the declared field type.

    Undeclared fields are kept as extras without checking.
    """
    adapter = _field_adapter(model, field)
    if adapter is None:
        return True, value
    try:
        return True, adapter.validate_python(value)
    except ValidationError:
        logger.debug("Discarding inferred %s.%s=%r: wrong type", model.__name__, field, value)
        return False, None


def _apply_to_entities(entities: list[StoryEntity], inferences: list[EntityInference]) -> int:
    by_name = {entity.label.lower(): entity for entity in entities if entity.label}
    applied = 0
    for inference in inferences:
        entity = by_name.get(inference.name.strip().lower())
        if entity is None:
            continue
        for field, inferred in inference.inferred_fields.items():
            if field in ("id", "name", "title", "inferred_fields"):
                continue
            if inferred.confidence == "low" or _is_missing(inferred.value):
                continue
            if not _is_missing(getattr(entity, field, None)):
                continue
            valid, value = _coerce(type(entity), field, inferred.value)
            if not valid:
                continue
            setattr(entity, field, value)
            entity.inferred_fields[field] = inferred.confidence
            applied += 1
    return applied


def apply_gap_report(collections: EntityCollections, report: GapReport) -> int:
    """Apply accepted inferences in place. Returns the number of fields filled.

    Values that do not fit the declared type of their field are dropped.
    """
    applied = _apply_to_entities(collections.characters, report.character_inferences)
    applied += _apply_to_entities(collections.locations, report.location_inferences)

    enhancements: dict[str, Any] = {}
    for field, raw in report.world_enhancements.items():
        if _is_missing(raw):
            continue
        valid, value = _coerce(World, field, raw)
        if valid:
            enhancements[field] = value
    if enhancements:
        if collections.world is None:
            collections.world = World(**enhancements)
        else:
            for field, value in enhancements.items():
                if _is_missing(getattr(collections.world, field, None)):
                    setattr(collections.world, field, value)

    if report.synopsis is not None:
        collections.synopsis = report.synopsis
    return applied


class LLMGapAnalyzer(BaseAgent, GapAnalyzer):
    """LLM-backed Stage-4 analyzer."""

    @property
    def name(self) -> str:
        return "GapAnalyzer"

    def _build_prompt(self, document: str, collections: EntityCollections) -> str:
        characters = [
            {"name": c.name, "description": c.description, "missing": missing}
            for c in collections.characters
            if (missing := _missing_fields(c, CHARACTER_GAP_FIELDS))
        ]
        locations = [
            {"name": l.name, "description": l.description, "missing": missing}
            for l in collections.locations
            if (missing := _missing_fields(l, LOCATION_GAP_FIELDS))
        ]
        world = collections.world.model_dump(exclude_none=True) if collections.world else {}
        known = [
            rel.model_dump(exclude_none=True)
            for rel in collections.relationships.character_relationships[:20]
        ]
        return (
            "Analyze these extracted entities and fill in missing details:\n\n"
            f"WORLD:\n{json.dumps(world, ensure_ascii=False, indent=2)}\n\n"
            f"CHARACTERS NEEDING DETAIL ({len(characters)}):\n"
            f"{json.dumps(characters, ensure_ascii=False, indent=2)}\n\n"
            f"LOCATIONS NEEDING DETAIL ({len(locations)}):\n"
            f"{json.dumps(locations, ensure_ascii=False, indent=2)}\n\n"
            f"KNOWN RELATIONSHIPS:\n{json.dumps(known, ensure_ascii=False, indent=2)}\n\n"
            f"ORIGINAL TEXT SAMPLE (for context):\n{document[:SAMPLE_CHARS]}"
        )

    async def find_gaps(
        self, document: str, collections: EntityCollections, analysis: DocumentAnalysis
    ) -> GapReport:
        response = await self.llm_call(
            messages=[
                self._make_system_message(SYSTEM_PROMPT),
                self._make_user_message(self._build_prompt(document, collections)),
            ],
            temperature=0.4,
            max_tokens=8000,
        )
        report = parse_gap_report(parse_json_reply(response.content))
        logger.info(
            "Gap analysis complete - %d character and %d location inferences, synopsis: %s",
            len(report.character_inferences),
            len(report.location_inferences),
            "yes" if report.synopsis else "no",
        )
        return report
