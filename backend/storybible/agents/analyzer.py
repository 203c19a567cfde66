"""
Document Analyzer (Stage 1) - identifies document type, content density and
any explicit chapter structure so the extractors know what to expect.
"""

from __future__ import annotations

import logging
from typing import Any, get_args

from pydantic import ValidationError

from storybible.agents.base import BaseAgent, DocumentAnalyzer, parse_json_reply
from storybible.agents.models import DocumentAnalysis
from storybible.pipeline.errors import AgentResponseError
from storybible.pipeline.models import Chapter, ChapterStructure, StructureType

logger = logging.getLogger(__name__)

# Stage 1 only needs a representative sample
ANALYSIS_SAMPLE_CHARS = 15_000

SYSTEM_PROMPT = """You are a document structure analyst. Analyze the given text and identify:
1. Document type (novel excerpt, character sheet, campaign notes, worldbuilding notes, outline, mixed)
2. Content density for each entity type
3. Writing style and format clues
4. Potential extraction challenges

Return JSON:
{
  "document_type": "string",
  "estimated_word_count": number,
  "content_estimates": {
    "characters": number,
    "locations": number,
    "items": number,
    "factions": number,
    "lore": number,
    "events": number
  },
  "extraction_hints": {
    "character_naming_style": "full_names|first_names|nicknames|titles|mixed",
    "location_format": "hierarchical|flat|embedded",
    "has_explicit_sections": boolean,
    "dialogue_heavy": boolean
  },
  "warnings": ["any potential issues or ambiguities"]
}"""

# Keys some replies use instead of the collection slice names
_ESTIMATE_ALIASES = {"lore_entries": "lore"}


def _flatten_estimates(raw: Any) -> dict[str, int]:
    """Accept both ``{"characters": 4}`` and ``{"characters": {"count": 4}}``."""
    if not isinstance(raw, dict):
        return {}
    estimates: dict[str, int] = {}
    for key, value in raw.items():
        if isinstance(value, dict):
            value = value.get("count")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        estimates[_ESTIMATE_ALIASES.get(key, key)] = int(value)
    return estimates


# Chapter headers need a wider window than the density sample
STRUCTURE_SAMPLE_CHARS = 50_000

STRUCTURE_PROMPT = """You are a document structure analyzer. Extract the chapter or section structure
that is EXPLICITLY written in this document, and nothing else.

Look for:
- Numbered chapters ("Chapter 1", "CHAPTER ONE", "Ch. 1", "1. Title")
- Named divisions ("Act 1", "Part One", "Section 1", "Book One")
- Outline headers ("## Chapter Title", numbered outline items with titles)
- Prologue and epilogue sections

Rules:
- Keep titles and numbering exactly as written
- Capture a summary only when the document provides one
- Never invent chapters; with no explicit structure, return has_explicit_structure false

Return JSON:
{
  "has_explicit_structure": boolean,
  "structure_type": "chapters|acts|parts|sections|outline|none",
  "chapters": [
    {
      "number": 1,
      "title": "exact title",
      "subtitle": "subtitle if present",
      "summary": "summary if the document gives one",
      "source_line": "the header line that defines this chapter"
    }
  ],
  "notes": "observations about the structure"
}"""

_STRUCTURE_TYPES = frozenset(get_args(StructureType))


def _chapter_number(raw: Any, fallback: int) -> int:
    if isinstance(raw, bool):
        return fallback
    try:
        return int(raw)
    except (TypeError, ValueError):
        return fallback


def parse_chapter_structure(data: dict[str, Any]) -> ChapterStructure:
    """Build a ChapterStructure from a reply, skipping malformed chapters."""
    chapters: list[Chapter] = []
    raw_chapters = data.get("chapters")
    for index, raw in enumerate(raw_chapters if isinstance(raw_chapters, list) else [], start=1):
        if not isinstance(raw, dict):
            continue
        try:
            chapters.append(
                Chapter.model_validate({**raw, "number": _chapter_number(raw.get("number"), index)})
            )
        except ValidationError:
            logger.debug("Skipping malformed chapter entry %d", index)

    notes = data.get("notes") if isinstance(data.get("notes"), str) else None
    if not data.get("has_explicit_structure") or not chapters:
        return ChapterStructure(notes=notes)

    structure_type = data.get("structure_type")
    if structure_type not in _STRUCTURE_TYPES or structure_type == "none":
        structure_type = "chapters"
    return ChapterStructure(
        has_explicit_structure=True,
        structure_type=structure_type,
        chapters=chapters,
        notes=notes,
    )


class LLMDocumentAnalyzer(BaseAgent, DocumentAnalyzer):
    """LLM-backed Stage-1 analyzer."""

    @property
    def name(self) -> str:
        return "DocumentAnalyzer"

    async def analyze(self, document: str) -> DocumentAnalysis:
        sample = document[:ANALYSIS_SAMPLE_CHARS]
        if len(document) > ANALYSIS_SAMPLE_CHARS:
            sample += f"\n\n[Document truncated for analysis - full text is {len(document)} characters]"

        response = await self.llm_call(
            messages=[
                self._make_system_message(SYSTEM_PROMPT),
                self._make_user_message(f"Analyze this document and provide extraction guidance:\n\n{sample}"),
            ],
            temperature=0.3,
            max_tokens=4000,
        )
        data = parse_json_reply(response.content)
        data["content_estimates"] = _flatten_estimates(data.get("content_estimates"))
        if not data.get("estimated_word_count"):
            data["estimated_word_count"] = len(document.split())
        if not isinstance(data.get("extraction_hints"), dict):
            data.pop("extraction_hints", None)
        data.pop("chapter_structure", None)

        try:
            analysis = DocumentAnalysis.model_validate(data)
        except ValidationError as e:
            raise AgentResponseError(f"Malformed document analysis: {e.error_count()} errors") from e
        analysis.chapter_structure = await self.detect_chapter_structure(document)

        logger.info(
            "Document analysis complete - type: %s, ~%d words, density: %s, chapters: %d",
            analysis.document_type,
            analysis.estimated_word_count,
            analysis.entity_density,
            analysis.chapter_structure.total_chapters,
        )
        return analysis

    async def detect_chapter_structure(self, document: str) -> ChapterStructure:
        """
        Explicit chapter or section divisions in the document.

        Never fails the stage: on any error the document is treated as having
        no explicit structure.
        """
        try:
            response = await self.llm_call(
                messages=[
                    self._make_system_message(STRUCTURE_PROMPT),
                    self._make_user_message(
                        "Extract the exact chapter structure from this document. Only report "
                        "divisions that are explicitly defined.\n\n"
                        f"DOCUMENT TEXT:\n{document[:STRUCTURE_SAMPLE_CHARS]}"
                    ),
                ],
                temperature=0.1,
                max_tokens=8000,
            )
            structure = parse_chapter_structure(parse_json_reply(response.content))
        except Exception as e:
            logger.warning("Chapter structure detection failed: %s", e, exc_info=True)
            return ChapterStructure(notes=f"Detection failed: {e}")

        logger.info(
            "Chapter structure - %s, %d divisions",
            structure.structure_type,
            structure.total_chapters,
        )
        return structure
