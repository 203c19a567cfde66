"""
Extraction agents for story bible generation.

Stage collaborators driven by the pipeline orchestrator:

1. DocumentAnalyzer - document type, content density, chapter structure (Stage 1)
2. Seven extractors - characters, world, locations, items, factions, lore,
   events, run concurrently (Stage 2)
3. RelationshipMapper - connections between extracted entities (Stage 3)
4. GapAnalyzer - inferred attributes, world enhancements, synopsis (Stage 4)
5. CategoryResolver - the right category for cross-category duplicates
   (Stage 4.5, optional)

Usage:
    from storybible.agents import build_agent_suite
    from storybible.llm import get_llm_client

    suite = build_agent_suite(get_llm_client())
"""

from __future__ import annotations

from dataclasses import dataclass

from storybible.agents.analyzer import LLMDocumentAnalyzer, parse_chapter_structure
from storybible.agents.base import (
    AgentStats,
    BaseAgent,
    CategoryResolver,
    DocumentAnalyzer,
    ExtractorAgent,
    GapAnalyzer,
    RelationshipMapper,
    parse_json_reply,
)
from storybible.agents.categories import LLMCategoryResolver
from storybible.agents.extractors import (
    CharacterExtractor,
    EventExtractor,
    FactionExtractor,
    ItemExtractor,
    LocationExtractor,
    LoreExtractor,
    WorldExtractor,
    build_extractors,
)
from storybible.agents.gaps import LLMGapAnalyzer, apply_gap_report
from storybible.agents.models import (
    DocumentAnalysis,
    EntityInference,
    ExtractionContext,
    ExtractionOptions,
    GapReport,
    InferredValue,
)
from storybible.agents.relationships import LLMRelationshipMapper
from storybible.llm.providers import LLMProvider


@dataclass
class AgentSuite:
    """Every collaborator one pipeline run needs."""
    analyzer: DocumentAnalyzer
    extractors: list[ExtractorAgent]
    relationship_mapper: RelationshipMapper
    gap_analyzer: GapAnalyzer
    category_resolver: CategoryResolver | None = None


def build_agent_suite(llm: LLMProvider, model: str | None = None) -> AgentSuite:
    return AgentSuite(
        analyzer=LLMDocumentAnalyzer(llm, model),
        extractors=build_extractors(llm, model),
        relationship_mapper=LLMRelationshipMapper(llm, model),
        gap_analyzer=LLMGapAnalyzer(llm, model),
        category_resolver=LLMCategoryResolver(llm, model),
    )


__all__ = [
    # Base
    "AgentStats",
    "BaseAgent",
    "CategoryResolver",
    "DocumentAnalyzer",
    "ExtractorAgent",
    "GapAnalyzer",
    "RelationshipMapper",
    "parse_json_reply",
    # Models
    "DocumentAnalysis",
    "EntityInference",
    "ExtractionContext",
    "ExtractionOptions",
    "GapReport",
    "InferredValue",
    # Agents
    "CharacterExtractor",
    "EventExtractor",
    "FactionExtractor",
    "ItemExtractor",
    "LLMCategoryResolver",
    "LLMDocumentAnalyzer",
    "LLMGapAnalyzer",
    "LLMRelationshipMapper",
    "LocationExtractor",
    "LoreExtractor",
    "WorldExtractor",
    "apply_gap_report",
    "build_extractors",
    "parse_chapter_structure",
    # Suite
    "AgentSuite",
    "build_agent_suite",
]
