"""
Pydantic models for stage collaborator inputs and outputs.

Entity types themselves live in storybible.pipeline.models; this module holds
what the analyzer, the extractors and the gap analyzer exchange with the
orchestrator.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from storybible.pipeline.models import ChapterStructure, Density, Synopsis, WireModel

# =============================================================================
# Stage 1: Document Analysis
# =============================================================================

# Estimated entities per 1000 words at which density becomes medium / high
_DENSITY_THRESHOLDS = (5.0, 15.0)


class DocumentAnalysis(WireModel):
    """Document signals produced by Stage 1 and handed to every later stage."""

    model_config = ConfigDict(extra="allow")

    document_type: str = "unknown"
    estimated_word_count: int = 0
    content_estimates: dict[str, int] = Field(default_factory=dict)
    extraction_hints: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    chapter_structure: ChapterStructure = Field(default_factory=ChapterStructure)

    @property
    def entity_density(self) -> Density:
        words = max(self.estimated_word_count, 1)
        per_thousand = sum(self.content_estimates.values()) * 1000 / words
        low, high = _DENSITY_THRESHOLDS
        if per_thousand >= high:
            return "high"
        if per_thousand >= low:
            return "medium"
        return "low"


# =============================================================================
# Stage 2: Extraction context
# =============================================================================

class ExtractionOptions(WireModel):
    """Caller supplied options for a session."""

    model_config = ConfigDict(extra="allow")

    library_id: str | None = None
    title: str | None = None


class ExtractionContext(BaseModel):
    """What every extractor receives alongside the document."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    analysis: DocumentAnalysis
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)
    report_detail: Callable[[str], None] | None = None

    def detail(self, message: str) -> None:
        """Send an advisory progress line, if anyone is listening."""
        if self.report_detail is not None:
            self.report_detail(message)


# =============================================================================
# Stage 4: Gap Analysis
# =============================================================================

Confidence = Literal["high", "medium", "low"]


class InferredValue(WireModel):
    value: Any = None
    confidence: Confidence = "medium"
    reasoning: str | None = None


class EntityInference(WireModel):
    name: str
    inferred_fields: dict[str, InferredValue] = Field(default_factory=dict)


class GapReport(WireModel):
    character_inferences: list[EntityInference] = Field(default_factory=list)
    location_inferences: list[EntityInference] = Field(default_factory=list)
    world_enhancements: dict[str, Any] = Field(default_factory=dict)
    synopsis: Synopsis | None = None
    completeness_score: float | None = None
