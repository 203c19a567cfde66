"""Data model for extraction sessions and the story bible they produce.

Wire models (entities, collections, final result) are pydantic models that
serialize with camelCase keys. Session bookkeeping (sessions, stages, agent
tasks) is plain dataclasses owned by the orchestrator.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

from storybible.pipeline.errors import InvalidTransitionError

StageNumber = Literal[1, 2, 3, 4, 4.5, 5]

STAGE_ORDER: tuple[float, ...] = (1, 2, 3, 4, 4.5, 5)
GATING_STAGES: tuple[float, ...] = (1, 3, 4, 4.5, 5)

STAGE_NAMES: dict[float, str] = {
    1: "Document Analysis",
    2: "Entity Extraction",
    3: "Relationship Mapping",
    4: "Gap Analysis",
    4.5: "Deduplication",
    5: "Consolidation",
}


def utc_now() -> datetime:
    return datetime.now(UTC)


def stage_key(stage: float) -> str:
    """Stable string key for a stage number ("1", "4.5")."""
    return f"{stage:g}"


class WireModel(BaseModel):
    """Base for everything that crosses the push or poll channel."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Entities
# =============================================================================

class StoryEntity(WireModel):
    """Common fields for every extracted entity.

    Backends may return fields beyond the declared ones; they are kept.
    """

    model_config = ConfigDict(extra="allow")

    id: str = ""
    description: str | None = None
    inferred_fields: dict[str, str] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return (getattr(self, "name", None) or "").strip()


class Character(StoryEntity):
    name: str
    role: str | None = None
    is_deceased: bool = False
    is_animal_companion: bool = False
    gender: str | None = None
    age_group: str | None = None
    species: str | None = None
    appearance: str | None = None
    personality: str | None = None
    voice_description: str | None = None
    occupation: str | None = None
    cause_of_death: str | None = None
    killed_by: str | None = None
    death_timing: str | None = None
    vital_status_summary: str | None = None


class Location(StoryEntity):
    name: str
    location_type: str | None = None
    parent_name: str | None = None
    atmosphere: str | None = None


class Item(StoryEntity):
    name: str
    item_type: str | None = None
    rarity: str | None = None
    is_magical: bool = False
    current_owner: str | None = None


class Faction(StoryEntity):
    name: str
    faction_type: str | None = None
    alignment: str | None = None
    leader: str | None = None


class LoreEntry(StoryEntity):
    title: str
    entry_type: str | None = None
    content: str | None = None

    @property
    def label(self) -> str:
        return (self.title or "").strip()


class StoryEvent(StoryEntity):
    name: str
    importance: str | None = None
    characters_involved: list[str] = Field(default_factory=list)
    location: str | None = None


class World(WireModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    genre: str | None = None
    time_period: str | None = None
    description: str | None = None
    magic_system: str | None = None
    technology_level: str | None = None
    tone: str | None = None


# =============================================================================
# Relationships, deduplication, summary
# =============================================================================

class Relationship(WireModel):
    model_config = ConfigDict(extra="allow")

    source: str
    target: str
    relationship_type: str | None = None
    description: str | None = None


RELATIONSHIP_CATEGORIES: tuple[str, ...] = (
    "character_relationships",
    "character_location_links",
    "character_lore_links",
    "character_item_links",
    "character_faction_links",
    "faction_memberships",
    "location_hierarchy",
    "location_ownership",
    "location_lore_links",
    "lore_connections",
)

Density = Literal["low", "medium", "high"]


class Relationships(WireModel):
    character_relationships: list[Relationship] = Field(default_factory=list)
    character_location_links: list[Relationship] = Field(default_factory=list)
    character_lore_links: list[Relationship] = Field(default_factory=list)
    character_item_links: list[Relationship] = Field(default_factory=list)
    character_faction_links: list[Relationship] = Field(default_factory=list)
    faction_memberships: list[Relationship] = Field(default_factory=list)
    location_hierarchy: list[Relationship] = Field(default_factory=list)
    location_ownership: list[Relationship] = Field(default_factory=list)
    location_lore_links: list[Relationship] = Field(default_factory=list)
    lore_connections: list[Relationship] = Field(default_factory=list)
    density: Density | None = None

    def by_category(self) -> dict[str, int]:
        return {name: len(getattr(self, name)) for name in RELATIONSHIP_CATEGORIES}

    def total(self) -> int:
        return sum(self.by_category().values())


class EntityRef(WireModel):
    id: str
    category: str
    name: str


class ResolutionEntry(WireModel):
    """One merge decision made by the reconciler."""

    name: str
    winner: EntityRef
    losers: list[EntityRef]
    reason: str
    partial_match: bool = False
    resolved_by: Literal["precedence", "resolver"] = "precedence"


class DeduplicationReport(WireModel):
    duplicates_found: int = 0
    resolution_log: list[ResolutionEntry] = Field(default_factory=list)


class Synopsis(WireModel):
    title: str | None = None
    synopsis: str | None = None


StructureType = Literal["chapters", "acts", "parts", "sections", "outline", "none"]


class Chapter(WireModel):
    number: int
    title: str | None = None
    subtitle: str | None = None
    summary: str | None = None
    source_line: str | None = None


class ChapterStructure(WireModel):
    """Explicit divisions the author put in the document, if any."""

    has_explicit_structure: bool = False
    structure_type: StructureType = "none"
    chapters: list[Chapter] = Field(default_factory=list)
    notes: str | None = None

    @property
    def total_chapters(self) -> int:
        return len(self.chapters)


class CharacterConnection(WireModel):
    """A character relationship resolved against the final character ids."""

    character_a: EntityRef
    character_b: EntityRef
    relationship_type: str
    relationship_label: str
    description: str | None = None
    is_directional: bool = False
    reverse_relationship_type: str | None = None
    strength: str = "moderate"
    current_status: str = "active"


class Summary(WireModel):
    total_characters: int = 0
    total_locations: int = 0
    total_items: int = 0
    total_factions: int = 0
    total_lore: int = 0
    total_events: int = 0
    total_relationships: int = 0
    relationship_density: Density | None = None
    has_world: bool = False
    has_synopsis: bool = False
    has_chapter_structure: bool = False
    chapter_count: int = 0
    total_connections: int = 0
    duplicates_resolved: int = 0
    merged_within_category: int = 0
    inferred_fields: int = 0
    failed_agents: list[str] = Field(default_factory=list)


# =============================================================================
# Collections
# =============================================================================

# Singular category (used by the reconciler and its log) -> collection slice
CATEGORY_SLICES: dict[str, str] = {
    "character": "characters",
    "location": "locations",
    "item": "items",
    "faction": "factions",
    "lore": "lore",
}

ENTITY_SLICES: tuple[str, ...] = ("characters", "locations", "items", "factions", "lore", "events")

ID_PREFIXES: dict[str, str] = {
    "characters": "CHR",
    "locations": "LOC",
    "items": "ITM",
    "factions": "FAC",
    "lore": "LOR",
    "events": "EVT",
}


class EntityCollections(WireModel):
    """Accumulating result for one session."""

    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    factions: list[Faction] = Field(default_factory=list)
    lore: list[LoreEntry] = Field(default_factory=list)
    events: list[StoryEvent] = Field(default_factory=list)
    world: World | None = None
    relationships: Relationships = Field(default_factory=Relationships)
    character_connections: list[CharacterConnection] = Field(default_factory=list)
    chapter_structure: ChapterStructure | None = None
    deduplication: DeduplicationReport | None = None
    synopsis: Synopsis | None = None
    summary: Summary | None = None

    _written_slices: set[str] = PrivateAttr(default_factory=set)

    def assign_slice(self, slice_name: str, value: Any) -> None:
        """Store one Stage-2 slice. Each slice may be written once."""
        if slice_name not in (*ENTITY_SLICES, "world"):
            raise ValueError(f"Unknown collection slice: {slice_name}")
        if slice_name in self._written_slices:
            raise InvalidTransitionError(f"Slice '{slice_name}' has already been written")
        self._written_slices.add(slice_name)
        if slice_name == "world":
            self.world = value
            return
        prefix = ID_PREFIXES[slice_name]
        for index, entity in enumerate(value, start=1):
            if not entity.id:
                entity.id = f"{prefix}{index:04d}"
        setattr(self, slice_name, list(value))

    def iter_named(self) -> Iterator[tuple[str, StoryEntity]]:
        """Yield (category, entity) over the categories the reconciler compares."""
        for category, slice_name in CATEGORY_SLICES.items():
            for entity in getattr(self, slice_name):
                yield category, entity


class Timing(WireModel):
    started_at: datetime
    completed_at: datetime
    total_ms: int
    stages: dict[str, int] = Field(default_factory=dict)


class FinalResult(WireModel):
    success: Literal[True] = True
    data: EntityCollections
    timing: Timing


# =============================================================================
# Session bookkeeping
# =============================================================================

class SessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class TaskStatus(str, Enum):
    """Status of a stage or of a Stage-2 agent task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETE, TaskStatus.FAILED}),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def _check_task_transition(what: str, current: TaskStatus, target: TaskStatus) -> None:
    if target not in _TASK_TRANSITIONS[current]:
        raise InvalidTransitionError(f"{what}: {current.value} -> {target.value}")


class PipelineState(str, Enum):
    CREATED = "CREATED"
    S1_RUNNING = "S1_RUNNING"
    S2_RUNNING = "S2_RUNNING"
    S3_RUNNING = "S3_RUNNING"
    S4_RUNNING = "S4_RUNNING"
    S4_5_RUNNING = "S4_5_RUNNING"
    S5_RUNNING = "S5_RUNNING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


STAGE_STATES: dict[float, PipelineState] = {
    1: PipelineState.S1_RUNNING,
    2: PipelineState.S2_RUNNING,
    3: PipelineState.S3_RUNNING,
    4: PipelineState.S4_RUNNING,
    4.5: PipelineState.S4_5_RUNNING,
    5: PipelineState.S5_RUNNING,
}

_PIPELINE_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.CREATED: frozenset({PipelineState.S1_RUNNING, PipelineState.ERROR}),
    PipelineState.S1_RUNNING: frozenset({PipelineState.S2_RUNNING, PipelineState.ERROR}),
    PipelineState.S2_RUNNING: frozenset({PipelineState.S3_RUNNING, PipelineState.ERROR}),
    PipelineState.S3_RUNNING: frozenset({PipelineState.S4_RUNNING, PipelineState.ERROR}),
    PipelineState.S4_RUNNING: frozenset({PipelineState.S4_5_RUNNING, PipelineState.ERROR}),
    PipelineState.S4_5_RUNNING: frozenset({PipelineState.S5_RUNNING, PipelineState.ERROR}),
    PipelineState.S5_RUNNING: frozenset({PipelineState.COMPLETE, PipelineState.ERROR}),
    PipelineState.COMPLETE: frozenset(),
    PipelineState.ERROR: frozenset(),
}


class ExtractorKey(str, Enum):
    CHARACTER = "CharacterExtractor"
    WORLD = "WorldExtractor"
    LOCATION = "LocationExtractor"
    ITEM = "ItemExtractor"
    FACTION = "FactionExtractor"
    LORE = "LoreExtractor"
    EVENT = "EventExtractor"


EXTRACTOR_SLICES: dict[ExtractorKey, str] = {
    ExtractorKey.CHARACTER: "characters",
    ExtractorKey.WORLD: "world",
    ExtractorKey.LOCATION: "locations",
    ExtractorKey.ITEM: "items",
    ExtractorKey.FACTION: "factions",
    ExtractorKey.LORE: "lore",
    ExtractorKey.EVENT: "events",
}


@dataclass
class StageRecord:
    stage: float
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def start(self) -> None:
        _check_task_transition(f"stage {self.stage:g}", self.status, TaskStatus.RUNNING)
        self.status = TaskStatus.RUNNING
        self.started_at = utc_now()

    def complete(self) -> None:
        _check_task_transition(f"stage {self.stage:g}", self.status, TaskStatus.COMPLETE)
        self.status = TaskStatus.COMPLETE
        self.completed_at = utc_now()

    def fail(self) -> None:
        _check_task_transition(f"stage {self.stage:g}", self.status, TaskStatus.FAILED)
        self.status = TaskStatus.FAILED
        self.completed_at = utc_now()

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


@dataclass
class AgentTask:
    agent_key: ExtractorKey
    status: TaskStatus = TaskStatus.PENDING
    result_count: int = 0
    error: str | None = None

    def start(self) -> None:
        _check_task_transition(self.agent_key.value, self.status, TaskStatus.RUNNING)
        self.status = TaskStatus.RUNNING

    def complete(self, result_count: int) -> None:
        _check_task_transition(self.agent_key.value, self.status, TaskStatus.COMPLETE)
        self.status = TaskStatus.COMPLETE
        self.result_count = result_count

    def fail(self, error: str) -> None:
        _check_task_transition(self.agent_key.value, self.status, TaskStatus.FAILED)
        self.status = TaskStatus.FAILED
        self.error = error

    @property
    def settled(self) -> bool:
        return self.status in (TaskStatus.COMPLETE, TaskStatus.FAILED)


@dataclass
class Session:
    """One extraction run."""

    id: str
    document_length: int
    status: SessionStatus = SessionStatus.CREATED
    state: PipelineState = PipelineState.CREATED
    created_at: datetime = field(default_factory=utc_now)
    last_activity_at: float = field(default_factory=time.monotonic)
    last_event_seq: int = 0
    last_stage: float | None = None
    error: str | None = None
    stages: dict[float, StageRecord] = field(
        default_factory=lambda: {n: StageRecord(n) for n in STAGE_ORDER}
    )
    agent_tasks: dict[ExtractorKey, AgentTask] = field(
        default_factory=lambda: {key: AgentTask(key) for key in ExtractorKey}
    )

    def advance(self, target: PipelineState) -> None:
        if target not in _PIPELINE_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"session {self.id}: {self.state.value} -> {target.value}"
            )
        self.state = target
        if target == PipelineState.COMPLETE:
            self.status = SessionStatus.COMPLETE
        elif target == PipelineState.ERROR:
            self.status = SessionStatus.ERROR
        else:
            self.status = SessionStatus.RUNNING

    def touch(self) -> None:
        self.last_activity_at = time.monotonic()

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETE, SessionStatus.ERROR)

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity_at
