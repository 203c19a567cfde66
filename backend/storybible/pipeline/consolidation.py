"""
Consolidation (Stage 5): final validation of the merged collections and
computation of the summary statistics.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from typing import Any

from storybible.pipeline.deduplication import merge_entities, normalize_name
from storybible.pipeline.errors import StageFailure
from storybible.pipeline.models import (
    ENTITY_SLICES,
    ID_PREFIXES,
    Character,
    CharacterConnection,
    Density,
    EntityCollections,
    EntityRef,
    Relationship,
    Relationships,
    StoryEntity,
    Summary,
)

logger = logging.getLogger(__name__)

CONSOLIDATION_STAGE = 5

# Relationships per character at which density becomes medium / high
_DENSITY_PER_CHARACTER = (1.0, 3.0)


def relationship_density(relationships: Relationships, character_count: int) -> Density:
    """Backend reported density if present, else derived from links per character."""
    if relationships.density:
        return relationships.density
    if character_count == 0:
        return "low"
    per_character = relationships.total() / character_count
    medium, high = _DENSITY_PER_CHARACTER
    if per_character >= high:
        return "high"
    if per_character >= medium:
        return "medium"
    return "low"


def _merge_within_category(entities: Iterable[StoryEntity]) -> tuple[list[StoryEntity], int]:
    seen: dict[str, StoryEntity] = {}
    merged = 0
    for entity in entities:
        key = normalize_name(entity.label)
        if key in seen:
            seen[key] = merge_entities(seen[key], entity)
            merged += 1
        else:
            seen[key] = entity
    return list(seen.values()), merged


def _assign_missing_ids(slice_name: str, entities: list[StoryEntity]) -> None:
    prefix = ID_PREFIXES[slice_name]
    taken = {e.id for e in entities if e.id}
    counter = 0
    for entity in entities:
        if entity.id:
            continue
        counter += 1
        while f"{prefix}{counter:04d}" in taken:
            counter += 1
        entity.id = f"{prefix}{counter:04d}"
        taken.add(entity.id)


def _apply_location_hierarchy(collections: EntityCollections) -> None:
    """Fill parent_name from location_hierarchy links (source = child, target = parent)."""
    parents = {
        normalize_name(link.source): link.target
        for link in collections.relationships.location_hierarchy
        if link.source and link.target
    }
    for location in collections.locations:
        if location.parent_name:
            continue
        parent = parents.get(normalize_name(location.name))
        if parent:
            location.parent_name = parent


def vital_status_summary(character: Character) -> str:
    """One line stating whether a character is alive, for downstream prompts."""
    if character.vital_status_summary:
        return character.vital_status_summary
    if character.is_deceased:
        cause = (character.cause_of_death or "unknown circumstances").strip()
        if len(cause) <= 5:
            return "DECEASED - Details unknown"
        killer = f" by {character.killed_by}" if character.killed_by else ""
        timing = f" ({character.death_timing})" if character.death_timing else ""
        return f"DECEASED - {cause}{killer}{timing}"
    role = (character.role or "character").strip() or "character"
    occupation = f" - {character.occupation}" if character.occupation else ""
    return f"ALIVE - {role[:1].upper()}{role[1:]}{occupation}"


def _extra(relationship: Relationship, name: str) -> Any:
    return (relationship.model_extra or {}).get(name)


def build_character_connections(collections: EntityCollections) -> list[CharacterConnection]:
    """Character relationships whose endpoints are both final characters."""
    by_name = {normalize_name(c.name): c for c in collections.characters}
    connections: list[CharacterConnection] = []
    for rel in collections.relationships.character_relationships:
        a = by_name.get(normalize_name(rel.source))
        b = by_name.get(normalize_name(rel.target))
        if a is None or b is None:
            continue
        relationship_type = rel.relationship_type or "related"
        label = _extra(rel, "relationship_label")
        if not isinstance(label, str) or not label:
            label = f"{relationship_type} relationship"
        reverse = _extra(rel, "reverse_relationship_type") or _extra(rel, "reverse_type")
        strength = _extra(rel, "strength")
        status = _extra(rel, "current_status") or _extra(rel, "status")
        directional = not _extra(rel, "is_bidirectional") and _extra(rel, "is_directional") is not False
        connections.append(
            CharacterConnection(
                character_a=EntityRef(id=a.id, category="character", name=a.name),
                character_b=EntityRef(id=b.id, category="character", name=b.name),
                relationship_type=relationship_type,
                relationship_label=label,
                description=rel.description,
                is_directional=directional,
                reverse_relationship_type=reverse if isinstance(reverse, str) else None,
                strength=strength if isinstance(strength, str) and strength else "moderate",
                current_status=status if isinstance(status, str) and status else "active",
            )
        )
    return connections


def consolidate(
    collections: EntityCollections,
    *,
    failed_agents: Iterable[str] = (),
) -> EntityCollections:
    """
    Validate and finalize the collections.

    Drops entities without a label, merges same-name entries within a
    category, checks that no cross-category duplicate survived and that ids
    are unique, then derives vital status lines and character connections
    and attaches the Summary. Raises StageFailure when a check fails.
    """
    result = collections.model_copy(deep=True)

    dropped = 0
    merged_total = 0
    for slice_name in ENTITY_SLICES:
        entities = getattr(result, slice_name)
        labelled = [e for e in entities if e.label]
        dropped += len(entities) - len(labelled)
        deduped, merged = _merge_within_category(labelled)
        merged_total += merged
        _assign_missing_ids(slice_name, deduped)
        setattr(result, slice_name, deduped)

    if dropped:
        logger.warning("Consolidation dropped %d entities without a name or title", dropped)

    _apply_location_hierarchy(result)

    owners: dict[str, str] = {}
    for category, entity in result.iter_named():
        key = normalize_name(entity.label)
        other = owners.setdefault(key, category)
        if other != category:
            raise StageFailure(
                CONSOLIDATION_STAGE,
                f"'{entity.label}' is still present as both {other} and {category}",
            )

    ids = Counter(
        entity.id
        for slice_name in ENTITY_SLICES
        for entity in getattr(result, slice_name)
    )
    duplicate_ids = sorted(entity_id for entity_id, count in ids.items() if count > 1)
    if duplicate_ids:
        raise StageFailure(CONSOLIDATION_STAGE, f"Duplicate entity ids: {', '.join(duplicate_ids)}")

    for character in result.characters:
        character.vital_status_summary = vital_status_summary(character)
    result.character_connections = build_character_connections(result)
    structure = result.chapter_structure

    report = result.deduplication
    result.summary = Summary(
        total_characters=len(result.characters),
        total_locations=len(result.locations),
        total_items=len(result.items),
        total_factions=len(result.factions),
        total_lore=len(result.lore),
        total_events=len(result.events),
        total_relationships=result.relationships.total(),
        relationship_density=relationship_density(result.relationships, len(result.characters)),
        has_world=bool(result.world and result.world.name),
        has_synopsis=bool(result.synopsis and result.synopsis.synopsis),
        has_chapter_structure=bool(structure and structure.has_explicit_structure),
        chapter_count=structure.total_chapters if structure else 0,
        total_connections=len(result.character_connections),
        duplicates_resolved=sum(len(e.losers) for e in report.resolution_log) if report else 0,
        merged_within_category=merged_total,
        inferred_fields=sum(
            len(entity.inferred_fields)
            for slice_name in ENTITY_SLICES
            for entity in getattr(result, slice_name)
        ),
        failed_agents=sorted(failed_agents),
    )

    logger.info(
        "Consolidation complete - %d characters, %d locations, %d items, "
        "%d factions, %d lore entries, %d events",
        result.summary.total_characters,
        result.summary.total_locations,
        result.summary.total_items,
        result.summary.total_factions,
        result.summary.total_lore,
        result.summary.total_events,
    )
    return result
