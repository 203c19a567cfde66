"""
Cross-category deduplication (Stage 4.5).

Extractors run independently, so the same named thing can come back from
more than one of them: a vehicle as both an item and a location, a named
animal as both a character and a lore creature, an order as both a faction
and a lore entry. The reconciler groups entities by normalized name across
categories and keeps one winner per group, chosen by a category resolver when
one has ruled on the name and by category precedence otherwise. The winner
absorbs whatever fields it is missing and the rest are removed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from storybible.pipeline.models import (
    CATEGORY_SLICES,
    DeduplicationReport,
    EntityCollections,
    EntityRef,
    ResolutionEntry,
    StoryEntity,
)

logger = logging.getLogger(__name__)

DEFAULT_PRECEDENCE: tuple[str, ...] = ("character", "item", "location", "faction", "lore")

_LEADING_ARTICLE = re.compile(r"^(the|a|an)\s+", re.IGNORECASE)
_QUOTES = re.compile(r"[‘’`]")
_WHITESPACE = re.compile(r"\s+")

# Fields the reconciler never copies from a loser
_IDENTITY_FIELDS = frozenset({"id", "name", "title", "inferred_fields"})

# Partial match thresholds
_MIN_CONTAINMENT_LENGTH = 4
_MIN_OVERLAP_WORD_LENGTH = 3
_MIN_WORD_OVERLAP = 0.6


def normalize_name(name: str | None) -> str:
    """Lowercase, strip a leading article, unify quotes, collapse whitespace."""
    if not name:
        return ""
    normalized = name.lower().strip()
    normalized = _LEADING_ARTICLE.sub("", normalized)
    normalized = _QUOTES.sub("'", normalized)
    normalized = _WHITESPACE.sub(" ", normalized)
    return normalized.strip()


def is_partial_match(name1: str, name2: str) -> bool:
    """Containment (both names at least 4 chars) or >= 60% overlap of long words."""
    if not name1 or not name2:
        return False
    if name1 in name2 or name2 in name1:
        return len(name1) >= _MIN_CONTAINMENT_LENGTH and len(name2) >= _MIN_CONTAINMENT_LENGTH

    words1 = set(name1.split(" "))
    words2 = set(name2.split(" "))
    shared = [w for w in words1 & words2 if len(w) > _MIN_OVERLAP_WORD_LENGTH]
    fewest = min(len(words1), len(words2))
    return fewest > 0 and len(shared) / fewest >= _MIN_WORD_OVERLAP


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def absorb_missing(winner: StoryEntity, loser: StoryEntity) -> list[str]:
    """Copy fields the winner declares but has left empty. Returns copied names."""
    copied: list[str] = []
    for name in type(winner).model_fields:
        if name in _IDENTITY_FIELDS:
            continue
        value = getattr(loser, name, None)
        if _is_empty(value) or not _is_empty(getattr(winner, name)):
            continue
        setattr(winner, name, value)
        copied.append(name)
    return copied


def merge_entities(base: StoryEntity, other: StoryEntity) -> StoryEntity:
    """
    Merge two entries of the same category.

    Empty fields are filled, lists are unioned in order, and for two
    non-empty strings the longer one is kept. ``base`` keeps its id.
    """
    merged = base.model_copy(deep=True)
    current = merged.model_dump()
    for name, value in other.model_dump().items():
        if name == "id" or value is None:
            continue
        existing = current.get(name)
        if _is_empty(existing) or existing == "unknown":
            setattr(merged, name, value)
        elif isinstance(value, list) and isinstance(existing, list):
            setattr(merged, name, existing + [v for v in value if v not in existing])
        elif isinstance(value, dict) and isinstance(existing, dict):
            setattr(merged, name, {**value, **existing})
        elif isinstance(value, str) and isinstance(existing, str) and len(value) > len(existing):
            setattr(merged, name, value)
    return merged


@dataclass
class ReconcileResult:
    duplicates_found: int
    merged_collections: EntityCollections
    resolution_log: list[ResolutionEntry] = field(default_factory=list)

    @property
    def report(self) -> DeduplicationReport:
        return DeduplicationReport(
            duplicates_found=self.duplicates_found,
            resolution_log=list(self.resolution_log),
        )


@dataclass(frozen=True)
class CategoryDecision:
    """Where a category resolver says a duplicated name belongs."""

    name: str
    category: str
    reasoning: str | None = None


@dataclass
class DuplicateGroup:
    """Entities across categories that share a (normalized) name."""

    key: str
    members: list[EntityRef]
    descriptions: dict[str, str] = field(default_factory=dict)
    partial: bool = False


@dataclass
class _Indexed:
    category: str
    entity: StoryEntity
    key: str
    position: int

    def ref(self) -> EntityRef:
        return EntityRef(id=self.entity.id, category=self.category, name=self.entity.label)


class DeduplicationReconciler:
    """
    Resolves cross-category duplicates.

    Each group keeps one winner. A category decision for the group's name
    picks the winner when one of the group's members is in that category;
    otherwise category precedence decides.
    """

    def __init__(
        self,
        precedence: Sequence[str] = DEFAULT_PRECEDENCE,
        *,
        partial_matches: bool = False,
    ) -> None:
        unknown = [c for c in precedence if c not in CATEGORY_SLICES]
        if unknown:
            raise ValueError(f"Unknown categories in precedence: {unknown}")
        self.precedence = tuple(precedence)
        self.partial_matches = partial_matches

    def _rank(self, indexed: _Indexed) -> tuple[int, int]:
        try:
            rank = self.precedence.index(indexed.category)
        except ValueError:
            rank = len(self.precedence)
        return rank, indexed.position

    @staticmethod
    def _index(collections: EntityCollections) -> list[_Indexed]:
        index = [
            _Indexed(category, entity, normalize_name(entity.label), position)
            for position, (category, entity) in enumerate(collections.iter_named())
        ]
        return [item for item in index if item.key]

    def _groups(self, index: list[_Indexed]) -> list[tuple[list[_Indexed], bool]]:
        """(members, partial) for every exact group, then every partial pair."""
        exact = self._exact_groups(index)
        groups = [(group, False) for group in exact]
        if self.partial_matches:
            groups.extend((pair, True) for pair in self._partial_groups(index, exact))
        return groups

    def duplicate_groups(self, collections: EntityCollections) -> list[DuplicateGroup]:
        """The groups reconcile() would resolve, without changing anything."""
        return [
            DuplicateGroup(
                key=members[0].key,
                members=[m.ref() for m in members],
                descriptions={
                    m.entity.id: m.entity.description
                    for m in members
                    if m.entity.description
                },
                partial=partial,
            )
            for members, partial in self._groups(self._index(collections))
        ]

    def reconcile(
        self,
        collections: EntityCollections,
        decisions: Iterable[CategoryDecision] = (),
    ) -> ReconcileResult:
        """Return deduplicated copies. ``collections`` is left untouched."""
        merged = collections.model_copy(deep=True)
        chosen: dict[str, CategoryDecision] = {}
        for decision in decisions:
            key = normalize_name(decision.name)
            if key and decision.category in CATEGORY_SLICES:
                chosen.setdefault(key, decision)

        removed: set[int] = set()
        log: list[ResolutionEntry] = []
        for group, partial in self._groups(self._index(merged)):
            if any(id(member.entity) in removed for member in group):
                continue
            decision = next((chosen[m.key] for m in group if m.key in chosen), None)
            log.append(self._resolve(group, removed, partial=partial, decision=decision))

        for slice_name in CATEGORY_SLICES.values():
            kept = [e for e in getattr(merged, slice_name) if id(e) not in removed]
            setattr(merged, slice_name, kept)

        if log:
            logger.info("Deduplication resolved %d duplicate group(s)", len(log))
        else:
            logger.info("Deduplication found no cross-category duplicates")
        return ReconcileResult(
            duplicates_found=len(log),
            merged_collections=merged,
            resolution_log=log,
        )

    def _exact_groups(self, index: list[_Indexed]) -> list[list[_Indexed]]:
        by_key: dict[str, list[_Indexed]] = {}
        for item in index:
            by_key.setdefault(item.key, []).append(item)
        return [
            members
            for members in by_key.values()
            if len({m.category for m in members}) > 1
        ]

    def _partial_groups(
        self, index: list[_Indexed], exact: list[list[_Indexed]]
    ) -> list[list[_Indexed]]:
        grouped = {id(m.entity) for group in exact for m in group}
        candidates = [item for item in index if id(item.entity) not in grouped]
        pairs: list[list[_Indexed]] = []
        checked: set[tuple[str, str]] = set()
        for i, a in enumerate(candidates):
            for b in candidates[i + 1:]:
                if a.category == b.category or a.key == b.key:
                    continue
                pair_key = (min(a.key, b.key), max(a.key, b.key))
                if pair_key in checked:
                    continue
                checked.add(pair_key)
                if is_partial_match(a.key, b.key):
                    pairs.append([a, b])
        return pairs

    def _resolve(
        self,
        group: list[_Indexed],
        removed: set[int],
        *,
        partial: bool,
        decision: CategoryDecision | None = None,
    ) -> ResolutionEntry:
        ordered = sorted(group, key=self._rank)
        if decision is not None:
            preferred = [m for m in ordered if m.category == decision.category]
            if preferred:
                ordered = preferred + [m for m in ordered if m.category != decision.category]
            else:
                logger.info(
                    "Ignoring resolver category '%s' for '%s': no member in that category",
                    decision.category,
                    decision.name,
                )
                decision = None
        winner, losers = ordered[0], ordered[1:]
        for loser in losers:
            absorb_missing(winner.entity, loser.entity)
            removed.add(id(loser.entity))

        loser_categories = ", ".join(sorted({l.category for l in losers}))
        if decision is not None:
            reason = f"resolver placed it in {winner.category}, removed from {loser_categories}"
            if decision.reasoning:
                reason = f"{reason}: {decision.reasoning}"
        else:
            reason = f"{winner.category} takes precedence over {loser_categories}"
        if partial:
            reason = f"partial name match; {reason}"
        logger.info(
            "Resolved '%s' -> %s %s (removed %s)",
            winner.entity.label,
            winner.category,
            winner.entity.id,
            ", ".join(f"{l.category} {l.entity.id}" for l in losers),
        )
        return ResolutionEntry(
            name=winner.entity.label,
            winner=winner.ref(),
            losers=[l.ref() for l in losers],
            reason=reason,
            partial_match=partial,
            resolved_by="resolver" if decision is not None else "precedence",
        )
