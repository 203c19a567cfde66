"""
Tests for the LLM-backed extraction agents.

Uses mock LLM providers to test agent behavior without API calls.
"""

import json

import pytest

from storybible.agents import (
    AgentStats,
    CharacterExtractor,
    ExtractionContext,
    LLMCategoryResolver,
    LLMDocumentAnalyzer,
    LLMGapAnalyzer,
    LLMRelationshipMapper,
    LocationExtractor,
    LoreExtractor,
    WorldExtractor,
    apply_gap_report,
    build_agent_suite,
    parse_chapter_structure,
    parse_json_reply,
)
from storybible.agents.categories import parse_decisions
from storybible.agents.gaps import parse_gap_report
from storybible.agents.models import DocumentAnalysis
from storybible.agents.relationships import normalize_relationship
from storybible.llm.providers import LLMProvider, LLMProviderType, LLMResponse
from storybible.pipeline.deduplication import DuplicateGroup
from storybible.pipeline.errors import AgentResponseError
from storybible.pipeline.models import Character, EntityCollections, EntityRef, ExtractorKey, Location, World


class MockLLMProvider(LLMProvider):
    """Mock LLM provider for testing."""

    def __init__(self, responses: list[str] | None = None):
        self._responses = responses or []
        self._call_count = 0
        self.calls: list[dict] = []

    def chat_completion(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        timeout: float = 60.0,
        json_mode: bool = False,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "json_mode": json_mode})
        response_text = "{}"
        if self._call_count < len(self._responses):
            response_text = self._responses[self._call_count]
        self._call_count += 1

        return LLMResponse(
            content=response_text,
            model=model,
            input_tokens=100,
            output_tokens=50,
            total_tokens=150,
        )

    def is_available(self) -> bool:
        return True

    @property
    def provider_type(self) -> LLMProviderType:
        return LLMProviderType.OPENAI


@pytest.fixture
def context() -> ExtractionContext:
    return ExtractionContext(analysis=DocumentAnalysis(document_type="novel", estimated_word_count=800))


class TestParseJsonReply:
    def test_bare_object(self):
        assert parse_json_reply('{"characters": []}') == {"characters": []}

    def test_fenced_code_block(self):
        content = 'Here you go:\n```json\n{"locations": [{"name": "Stonehaven"}]}\n```'
        assert parse_json_reply(content)["locations"][0]["name"] == "Stonehaven"

    def test_object_inside_prose(self):
        content = 'Sure! {"world": {"name": "Eldoria"}} Hope that helps.'
        assert parse_json_reply(content) == {"world": {"name": "Eldoria"}}

    def test_list_reply_is_wrapped(self):
        assert parse_json_reply('[{"name": "Aria"}]', "characters") == {"characters": [{"name": "Aria"}]}

    def test_truncated_array_is_recovered(self):
        content = '{"characters": [{"name": "Aria"}, {"name": "Borin"}, {"name": "Ca'
        parsed = parse_json_reply(content, "characters")
        assert [c["name"] for c in parsed["characters"]] == ["Aria", "Borin"]

    def test_truncated_before_first_entry(self):
        parsed = parse_json_reply('{"items": [{"name": "Moon', "items")
        assert parsed == {"items": []}

    def test_braces_inside_strings_do_not_confuse_recovery(self):
        content = '{"lore": [{"title": "The {Sealed} Gate"}, {"title": "Unfinis'
        parsed = parse_json_reply(content, "lore")
        assert parsed["lore"] == [{"title": "The {Sealed} Gate"}]

    def test_garbage_raises(self):
        with pytest.raises(AgentResponseError):
            parse_json_reply("I could not find any characters.")

    def test_non_object_raises(self):
        with pytest.raises(AgentResponseError):
            parse_json_reply("42")


class TestExtractors:
    @pytest.mark.asyncio
    async def test_character_extractor(self, context):
        llm = MockLLMProvider([
            json.dumps({
                "characters": [
                    {"id": "X1", "name": "Aria", "role": "protagonist", "inferred_fields": {"a": "b"}},
                    {"name": "Borin", "role": "supporting", "favorite_food": "stew"},
                    {"role": "minor"},
                    "not an object",
                ]
            })
        ])
        extractor = CharacterExtractor(llm, model="gpt-4.1")

        characters = await extractor.extract("Aria and Borin.", context)

        assert [c.name for c in characters] == ["Aria", "Borin"]
        assert characters[0].id == ""
        assert characters[0].inferred_fields == {}
        assert characters[1].model_extra["favorite_food"] == "stew"
        assert llm.calls[0]["json_mode"] is True
        assert extractor.key == ExtractorKey.CHARACTER

    @pytest.mark.asyncio
    async def test_truncated_reply_keeps_complete_entries(self, context):
        llm = MockLLMProvider(['{"locations": [{"name": "Stonehaven"}, {"name": "Ashf'])
        locations = await LocationExtractor(llm).extract("...", context)
        assert [l.name for l in locations] == ["Stonehaven"]

    @pytest.mark.asyncio
    async def test_wrong_shape_raises(self, context):
        llm = MockLLMProvider(['{"lore": "none found"}'])
        with pytest.raises(AgentResponseError):
            await LoreExtractor(llm).extract("...", context)

    @pytest.mark.asyncio
    async def test_missing_key_is_empty(self, context):
        llm = MockLLMProvider(["{}"])
        assert await LoreExtractor(llm).extract("...", context) == []

    @pytest.mark.asyncio
    async def test_prompt_includes_estimate_and_document(self, context):
        context.analysis.content_estimates["characters"] = 7
        llm = MockLLMProvider(['{"characters": []}'])
        await CharacterExtractor(llm).extract("Once upon a time", context)

        user_message = llm.calls[0]["messages"][1]["content"]
        assert "roughly 7 characters" in user_message
        assert "Once upon a time" in user_message

    @pytest.mark.asyncio
    async def test_detail_callback(self):
        details: list[str] = []
        context = ExtractionContext(analysis=DocumentAnalysis(), report_detail=details.append)
        await CharacterExtractor(MockLLMProvider(['{"characters": [{"name": "Aria"}]}'])).extract("...", context)
        assert details[-1] == "CharacterExtractor: found 1 characters"

    @pytest.mark.asyncio
    async def test_world_extractor(self, context):
        llm = MockLLMProvider(['{"world": {"name": "Eldoria", "genre": "fantasy"}}'])
        world = await WorldExtractor(llm).extract("...", context)
        assert isinstance(world, World)
        assert world.genre == "fantasy"

    @pytest.mark.asyncio
    async def test_world_extractor_empty(self, context):
        assert await WorldExtractor(MockLLMProvider(['{"world": {}}'])).extract("...", context) is None

    @pytest.mark.asyncio
    async def test_stats_tracked(self, context):
        extractor = CharacterExtractor(MockLLMProvider(['{"characters": []}']))
        await extractor.extract("...", context)

        stats = extractor.get_stats()
        assert isinstance(stats, AgentStats)
        assert stats.llm_calls == 1
        assert stats.total_tokens == 150
        extractor.reset_stats()
        assert extractor.get_stats().llm_calls == 0


class TestDocumentAnalyzer:
    @pytest.mark.asyncio
    async def test_flattens_nested_estimates(self):
        llm = MockLLMProvider([
            json.dumps({
                "document_type": "campaign_notes",
                "estimated_word_count": 1200,
                "content_estimates": {"characters": {"count": 12}, "lore_entries": 4, "items": "many"},
            })
        ])
        analysis = await LLMDocumentAnalyzer(llm).analyze("text")

        assert analysis.document_type == "campaign_notes"
        assert analysis.content_estimates == {"characters": 12, "lore": 4}

    @pytest.mark.asyncio
    async def test_word_count_fallback(self):
        analysis = await LLMDocumentAnalyzer(MockLLMProvider(["{}"])).analyze("one two three")
        assert analysis.estimated_word_count == 3
        assert analysis.document_type == "unknown"

    def test_entity_density(self):
        low = DocumentAnalysis(estimated_word_count=1000, content_estimates={"characters": 2})
        high = DocumentAnalysis(estimated_word_count=1000, content_estimates={"characters": 20})
        assert low.entity_density == "low"
        assert high.entity_density == "high"


class TestRelationshipMapper:
    def test_normalizes_alternate_endpoint_names(self):
        rel = normalize_relationship({"character_a": "Aria", "character_b": "Borin", "relationship_type": "mentor"})
        assert (rel.source, rel.target, rel.relationship_type) == ("Aria", "Borin", "mentor")

        rel = normalize_relationship({"child": "Stonehaven", "parent": "Eldoria"})
        assert (rel.source, rel.target) == ("Stonehaven", "Eldoria")

        rel = normalize_relationship({"character": "Aria", "location": "Stonehaven"})
        assert (rel.source, rel.target) == ("Aria", "Stonehaven")

    def test_missing_endpoint_is_dropped(self):
        assert normalize_relationship({"source": "Aria"}) is None
        assert normalize_relationship("Aria -> Borin") is None

    @pytest.mark.asyncio
    async def test_maps_categories_and_density(self):
        llm = MockLLMProvider([
            json.dumps({
                "character_relationships": [{"source": "Aria", "target": "Borin"}, {"source": "Aria"}],
                "location_hierarchy": [{"child": "Stonehaven", "parent": "Eldoria"}],
                "relationship_density": "Medium",
            })
        ])
        collections = EntityCollections(characters=[Character(name="Aria"), Character(name="Borin")])

        relationships = await LLMRelationshipMapper(llm).map_relationships("...", collections, DocumentAnalysis())

        assert len(relationships.character_relationships) == 1
        assert relationships.location_hierarchy[0].target == "Eldoria"
        assert relationships.density == "medium"

    @pytest.mark.asyncio
    async def test_skips_call_without_characters_or_locations(self):
        llm = MockLLMProvider()
        relationships = await LLMRelationshipMapper(llm).map_relationships(
            "...", EntityCollections(), DocumentAnalysis()
        )
        assert relationships.total() == 0
        assert relationships.density == "low"
        assert llm.calls == []


class TestGapAnalyzer:
    @pytest.mark.asyncio
    async def test_find_gaps_and_apply(self):
        llm = MockLLMProvider([
            json.dumps({
                "character_inferences": [
                    {
                        "name": "aria",
                        "inferred_fields": {
                            "gender": {"value": "female", "confidence": "high"},
                            "role": {"value": "villain", "confidence": "high"},
                            "appearance": {"value": "scarred", "confidence": "low"},
                            "personality": "not an object",
                        },
                    }
                ],
                "location_inferences": [
                    {"name": "Stonehaven", "inferred_fields": {"atmosphere": {"value": "grim", "confidence": "medium"}}}
                ],
                "world_enhancements": {"genre": "dark fantasy", "tone": "unknown"},
                "synopsis_suggestion": {"title": "Moonblade", "synopsis": "Aria rises."},
                "quality_assessment": {"completeness_score": 72},
            })
        ])
        collections = EntityCollections(
            characters=[Character(name="Aria", role="protagonist")],
            locations=[Location(name="Stonehaven")],
        )

        report = await LLMGapAnalyzer(llm).find_gaps("...", collections, DocumentAnalysis())
        applied = apply_gap_report(collections, report)

        aria = collections.characters[0]
        assert applied == 2
        assert aria.gender == "female"
        assert aria.role == "protagonist"
        assert aria.appearance is None
        assert aria.inferred_fields == {"gender": "high"}
        assert collections.locations[0].atmosphere == "grim"
        assert collections.world == World(genre="dark fantasy")
        assert collections.synopsis.title == "Moonblade"
        assert report.completeness_score == 72

    def test_world_enhancements_only_fill_gaps(self):
        collections = EntityCollections(world=World(name="Eldoria", genre="fantasy"))
        report = parse_gap_report({"world_enhancements": {"genre": "sci-fi", "tone": "hopeful"}})

        apply_gap_report(collections, report)

        assert collections.world.genre == "fantasy"
        assert collections.world.tone == "hopeful"

    def test_unknown_values_are_replaced(self):
        collections = EntityCollections(characters=[Character(name="Aria", age_group="unknown")])
        report = parse_gap_report({
            "character_inferences": [
                {"name": "Aria", "inferred_fields": {"age_group": {"value": "adult", "confidence": "medium"}}}
            ]
        })
        assert apply_gap_report(collections, report) == 1
        assert collections.characters[0].age_group == "adult"


class TestAgentSuite:
    def test_build_agent_suite(self):
        suite = build_agent_suite(MockLLMProvider(), model="gpt-4.1")
        keys = [agent.key for agent in suite.extractors]
        assert sorted(keys) == sorted(ExtractorKey)
        assert len(set(keys)) == len(keys)
        assert isinstance(suite.category_resolver, LLMCategoryResolver)


class FailingLLMProvider(MockLLMProvider):
    """Answers the first ``ok_calls`` requests, then raises."""

    def __init__(self, responses: list[str] | None = None, ok_calls: int = 1):
        super().__init__(responses)
        self._ok_calls = ok_calls

    def chat_completion(self, messages, model, **kwargs) -> LLMResponse:
        if self._call_count >= self._ok_calls:
            self._call_count += 1
            raise RuntimeError("rate limited")
        return super().chat_completion(messages, model, **kwargs)


class TestChapterStructure:
    def test_explicit_chapters(self):
        structure = parse_chapter_structure({
            "has_explicit_structure": True,
            "structure_type": "acts",
            "chapters": [
                {"number": 1, "title": "The Gate", "source_line": "ACT ONE: The Gate"},
                {"number": "2", "title": "The Siege"},
            ],
        })

        assert structure.has_explicit_structure is True
        assert structure.structure_type == "acts"
        assert [(c.number, c.title) for c in structure.chapters] == [(1, "The Gate"), (2, "The Siege")]
        assert structure.chapters[0].source_line == "ACT ONE: The Gate"

    def test_malformed_entries_are_skipped(self):
        structure = parse_chapter_structure({
            "has_explicit_structure": True,
            "structure_type": "volumes",
            "chapters": ["Chapter 1", {"number": "three", "title": "Ashes"}, {"title": ["bad"]}],
        })

        assert structure.structure_type == "chapters"
        assert [(c.number, c.title) for c in structure.chapters] == [(2, "Ashes")]

    def test_no_structure_without_chapters(self):
        structure = parse_chapter_structure({"has_explicit_structure": True, "chapters": []})
        assert structure.has_explicit_structure is False
        assert structure.structure_type == "none"

    def test_chapters_without_flag_are_ignored(self):
        structure = parse_chapter_structure({"chapters": [{"number": 1, "title": "Maybe"}], "notes": "inferred"})
        assert structure.has_explicit_structure is False
        assert structure.chapters == []
        assert structure.notes == "inferred"

    @pytest.mark.asyncio
    async def test_analyze_attaches_structure(self):
        llm = MockLLMProvider([
            json.dumps({"document_type": "novel", "estimated_word_count": 900}),
            json.dumps({
                "has_explicit_structure": True,
                "structure_type": "chapters",
                "chapters": [{"number": 1, "title": "Prologue"}],
            }),
        ])
        analysis = await LLMDocumentAnalyzer(llm).analyze("Chapter 1: Prologue\nAria wakes.")

        assert analysis.chapter_structure.total_chapters == 1
        assert analysis.chapter_structure.chapters[0].title == "Prologue"
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_detection_failure_is_not_fatal(self):
        llm = FailingLLMProvider([json.dumps({"document_type": "novel", "estimated_word_count": 900})])
        analysis = await LLMDocumentAnalyzer(llm).analyze("Chapter 1: Prologue")

        assert analysis.document_type == "novel"
        assert analysis.chapter_structure.has_explicit_structure is False
        assert "rate limited" in analysis.chapter_structure.notes


def _eldoria_group() -> DuplicateGroup:
    return DuplicateGroup(
        key="eldoria",
        members=[
            EntityRef(id="LOC0001", category="location", name="Eldoria"),
            EntityRef(id="FAC0001", category="faction", name="Eldoria"),
        ],
        descriptions={"FAC0001": "The ruling houses of Eldoria"},
    )


class TestCategoryResolver:
    def test_parse_decisions(self):
        decisions = parse_decisions({
            "decisions": [
                {"name": "Eldoria", "correct_category": "Faction", "reasoning": "has a queen"},
                {"name": "Rover", "category": "character"},
                {"name": "Gyrocopter", "correct_category": "vehicle"},
                {"correct_category": "item"},
                "Eldoria is a faction",
            ]
        })

        assert [(d.name, d.category, d.reasoning) for d in decisions] == [
            ("Eldoria", "faction", "has a queen"),
            ("Rover", "character", None),
        ]

    def test_parse_decisions_without_list(self):
        assert parse_decisions({"decisions": "none"}) == []

    @pytest.mark.asyncio
    async def test_resolve_sends_groups(self):
        llm = MockLLMProvider([
            json.dumps({"decisions": [{"name": "Eldoria", "correct_category": "faction"}]})
        ])
        decisions = await LLMCategoryResolver(llm).resolve([_eldoria_group()])

        assert [(d.name, d.category) for d in decisions] == [("Eldoria", "faction")]
        prompt = llm.calls[0]["messages"][-1]["content"]
        assert 'DUPLICATE GROUP: "eldoria"' in prompt
        assert '- FACTION: "Eldoria" - The ruling houses of Eldoria' in prompt
        assert '- LOCATION: "Eldoria" - no description' in prompt

    @pytest.mark.asyncio
    async def test_no_groups_no_call(self):
        llm = MockLLMProvider()
        assert await LLMCategoryResolver(llm).resolve([]) == []
        assert llm.calls == []


class TestGapTypeValidation:
    def test_wrong_world_type_creates_no_world(self):
        collections = EntityCollections()
        report = parse_gap_report({"world_enhancements": {"time_period": 1850}})

        apply_gap_report(collections, report)

        assert collections.world is None

    def test_wrong_entity_type_is_skipped(self):
        collections = EntityCollections(characters=[Character(name="Aria")])
        report = parse_gap_report({
            "character_inferences": [
                {
                    "name": "Aria",
                    "inferred_fields": {
                        "gender": {"value": 7, "confidence": "high"},
                        "species": {"value": "elf", "confidence": "high"},
                    },
                }
            ]
        })

        assert apply_gap_report(collections, report) == 1
        aria = collections.characters[0]
        assert aria.gender is None
        assert aria.species == "elf"
        assert aria.inferred_fields == {"species": "high"}

    def test_undeclared_world_field_is_kept(self):
        collections = EntityCollections()
        report = parse_gap_report({"world_enhancements": {"calendar": "Reckoning of Ash"}})

        apply_gap_report(collections, report)

        assert collections.world.model_extra == {"calendar": "Reckoning of Ash"}
