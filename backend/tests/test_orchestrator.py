"""
Tests for the pipeline orchestrator.

Stage collaborators are fakes from tests.factories; these tests cover stage
sequencing, the Stage-2 fan-out, failure handling and result delivery.
"""

import asyncio
import json

import pytest

from storybible.agents.models import DocumentAnalysis, EntityInference, GapReport, InferredValue
from storybible.pipeline.deduplication import CategoryDecision, DeduplicationReconciler
from storybible.pipeline.errors import DocumentValidationError, StageFailure
from storybible.pipeline.events import (
    AgentTaskEvent,
    CompleteEvent,
    ErrorEvent,
    FoundCharacters,
    FoundDeduplication,
    FoundEvent,
    FoundLore,
    StageEvent,
    StartedEvent,
)
from storybible.pipeline.models import (
    Chapter,
    ChapterStructure,
    ExtractorKey,
    Faction,
    FinalResult,
    Location,
    PipelineState,
    SessionStatus,
    TaskStatus,
)
from storybible.pipeline.store import LookupState, ResultStore
from tests.factories import (
    SESSION_ID,
    FakeAnalyzer,
    FakeCategoryResolver,
    FakeExtractor,
    FakeGapAnalyzer,
    FakeMapper,
    make_extractors,
    make_orchestrator,
    make_suite,
    run_session,
)


def _stage_events(events):
    return [(e.payload.stage, e.payload.status) for e in events if isinstance(e, StageEvent)]


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_started_then_character_count_matches_found(self):
        """A 2000 character document: started carries its length, counts match found data."""
        orchestrator = make_orchestrator()
        entry, events = await run_session(orchestrator, "x" * 2000)

        assert isinstance(events[0], StartedEvent)
        assert events[0].payload.document_length == 2000

        task_event = next(
            e for e in events
            if isinstance(e, AgentTaskEvent)
            and e.payload.agent == ExtractorKey.CHARACTER
            and e.payload.status == "complete"
        )
        found = next(
            e for e in events
            if isinstance(e, FoundEvent) and isinstance(e.payload, FoundCharacters)
        )
        assert task_event.payload.count == 2
        assert len(found.payload.data) == task_event.payload.count

    @pytest.mark.asyncio
    async def test_stages_run_in_order(self):
        orchestrator = make_orchestrator()
        _, events = await run_session(orchestrator)

        assert _stage_events(events) == [
            (1, "running"), (1, "complete"),
            (2, "running"), (2, "complete"),
            (3, "running"), (3, "complete"),
            (4, "running"), (4, "complete"),
            (4.5, "running"), (4.5, "complete"),
            (5, "running"), (5, "complete"),
        ]
        assert isinstance(events[-1], CompleteEvent)

    @pytest.mark.asyncio
    async def test_seq_strictly_increases(self):
        orchestrator = make_orchestrator()
        entry, events = await run_session(orchestrator)

        seqs = [e.seq for e in events]
        assert seqs == sorted(seqs)
        assert len(set(seqs)) == len(seqs)
        assert entry.session.last_event_seq == seqs[-1]

    @pytest.mark.asyncio
    async def test_stage_2_completes_after_every_task_settles(self):
        orchestrator = make_orchestrator()
        _, events = await run_session(orchestrator)

        stage_2_done = next(
            i for i, e in enumerate(events)
            if isinstance(e, StageEvent) and e.payload.stage == 2 and e.payload.status == "complete"
        )
        settled = [
            i for i, e in enumerate(events)
            if isinstance(e, AgentTaskEvent) and e.payload.status in ("complete", "failed")
        ]
        assert len(settled) == len(ExtractorKey)
        assert max(settled) < stage_2_done

    @pytest.mark.asyncio
    async def test_extractors_run_concurrently(self):
        """The character extractor blocks until the lore extractor runs."""
        gate = asyncio.Event()

        class GateOpener(FakeExtractor):
            async def extract(self, document, context):
                gate.set()
                return await super().extract(document, context)

        extractors = make_extractors(
            CHARACTER=FakeExtractor(ExtractorKey.CHARACTER, [], gate=gate),
            LORE=GateOpener(ExtractorKey.LORE, []),
        )
        orchestrator = make_orchestrator(make_suite(extractors=extractors))
        entry, _ = await run_session(orchestrator, timeout=2.0)

        assert entry.session.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_session_complete_and_result_stored(self):
        store = ResultStore()
        orchestrator = make_orchestrator(store=store)
        entry, events = await run_session(orchestrator)

        assert entry.session.state == PipelineState.COMPLETE
        assert all(t.status == TaskStatus.COMPLETE for t in entry.session.agent_tasks.values())
        result = store.get_result(SESSION_ID)
        assert result is not None
        assert [c.name for c in result.data.characters] == ["Aria", "Borin"]
        assert result.data.world.name == "The Shattered Realm"
        assert result.data.summary.total_relationships == 1
        assert set(result.timing.stages) == {"1", "2", "3", "4", "4.5", "5"}

    @pytest.mark.asyncio
    async def test_push_and_poll_carry_identical_bytes(self):
        store = ResultStore()
        orchestrator = make_orchestrator(store=store)
        _, events = await run_session(orchestrator)

        complete = events[-1]
        assert isinstance(complete, CompleteEvent)
        pushed = FinalResult(data=complete.payload.data, timing=complete.payload.timing)

        first = store.lookup(SESSION_ID).payload
        second = store.lookup(SESSION_ID).payload
        assert first == second
        assert pushed.model_dump_json(by_alias=True).encode("utf-8") == first
        assert json.loads(first)["success"] is True

    @pytest.mark.asyncio
    async def test_gap_report_is_applied(self):
        report = GapReport(
            character_inferences=[
                EntityInference(
                    name="Aria",
                    inferred_fields={
                        "gender": InferredValue(value="female", confidence="high"),
                        "appearance": InferredValue(value="tall", confidence="low"),
                    },
                )
            ],
        )
        store = ResultStore()
        orchestrator = make_orchestrator(make_suite(gap_analyzer=FakeGapAnalyzer(report)), store=store)
        await run_session(orchestrator)

        aria = store.get_result(SESSION_ID).data.characters[0]
        assert aria.gender == "female"
        assert aria.appearance is None
        assert aria.inferred_fields == {"gender": "high"}

    @pytest.mark.asyncio
    async def test_relationship_mapper_sees_stage_2_output(self):
        mapper = FakeMapper()
        orchestrator = make_orchestrator(make_suite(relationship_mapper=mapper))
        await run_session(orchestrator)

        assert [c.name for c in mapper.seen.characters] == ["Aria", "Borin"]

    @pytest.mark.asyncio
    async def test_agent_detail_events_are_published(self):
        orchestrator = make_orchestrator()
        _, events = await run_session(orchestrator)

        details = [e for e in events if e.type == "agentDetail"]
        assert len(details) == len(ExtractorKey)


class TestCrossCategoryDuplicates:
    @pytest.mark.asyncio
    async def test_location_and_faction_with_same_name(self):
        extractors = make_extractors(
            {
                ExtractorKey.LOCATION: [Location(name="Eldoria", location_type="kingdom")],
                ExtractorKey.FACTION: [Faction(name="Eldoria", leader="Queen Maren")],
            }
        )
        store = ResultStore()
        orchestrator = make_orchestrator(make_suite(extractors=extractors), store=store)
        _, events = await run_session(orchestrator)

        data = store.get_result(SESSION_ID).data
        names = [e.label for _, e in data.iter_named()]
        assert names.count("Eldoria") == 1
        assert len(data.deduplication.resolution_log) == 1
        entry = data.deduplication.resolution_log[0]
        assert {entry.winner.id, *(l.id for l in entry.losers)} == {"LOC0001", "FAC0001"}

        found = [e for e in events if isinstance(e, FoundEvent) and isinstance(e.payload, FoundDeduplication)]
        assert found[0].payload.data.duplicates_found == 1


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_failed_extractor_leaves_empty_slice(self):
        extractors = make_extractors(LORE=FakeExtractor(ExtractorKey.LORE, error=RuntimeError("model overloaded")))
        store = ResultStore()
        orchestrator = make_orchestrator(make_suite(extractors=extractors), store=store)
        entry, events = await run_session(orchestrator)

        failed = [
            e for e in events
            if isinstance(e, AgentTaskEvent) and e.payload.status == "failed"
        ]
        assert len(failed) == 1
        assert failed[0].payload.agent == ExtractorKey.LORE
        assert "model overloaded" in failed[0].payload.error
        assert not any(isinstance(e, FoundEvent) and isinstance(e.payload, FoundLore) for e in events)

        assert entry.session.status == SessionStatus.COMPLETE
        result = store.get_result(SESSION_ID)
        assert result.data.lore == []
        assert result.data.summary.failed_agents == ["LoreExtractor"]
        assert len(result.data.characters) == 2

    @pytest.mark.asyncio
    async def test_agent_timeout_is_non_fatal(self):
        extractors = make_extractors(EVENT=FakeExtractor(ExtractorKey.EVENT, [], delay=1.0))
        orchestrator = make_orchestrator(make_suite(extractors=extractors), agent_timeout_s=0.05)
        entry, _ = await run_session(orchestrator)

        task = entry.session.agent_tasks[ExtractorKey.EVENT]
        assert task.status == TaskStatus.FAILED
        assert "timed out" in task.error
        assert entry.session.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_wrong_result_type_is_agent_failure(self):
        extractors = make_extractors({ExtractorKey.WORLD: [Location(name="Not a world")]})
        orchestrator = make_orchestrator(make_suite(extractors=extractors))
        entry, _ = await run_session(orchestrator)

        assert entry.session.agent_tasks[ExtractorKey.WORLD].status == TaskStatus.FAILED
        assert entry.session.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_every_extractor_failing_still_completes(self):
        extractors = [FakeExtractor(key, error=ValueError("bad reply")) for key in ExtractorKey]
        store = ResultStore()
        orchestrator = make_orchestrator(make_suite(extractors=extractors), store=store)
        entry, _ = await run_session(orchestrator)

        assert entry.session.status == SessionStatus.COMPLETE
        assert len(store.get_result(SESSION_ID).data.summary.failed_agents) == len(ExtractorKey)


class TestGatingFailures:
    @pytest.mark.asyncio
    async def test_stage_1_failure_never_reaches_stage_2(self):
        store = ResultStore()
        orchestrator = make_orchestrator(
            make_suite(analyzer=FakeAnalyzer(error=RuntimeError("analysis exploded"))),
            store=store,
        )
        entry, events = await run_session(orchestrator)

        assert not any(stage == 2 for stage, _ in _stage_events(events))
        assert isinstance(events[-1], ErrorEvent)
        assert "analysis exploded" in events[-1].payload.message
        assert not any(isinstance(e, CompleteEvent) for e in events)

        assert entry.session.status == SessionStatus.ERROR
        assert entry.session.stages[1].status == TaskStatus.FAILED
        found = store.lookup(SESSION_ID)
        assert found.state == LookupState.FAILED
        assert store.get_result(SESSION_ID) is None

    @pytest.mark.asyncio
    async def test_stage_timeout_is_fatal(self):
        orchestrator = make_orchestrator(
            make_suite(analyzer=FakeAnalyzer(delay=1.0)),
            stage_timeout_s=0.05,
        )
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert "timed out" in events[-1].payload.message
        assert entry.session.state == PipelineState.ERROR

    @pytest.mark.asyncio
    async def test_stage_3_failure(self):
        orchestrator = make_orchestrator(
            make_suite(relationship_mapper=FakeMapper(error=RuntimeError("mapper down")))
        )
        entry, events = await run_session(orchestrator)

        assert events[-1].payload.message.startswith("Stage 3 failed")
        assert entry.session.stages[2].status == TaskStatus.COMPLETE
        assert entry.session.stages[3].status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_error_message_is_never_empty(self):
        orchestrator = make_orchestrator(make_suite(gap_analyzer=FakeGapAnalyzer(error=RuntimeError())))
        _, events = await run_session(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].payload.message


class TestHandshake:
    @pytest.mark.asyncio
    async def test_nothing_runs_before_handshake(self):
        analyzer = FakeAnalyzer()
        orchestrator = make_orchestrator(make_suite(analyzer=analyzer))
        entry = orchestrator.start(SESSION_ID, "Aria met Borin.")
        subscription = entry.channel.subscribe()

        await asyncio.sleep(0.05)

        assert analyzer.calls == 0
        assert entry.channel.seq == 0
        assert subscription._queue.empty()
        assert entry.session.state == PipelineState.CREATED

        assert orchestrator.handshake(SESSION_ID) is True
        assert orchestrator.handshake(SESSION_ID) is False
        events = await asyncio.wait_for(_drain(subscription), timeout=5)
        assert isinstance(events[0], StartedEvent)
        assert analyzer.calls == 1

    @pytest.mark.asyncio
    async def test_leaving_does_not_cancel_pipeline(self):
        store = ResultStore()
        orchestrator = make_orchestrator(store=store)
        entry = orchestrator.start(SESSION_ID, "Aria met Borin.")
        subscription = entry.channel.subscribe()
        orchestrator.handshake(SESSION_ID)
        subscription.close()

        await asyncio.wait_for(entry.task, timeout=5)

        assert entry.session.status == SessionStatus.COMPLETE
        assert store.lookup(SESSION_ID).state == LookupState.READY

    @pytest.mark.asyncio
    async def test_aclose_cancels_waiting_sessions(self):
        orchestrator = make_orchestrator()
        entry = orchestrator.start(SESSION_ID, "Aria met Borin.")

        await orchestrator.aclose()

        assert entry.task.cancelled()


class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_document_rejected(self):
        orchestrator = make_orchestrator()
        with pytest.raises(DocumentValidationError):
            orchestrator.start(SESSION_ID, "   ")
        assert SESSION_ID not in orchestrator.registry

    @pytest.mark.asyncio
    async def test_oversized_document_rejected(self):
        orchestrator = make_orchestrator(max_document_chars=10)
        with pytest.raises(DocumentValidationError, match="too long"):
            orchestrator.start(SESSION_ID, "x" * 11)

    def test_requires_one_extractor_per_key(self):
        extractors = make_extractors()[:-1]
        with pytest.raises(ValueError):
            make_orchestrator(make_suite(extractors=extractors))


async def _drain(subscription):
    return [event async for event in subscription]


class TestLateStageFailures:
    @pytest.mark.asyncio
    async def test_stage_4_failure_stores_no_result(self):
        store = ResultStore()
        orchestrator = make_orchestrator(
            make_suite(gap_analyzer=FakeGapAnalyzer(error=RuntimeError("gap model down"))),
            store=store,
        )
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].payload.message.startswith("Stage 4 failed")
        assert not any(isinstance(e, CompleteEvent) for e in events)
        assert not any(stage == 4.5 for stage, _ in _stage_events(events))
        assert entry.session.stages[4].status == TaskStatus.FAILED
        assert store.lookup(SESSION_ID).state == LookupState.FAILED
        assert store.get_result(SESSION_ID) is None

    @pytest.mark.asyncio
    async def test_stage_4_5_failure_stores_no_result(self):
        class BrokenReconciler(DeduplicationReconciler):
            def reconcile(self, collections, decisions=()):
                raise RuntimeError("reconciler exploded")

        store = ResultStore()
        orchestrator = make_orchestrator(store=store, reconciler=BrokenReconciler())
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].payload.message.startswith("Stage 4.5 failed")
        assert "reconciler exploded" in events[-1].payload.message
        assert entry.session.stages[4].status == TaskStatus.COMPLETE
        assert entry.session.stages[4.5].status == TaskStatus.FAILED
        assert entry.session.state == PipelineState.ERROR
        assert store.lookup(SESSION_ID).state == LookupState.FAILED

    @pytest.mark.asyncio
    async def test_stage_5_failure_stores_no_result(self, monkeypatch):
        def failing_consolidate(collections, *, failed_agents=()):
            raise StageFailure(5, "Duplicate entity ids: CHR0001")

        monkeypatch.setattr("storybible.pipeline.orchestrator.consolidate", failing_consolidate)
        store = ResultStore()
        orchestrator = make_orchestrator(store=store)
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].payload.message == "Stage 5 failed: Duplicate entity ids: CHR0001"
        assert entry.session.stages[5].status == TaskStatus.FAILED
        assert store.lookup(SESSION_ID).state == LookupState.FAILED
        assert store.get_result(SESSION_ID) is None

    @pytest.mark.asyncio
    async def test_gap_apply_failure_is_reported_as_stage_4(self, monkeypatch):
        def failing_apply(collections, report):
            raise ValueError("cannot apply")

        monkeypatch.setattr("storybible.pipeline.orchestrator.apply_gap_report", failing_apply)
        orchestrator = make_orchestrator()
        entry, events = await run_session(orchestrator)

        assert events[-1].payload.message == "Stage 4 failed: cannot apply"
        assert entry.session.stages[4].status == TaskStatus.FAILED
        assert (4, "complete") not in _stage_events(events)

    @pytest.mark.asyncio
    async def test_unexpected_error_names_last_entered_stage(self, monkeypatch):
        def failing_density(relationships, character_count):
            raise RuntimeError("density exploded")

        monkeypatch.setattr("storybible.pipeline.orchestrator.relationship_density", failing_density)
        orchestrator = make_orchestrator()
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].payload.message == "Stage 3 failed: density exploded"
        assert entry.session.last_stage == 3


class TestGapReportValidation:
    @pytest.mark.asyncio
    async def test_wrongly_typed_world_enhancement_is_skipped(self):
        report = GapReport(world_enhancements={"time_period": 1850})
        extractors = make_extractors({ExtractorKey.WORLD: None})
        store = ResultStore()
        orchestrator = make_orchestrator(
            make_suite(extractors=extractors, gap_analyzer=FakeGapAnalyzer(report)),
            store=store,
        )
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], CompleteEvent)
        assert entry.session.status == SessionStatus.COMPLETE
        assert store.get_result(SESSION_ID).data.world is None

    @pytest.mark.asyncio
    async def test_valid_enhancements_survive_next_to_invalid_ones(self):
        report = GapReport(world_enhancements={"time_period": 1850, "tone": "grim"})
        store = ResultStore()
        orchestrator = make_orchestrator(make_suite(gap_analyzer=FakeGapAnalyzer(report)), store=store)
        await run_session(orchestrator)

        world = store.get_result(SESSION_ID).data.world
        assert world.time_period is None
        assert world.tone == "grim"


class TestResultConvergence:
    @pytest.mark.asyncio
    async def test_archive_failure_still_completes(self, temp_db_path, monkeypatch):
        def failing_archive(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("storybible.pipeline.store.archive_result", failing_archive)
        store = ResultStore(archive_path=temp_db_path)
        orchestrator = make_orchestrator(store=store)
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], CompleteEvent)
        assert entry.session.status == SessionStatus.COMPLETE
        assert store.lookup(SESSION_ID).state == LookupState.READY

    @pytest.mark.asyncio
    async def test_error_after_result_stored_delivers_stored_result(self):
        class StoreThatRaisesAfterWrite(ResultStore):
            def put(self, session_id, result, **kwargs):
                super().put(session_id, result, **kwargs)
                raise OSError("disk full")

        store = StoreThatRaisesAfterWrite()
        orchestrator = make_orchestrator(store=store)
        entry, events = await run_session(orchestrator)

        assert not any(isinstance(e, ErrorEvent) for e in events)
        complete = events[-1]
        assert isinstance(complete, CompleteEvent)
        assert entry.session.state == PipelineState.COMPLETE
        stored = store.lookup(SESSION_ID)
        assert stored.state == LookupState.READY
        assert complete.payload.data == store.get_result(SESSION_ID).data

    @pytest.mark.asyncio
    async def test_timing_covers_every_stage(self):
        store = ResultStore()
        orchestrator = make_orchestrator(store=store)
        await run_session(orchestrator)

        timing = store.get_result(SESSION_ID).timing
        assert set(timing.stages) == {"1", "2", "3", "4", "4.5", "5"}
        assert all(ms >= 0 for ms in timing.stages.values())


class TestFoundSnapshots:
    @pytest.mark.asyncio
    async def test_found_characters_are_not_changed_by_gap_analysis(self):
        report = GapReport(
            character_inferences=[
                EntityInference(
                    name="Aria",
                    inferred_fields={"gender": InferredValue(value="female", confidence="high")},
                )
            ],
        )
        store = ResultStore()
        orchestrator = make_orchestrator(make_suite(gap_analyzer=FakeGapAnalyzer(report)), store=store)
        _, events = await run_session(orchestrator)

        found = next(
            e for e in events if isinstance(e, FoundEvent) and isinstance(e.payload, FoundCharacters)
        )
        aria = found.payload.data[0]
        assert aria.gender is None
        assert aria.inferred_fields == {}
        assert store.get_result(SESSION_ID).data.characters[0].gender == "female"

    @pytest.mark.asyncio
    async def test_non_entity_items_are_agent_failure(self):
        class RawItemExtractor(FakeExtractor):
            async def extract(self, document, context):
                return [{"name": "Moonblade"}]

        extractors = make_extractors(ITEM=RawItemExtractor(ExtractorKey.ITEM))
        orchestrator = make_orchestrator(make_suite(extractors=extractors))
        entry, _ = await run_session(orchestrator)

        assert entry.session.agent_tasks[ExtractorKey.ITEM].status == TaskStatus.FAILED
        assert "expected entities, got dict" in entry.session.agent_tasks[ExtractorKey.ITEM].error
        assert entry.session.status == SessionStatus.COMPLETE


def _eldoria_extractors():
    return make_extractors(
        {
            ExtractorKey.LOCATION: [Location(name="Eldoria", location_type="kingdom")],
            ExtractorKey.FACTION: [Faction(name="Eldoria", leader="Queen Maren")],
        }
    )


class TestCategoryResolver:
    @pytest.mark.asyncio
    async def test_resolver_decision_picks_winner(self):
        resolver = FakeCategoryResolver(
            [CategoryDecision(name="Eldoria", category="faction", reasoning="ruled by a queen")]
        )
        store = ResultStore()
        orchestrator = make_orchestrator(
            make_suite(extractors=_eldoria_extractors(), category_resolver=resolver),
            store=store,
        )
        await run_session(orchestrator)

        assert [g.key for g in resolver.seen] == ["eldoria"]
        data = store.get_result(SESSION_ID).data
        assert [f.name for f in data.factions if f.name == "Eldoria"] == ["Eldoria"]
        assert all(l.name != "Eldoria" for l in data.locations)
        entry = data.deduplication.resolution_log[0]
        assert entry.winner.category == "faction"
        assert entry.resolved_by == "resolver"
        assert "ruled by a queen" in entry.reason

    @pytest.mark.asyncio
    async def test_resolver_failure_falls_back_to_precedence(self):
        resolver = FakeCategoryResolver(error=RuntimeError("resolver down"))
        store = ResultStore()
        orchestrator = make_orchestrator(
            make_suite(extractors=_eldoria_extractors(), category_resolver=resolver),
            store=store,
        )
        entry, events = await run_session(orchestrator)

        assert isinstance(events[-1], CompleteEvent)
        log = store.get_result(SESSION_ID).data.deduplication.resolution_log
        assert log[0].winner.category == "location"
        assert log[0].resolved_by == "precedence"

    @pytest.mark.asyncio
    async def test_resolver_timeout_falls_back_to_precedence(self):
        resolver = FakeCategoryResolver(
            [CategoryDecision(name="Eldoria", category="faction")], delay=1.0
        )
        store = ResultStore()
        orchestrator = make_orchestrator(
            make_suite(extractors=_eldoria_extractors(), category_resolver=resolver),
            store=store,
            agent_timeout_s=0.05,
        )
        entry, _ = await run_session(orchestrator)

        assert entry.session.status == SessionStatus.COMPLETE
        log = store.get_result(SESSION_ID).data.deduplication.resolution_log
        assert log[0].resolved_by == "precedence"

    @pytest.mark.asyncio
    async def test_resolver_not_called_without_duplicates(self):
        resolver = FakeCategoryResolver()
        orchestrator = make_orchestrator(make_suite(category_resolver=resolver))
        await run_session(orchestrator)

        assert resolver.seen is None


class TestStoryBibleExtras:
    @pytest.mark.asyncio
    async def test_chapter_structure_reaches_result(self):
        analysis = DocumentAnalysis(
            document_type="novel",
            estimated_word_count=500,
            chapter_structure=ChapterStructure(
                has_explicit_structure=True,
                structure_type="chapters",
                chapters=[Chapter(number=1, title="The Gate"), Chapter(number=2, title="The Siege")],
            ),
        )
        store = ResultStore()
        orchestrator = make_orchestrator(make_suite(analyzer=FakeAnalyzer(analysis)), store=store)
        await run_session(orchestrator)

        data = store.get_result(SESSION_ID).data
        assert [c.title for c in data.chapter_structure.chapters] == ["The Gate", "The Siege"]
        assert data.summary.has_chapter_structure is True
        assert data.summary.chapter_count == 2

    @pytest.mark.asyncio
    async def test_no_explicit_structure_is_omitted(self):
        store = ResultStore()
        orchestrator = make_orchestrator(store=store)
        await run_session(orchestrator)

        data = store.get_result(SESSION_ID).data
        assert data.chapter_structure is None
        assert data.summary.has_chapter_structure is False

    @pytest.mark.asyncio
    async def test_connections_and_vital_status(self):
        store = ResultStore()
        orchestrator = make_orchestrator(store=store)
        await run_session(orchestrator)

        data = store.get_result(SESSION_ID).data
        assert len(data.character_connections) == 1
        connection = data.character_connections[0]
        assert (connection.character_a.id, connection.character_b.id) == ("CHR0001", "CHR0002")
        assert connection.relationship_label == "mentor relationship"
        assert data.summary.total_connections == 1
        assert data.characters[0].vital_status_summary == "ALIVE - Protagonist"
