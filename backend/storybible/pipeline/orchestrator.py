"""Pipeline Orchestrator - runs the fixed extraction stage sequence.

    1: Document Analysis -> 2: Entity Extraction (7 extractors, concurrent) ->
    3: Relationship Mapping -> 4: Gap Analysis -> 4.5: Deduplication ->
    5: Consolidation

Each session runs as its own asyncio task. The task waits for the push
channel's start handshake before doing any work, so no progress is published
into a channel nobody has joined. Gating stages (all but 2) abort the session
on failure or timeout; extractor failures in Stage 2 only empty their slice.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, TypeVar

from storybible.agents.gaps import apply_gap_report
from storybible.agents.models import ExtractionContext, ExtractionOptions
from storybible.pipeline.consolidation import consolidate, relationship_density
from storybible.pipeline.deduplication import CategoryDecision, DeduplicationReconciler, ReconcileResult
from storybible.pipeline.errors import (
    AgentFailure,
    AgentTimeoutError,
    DocumentValidationError,
    ResultAlreadyWrittenError,
    StageFailure,
    StageTimeoutError,
)
from storybible.pipeline.events import (
    AgentDetailPayload,
    AgentTaskPayload,
    CompletePayload,
    ErrorPayload,
    EventPayload,
    FoundCharacters,
    FoundDeduplication,
    FoundEvents,
    FoundFactions,
    FoundItems,
    FoundLocations,
    FoundLore,
    FoundRelationships,
    FoundWorld,
    StagePayload,
    StartedPayload,
)
from storybible.pipeline.models import (
    EXTRACTOR_SLICES,
    STAGE_NAMES,
    STAGE_ORDER,
    STAGE_STATES,
    EntityCollections,
    ExtractorKey,
    FinalResult,
    PipelineState,
    Session,
    StoryEntity,
    TaskStatus,
    Timing,
    World,
    stage_key,
    utc_now,
)
from storybible.pipeline.store import LookupState, ResultStore

if TYPE_CHECKING:
    from storybible.agents import AgentSuite
    from storybible.agents.base import ExtractorAgent
    from storybible.pipeline.registry import SessionEntry, SessionRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Slice name -> found payload class
_FOUND_PAYLOADS: dict[str, type] = {
    "characters": FoundCharacters,
    "world": FoundWorld,
    "locations": FoundLocations,
    "items": FoundItems,
    "factions": FoundFactions,
    "lore": FoundLore,
    "events": FoundEvents,
}


class PipelineOrchestrator:
    """
    Drives extraction sessions from start request to terminal result.

    Usage:
        orchestrator = PipelineOrchestrator(registry, store, build_agent_suite(llm))
        orchestrator.start(session_id, document)
        orchestrator.handshake(session_id)   # pipeline begins
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: ResultStore,
        agents: AgentSuite,
        *,
        reconciler: DeduplicationReconciler | None = None,
        stage_timeout_s: float = 300.0,
        agent_timeout_s: float = 180.0,
        max_document_chars: int = 500_000,
    ) -> None:
        keys = [agent.key for agent in agents.extractors]
        if sorted(keys) != sorted(ExtractorKey) or len(keys) != len(set(keys)):
            raise ValueError(
                f"Expected exactly one extractor per key {[k.value for k in ExtractorKey]}, "
                f"got {[k.value for k in keys]}"
            )
        self.registry = registry
        self.store = store
        self.agents = agents
        self.reconciler = reconciler or DeduplicationReconciler()
        self.stage_timeout_s = stage_timeout_s
        self.agent_timeout_s = agent_timeout_s
        self.max_document_chars = max_document_chars

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def validate_document(self, document: str) -> None:
        if not isinstance(document, str) or not document.strip():
            raise DocumentValidationError("Document text is required")
        if len(document) > self.max_document_chars:
            raise DocumentValidationError(
                f"Document is too long ({len(document)} characters, "
                f"maximum {self.max_document_chars})"
            )

    def start(
        self,
        session_id: str,
        document: str,
        options: ExtractionOptions | None = None,
    ) -> SessionEntry:
        """
        Register a session and schedule its pipeline. Returns immediately.

        The pipeline task waits for handshake() before running Stage 1.

        Raises:
            DocumentValidationError: empty or oversized document
        """
        self.validate_document(document)
        session = Session(id=session_id, document_length=len(document))
        entry = self.registry.create(session)
        entry.task = asyncio.get_running_loop().create_task(
            self._run(entry, document, options or ExtractionOptions()),
            name=f"extraction-{session_id}",
        )
        logger.info("Session %s created (%d characters)", session_id, len(document))
        return entry

    def handshake(self, session_id: str) -> bool:
        """
        Start handshake from a joined consumer.

        Returns True when this call started the pipeline, False if it was
        already started.
        """
        entry = self.registry.get(session_id)
        entry.session.touch()
        started = entry.channel.start()
        if started:
            logger.info("Session %s: start handshake received", session_id)
        return started

    async def aclose(self) -> None:
        """Cancel every pipeline task still running."""
        tasks = [e.task for e in self.registry if e.task is not None and not e.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, entry: SessionEntry, document: str, options: ExtractionOptions) -> None:
        await entry.channel.wait_started()
        try:
            await self._execute(entry, document, options)
        except StageFailure as e:
            self._fail(entry, e)
        except asyncio.CancelledError:
            logger.info("Session %s cancelled", entry.session.id)
            raise
        except Exception as e:
            logger.exception("Session %s: unexpected pipeline error", entry.session.id)
            stage = entry.session.last_stage or STAGE_ORDER[0]
            self._fail(entry, StageFailure(stage, str(e) or type(e).__name__))

    async def _execute(self, entry: SessionEntry, document: str, options: ExtractionOptions) -> None:
        session = entry.session
        started_at = utc_now()
        collections = EntityCollections()
        self._publish(entry, StartedPayload(document_length=session.document_length))

        # Stage 1
        analysis = await self._gating(entry, 1, lambda: self.agents.analyzer.analyze(document))
        if analysis.chapter_structure.has_explicit_structure:
            collections.chapter_structure = analysis.chapter_structure

        # Stage 2
        context = ExtractionContext(
            analysis=analysis,
            options=options,
            report_detail=lambda message: self._publish(entry, AgentDetailPayload(detail=message)),
        )
        await self._run_extractors(entry, document, context, collections)

        # Stage 3
        relationships = await self._gating(
            entry,
            3,
            lambda: self.agents.relationship_mapper.map_relationships(document, collections, analysis),
        )
        if relationships.density is None:
            relationships.density = relationship_density(relationships, len(collections.characters))
        collections.relationships = relationships
        self._publish(entry, FoundRelationships(data=relationships.model_copy(deep=True)))

        # Stage 4
        async def fill_gaps() -> int:
            report = await self.agents.gap_analyzer.find_gaps(document, collections, analysis)
            return apply_gap_report(collections, report)

        applied = await self._gating(entry, 4, fill_gaps)
        logger.info("Session %s: applied %d inferred fields", session.id, applied)

        # Stage 4.5
        async def deduplicate() -> ReconcileResult:
            decisions = await self._resolve_categories(entry, collections)
            return self.reconciler.reconcile(collections, decisions)

        reconciled = await self._gating(entry, 4.5, deduplicate)
        collections = reconciled.merged_collections
        collections.deduplication = reconciled.report
        self._publish(entry, FoundDeduplication(data=collections.deduplication.model_copy(deep=True)))

        # Stage 5
        failed_agents = [
            task.agent_key.value
            for task in session.agent_tasks.values()
            if task.status == TaskStatus.FAILED
        ]

        async def finalize() -> FinalResult:
            final = consolidate(collections, failed_agents=failed_agents)
            result = FinalResult(data=final, timing=self._timing(session, started_at))
            self.store.put(session.id, result, document_length=session.document_length)
            return result

        result = await self._gating(entry, 5, finalize)
        session.advance(PipelineState.COMPLETE)
        self._publish(entry, CompletePayload(data=result.data, timing=result.timing))
        entry.channel.close()
        logger.info("Session %s complete in %d ms", session.id, result.timing.total_ms)

    async def _gating(
        self,
        entry: SessionEntry,
        stage: float,
        work: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one gating stage under the stage timeout."""
        self._enter_stage(entry, stage)
        try:
            result = await asyncio.wait_for(work(), timeout=self.stage_timeout_s)
        except TimeoutError as e:
            raise StageTimeoutError(stage, self.stage_timeout_s) from e
        except StageFailure:
            raise
        except Exception as e:
            logger.warning("Session %s: stage %g failed", entry.session.id, stage, exc_info=True)
            raise StageFailure(stage, str(e) or type(e).__name__) from e
        self._leave_stage(entry, stage)
        return result

    async def _resolve_categories(
        self, entry: SessionEntry, collections: EntityCollections
    ) -> list[CategoryDecision]:
        """Ask the category resolver about duplicate groups. Empty means precedence decides."""
        resolver = self.agents.category_resolver
        if resolver is None:
            return []
        groups = self.reconciler.duplicate_groups(collections)
        if not groups:
            return []
        try:
            return await asyncio.wait_for(resolver.resolve(groups), timeout=self.agent_timeout_s)
        except Exception:
            logger.warning(
                "Session %s: category resolver failed, falling back to category precedence",
                entry.session.id,
                exc_info=True,
            )
            return []

    async def _run_extractors(
        self,
        entry: SessionEntry,
        document: str,
        context: ExtractionContext,
        collections: EntityCollections,
    ) -> None:
        """Stage 2: every extractor concurrently; completes once all have settled."""
        self._enter_stage(entry, 2)
        await asyncio.gather(
            *(
                self._run_extractor(entry, agent, document, context, collections)
                for agent in self.agents.extractors
            )
        )
        self._leave_stage(entry, 2)

    async def _run_extractor(
        self,
        entry: SessionEntry,
        agent: ExtractorAgent,
        document: str,
        context: ExtractionContext,
        collections: EntityCollections,
    ) -> None:
        """One self-settling extractor task. Never raises except on cancellation."""
        task = entry.session.agent_tasks[agent.key]
        slice_name = EXTRACTOR_SLICES[agent.key]
        task.start()
        self._publish(entry, AgentTaskPayload(agent=agent.key, status="running"))

        try:
            try:
                value = await asyncio.wait_for(
                    agent.extract(document, context), timeout=self.agent_timeout_s
                )
            except TimeoutError as e:
                raise AgentTimeoutError(agent.key.value, self.agent_timeout_s) from e
            except AgentFailure:
                raise
            except Exception as e:
                raise AgentFailure(agent.key.value, str(e) or type(e).__name__) from e

            if slice_name == "world":
                if value is not None and not isinstance(value, World):
                    raise AgentFailure(agent.key.value, f"expected World, got {type(value).__name__}")
                count = 0 if value is None else 1
            else:
                if not isinstance(value, list):
                    raise AgentFailure(agent.key.value, f"expected a list, got {type(value).__name__}")
                wrong = next((v for v in value if not isinstance(v, StoryEntity)), None)
                if wrong is not None:
                    raise AgentFailure(agent.key.value, f"expected entities, got {type(wrong).__name__}")
                count = len(value)
        except AgentFailure as failure:
            task.fail(failure.message)
            logger.warning("Session %s: %s", entry.session.id, failure)
            self._publish(
                entry,
                AgentTaskPayload(agent=agent.key, status="failed", error=failure.message),
            )
            return

        collections.assign_slice(slice_name, value)
        task.complete(count)
        self._publish(entry, AgentTaskPayload(agent=agent.key, status="complete", count=count))
        # Later stages edit the collections in place; the event carries a copy
        snapshot = copy.deepcopy(getattr(collections, slice_name))
        self._publish(entry, _FOUND_PAYLOADS[slice_name](data=snapshot))

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _publish(self, entry: SessionEntry, payload: EventPayload) -> None:
        event = entry.channel.publish(payload)
        if event is not None:
            entry.session.last_event_seq = event.seq
        entry.session.touch()

    def _enter_stage(self, entry: SessionEntry, stage: float) -> None:
        entry.session.advance(STAGE_STATES[stage])
        entry.session.stages[stage].start()
        entry.session.last_stage = stage
        logger.info("Session %s: stage %g (%s) running", entry.session.id, stage, STAGE_NAMES[stage])
        self._publish(entry, StagePayload(stage=stage, status="running"))

    def _leave_stage(self, entry: SessionEntry, stage: float) -> None:
        record = entry.session.stages[stage]
        record.complete()
        logger.info(
            "Session %s: stage %g (%s) complete in %d ms",
            entry.session.id,
            stage,
            STAGE_NAMES[stage],
            record.duration_ms or 0,
        )
        self._publish(entry, StagePayload(stage=stage, status="complete"))

    @staticmethod
    def _timing(session: Session, started_at: datetime) -> Timing:
        """Timing as of now; a stage still running is measured up to now."""
        completed_at = utc_now()
        stages = {}
        for number, record in session.stages.items():
            if record.started_at is not None:
                ended_at = record.completed_at or completed_at
                stages[stage_key(number)] = int((ended_at - record.started_at).total_seconds() * 1000)
        return Timing(
            started_at=started_at,
            completed_at=completed_at,
            total_ms=int((completed_at - started_at).total_seconds() * 1000),
            stages=stages,
        )

    def _fail(self, entry: SessionEntry, failure: StageFailure) -> None:
        session = entry.session
        stored = self.store.lookup(session.id)
        if stored is not None and stored.state == LookupState.READY:
            # The result is already what pollers see; push must agree
            self._complete_from_store(entry, stored.payload, failure)
            return

        record = session.stages.get(failure.stage)
        if record is not None and record.status == TaskStatus.RUNNING:
            record.fail()
        if not session.is_terminal:
            session.advance(PipelineState.ERROR)
        message = str(failure)
        session.error = message
        logger.error("Session %s failed: %s", session.id, message)

        try:
            self.store.put_failure(session.id, message, document_length=session.document_length)
        except ResultAlreadyWrittenError:
            logger.warning("Session %s: terminal outcome already stored", session.id)
        self._publish(entry, ErrorPayload(message=message))
        entry.channel.close()

    def _complete_from_store(self, entry: SessionEntry, payload: bytes, failure: StageFailure) -> None:
        session = entry.session
        logger.warning(
            "Session %s: %s after its result was stored; delivering the stored result",
            session.id,
            failure,
        )
        for record in session.stages.values():
            if record.status == TaskStatus.RUNNING:
                record.complete()
        if not session.is_terminal:
            session.advance(PipelineState.COMPLETE)
        result = FinalResult.model_validate_json(payload)
        self._publish(entry, CompletePayload(data=result.data, timing=result.timing))
        entry.channel.close()
