"""
Consumer side of an extraction session: push channel with poll fallback.

The consumer joins the push channel and sends the start handshake. If no
stage event arrives within the grace period, or the push stream is lost, it
also polls the result endpoint. Whichever path yields a terminal signal first
wins; the other is cancelled.

Usage:
    async with HttpTransport("http://127.0.0.1:8000") as transport:
        consumer = ExtractionConsumer(transport)
        delivery = await consumer.run(document_text)
        print(delivery.via, delivery.result.data.summary)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Literal

import httpx

from storybible.agents.models import ExtractionOptions
from storybible.pipeline.errors import (
    DocumentValidationError,
    ExtractionFailedError,
    SessionNotFoundError,
    TransportError,
)
from storybible.pipeline.events import CompleteEvent, ErrorEvent, ProgressEvent, StageEvent, parse_event
from storybible.pipeline.models import FinalResult
from storybible.pipeline.orchestrator import PipelineOrchestrator
from storybible.pipeline.store import PENDING_PAYLOAD, LookupState, ResultLookup
from storybible.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    result: FinalResult
    via: Literal["push", "poll"]


class ExtractionTransport(ABC):
    """How a consumer reaches the extraction service."""

    @abstractmethod
    async def create(self, text: str, options: ExtractionOptions | None = None) -> str:
        """Create a session, returning its id."""

    @abstractmethod
    def events(self, session_id: str, *, start: bool = True) -> AsyncIterator[ProgressEvent]:
        """Join the push channel (and optionally send start); yields events until the stream ends."""

    @abstractmethod
    async def poll(self, session_id: str) -> ResultLookup:
        """One poll of the result endpoint."""


class LocalTransport(ExtractionTransport):
    """In-process transport talking straight to an orchestrator."""

    def __init__(self, orchestrator: PipelineOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.registry = orchestrator.registry
        self.store = orchestrator.store

    async def create(self, text: str, options: ExtractionOptions | None = None) -> str:
        session_id = uuid.uuid4().hex
        self.orchestrator.start(session_id, text, options)
        return session_id

    async def events(self, session_id: str, *, start: bool = True) -> AsyncIterator[ProgressEvent]:
        entry = self.registry.find(session_id)
        if entry is None:
            replay = self.store.terminal_event(session_id)
            if replay is None:
                raise SessionNotFoundError(session_id)
            yield replay
            return

        async with entry.channel.subscribe() as subscription:
            if subscription.closed:
                replay = self.store.terminal_event(session_id, entry.session.last_event_seq)
                if replay is not None:
                    yield replay
                return
            if start:
                self.orchestrator.handshake(session_id)
            async for event in subscription:
                yield event

    async def poll(self, session_id: str) -> ResultLookup:
        found = self.store.lookup(session_id)
        if found is not None:
            return found
        if session_id in self.registry:
            return ResultLookup(LookupState.PENDING, PENDING_PAYLOAD)
        raise SessionNotFoundError(session_id)


class HttpTransport(ExtractionTransport):
    """HTTP transport: SSE for push, the result endpoint for poll."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_s)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def create(self, text: str, options: ExtractionOptions | None = None) -> str:
        body = {"text": text, "options": (options or ExtractionOptions()).model_dump(mode="json")}
        try:
            resp = await self._client.post("/api/extractions", json=body)
        except httpx.RequestError as e:
            raise TransportError(f"Could not create extraction: {e}") from e
        if resp.status_code == 400:
            raise DocumentValidationError(resp.json().get("detail", "Invalid document"))
        if resp.status_code >= 400:
            raise TransportError(f"Create failed with HTTP {resp.status_code}")
        return resp.json()["session_id"]

    async def events(self, session_id: str, *, start: bool = True) -> AsyncIterator[ProgressEvent]:
        params = {"start": "true"} if start else {}
        try:
            async with self._client.stream(
                "GET",
                f"/api/extractions/{session_id}/events",
                params=params,
                timeout=httpx.Timeout(None),
            ) as resp:
                if resp.status_code == 404:
                    raise SessionNotFoundError(session_id)
                if resp.status_code >= 400:
                    raise TransportError(f"Event stream failed with HTTP {resp.status_code}")
                data_lines: list[str] = []
                async for line in resp.aiter_lines():
                    if line.startswith("data:"):
                        data_lines.append(line[5:].lstrip())
                    elif not line and data_lines:
                        yield parse_event("\n".join(data_lines))
                        data_lines = []
                if data_lines:
                    yield parse_event("\n".join(data_lines))
        except httpx.HTTPError as e:
            raise TransportError(f"Event stream lost: {e}") from e

    async def poll(self, session_id: str) -> ResultLookup:
        try:
            resp = await self._client.get(f"/api/extractions/{session_id}/result")
        except httpx.RequestError as e:
            raise TransportError(f"Poll failed: {e}") from e
        if resp.status_code == 404:
            raise SessionNotFoundError(session_id)
        if resp.status_code >= 400:
            raise TransportError(f"Poll failed with HTTP {resp.status_code}")

        try:
            body = json.loads(resp.content)
        except json.JSONDecodeError as e:
            raise TransportError("Poll returned invalid JSON") from e
        if body.get("success"):
            return ResultLookup(LookupState.READY, resp.content)
        if body.get("pending", False):
            return ResultLookup(LookupState.PENDING, resp.content)
        return ResultLookup(LookupState.FAILED, resp.content, body.get("error") or "Extraction failed")


class ExtractionConsumer:
    """Waits for one session's terminal outcome over push and poll."""

    def __init__(
        self,
        transport: ExtractionTransport,
        *,
        poll_grace_s: float | None = None,
        poll_interval_s: float | None = None,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self.transport = transport
        self.poll_grace_s = settings.poll_grace_s if poll_grace_s is None else poll_grace_s
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self.on_event = on_event

    async def run(self, text: str, options: ExtractionOptions | None = None) -> Delivery:
        session_id = await self.transport.create(text, options)
        return await self.wait_for_result(session_id)

    async def wait_for_result(self, session_id: str, *, start: bool = True) -> Delivery:
        """
        Race the push channel against the poll fallback.

        Raises:
            ExtractionFailedError: the session ended in error
            SessionNotFoundError: unknown or expired session
            TransportError: both paths ended without a terminal signal
        """
        stage_seen = asyncio.Event()
        push_lost = asyncio.Event()
        push = asyncio.create_task(self._push(session_id, start, stage_seen, push_lost))
        poll = asyncio.create_task(self._poll(session_id, stage_seen, push_lost))
        pending: set[asyncio.Task[Delivery | None]] = {push, poll}
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    delivery = task.result()
                    if delivery is not None:
                        logger.info("Session %s: result delivered via %s", session_id, delivery.via)
                        return delivery
            raise TransportError(f"No terminal signal received for session {session_id}")
        finally:
            for task in (push, poll):
                task.cancel()
            for task in (push, poll):
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

    async def _push(
        self,
        session_id: str,
        start: bool,
        stage_seen: asyncio.Event,
        push_lost: asyncio.Event,
    ) -> Delivery | None:
        try:
            async for event in self.transport.events(session_id, start=start):
                if self.on_event is not None:
                    self.on_event(event)
                if isinstance(event, StageEvent):
                    stage_seen.set()
                elif isinstance(event, CompleteEvent):
                    result = FinalResult(data=event.payload.data, timing=event.payload.timing)
                    return Delivery(result, "push")
                elif isinstance(event, ErrorEvent):
                    raise ExtractionFailedError(session_id, event.payload.message)
        except TransportError as e:
            logger.warning("Session %s: push channel lost (%s); falling back to polling", session_id, e)
        push_lost.set()
        return None

    async def _poll(
        self,
        session_id: str,
        stage_seen: asyncio.Event,
        push_lost: asyncio.Event,
    ) -> Delivery | None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(push_lost.wait(), timeout=self.poll_grace_s)
        if stage_seen.is_set():
            # Push is live; poll only if it is lost later
            await push_lost.wait()

        logger.info("Session %s: polling for result every %ss", session_id, self.poll_interval_s)
        while True:
            try:
                found = await self.transport.poll(session_id)
            except TransportError as e:
                logger.warning("Session %s: poll failed: %s", session_id, e)
            else:
                if found.state == LookupState.READY:
                    return Delivery(FinalResult.model_validate_json(found.payload), "poll")
                if found.state == LookupState.FAILED:
                    raise ExtractionFailedError(session_id, found.error or "Extraction failed")
            await asyncio.sleep(self.poll_interval_s)
