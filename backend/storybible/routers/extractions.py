"""Extractions API router - session control, push channels and poll fallback."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import Response, StreamingResponse
from pydantic import ValidationError
from starlette.requests import HTTPConnection

from storybible.pipeline.errors import SessionNotFoundError
from storybible.pipeline.events import ProgressEvent, Subscription
from storybible.pipeline.models import STAGE_NAMES
from storybible.pipeline.orchestrator import PipelineOrchestrator
from storybible.pipeline.registry import SessionEntry, SessionRegistry
from storybible.pipeline.store import PENDING_PAYLOAD, ResultStore
from storybible.schemas import (
    AgentTaskStatus,
    ArchivedResultSummary,
    ControlMessage,
    SessionDetail,
    StageStatus,
    StartResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/extractions", tags=["extractions"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def get_registry(conn: HTTPConnection) -> SessionRegistry:
    return conn.app.state.registry


def get_store(conn: HTTPConnection) -> ResultStore:
    return conn.app.state.store


def get_orchestrator(conn: HTTPConnection) -> PipelineOrchestrator:
    return conn.app.state.orchestrator


def _session_detail(entry: SessionEntry) -> SessionDetail:
    session = entry.session
    return SessionDetail(
        session_id=session.id,
        status=session.status.value,
        state=session.state.value,
        created_at=session.created_at,
        document_length=session.document_length,
        last_event_seq=session.last_event_seq,
        error=session.error,
        stages=[
            StageStatus(
                stage=record.stage,
                name=STAGE_NAMES[record.stage],
                status=record.status.value,
                started_at=record.started_at,
                completed_at=record.completed_at,
                duration_ms=record.duration_ms,
            )
            for record in session.stages.values()
        ],
        agent_tasks=[
            AgentTaskStatus(
                agent=task.agent_key.value,
                status=task.status.value,
                result_count=task.result_count,
                error=task.error,
            )
            for task in session.agent_tasks.values()
        ],
    )


def _replay(event: ProgressEvent | None) -> StreamingResponse:
    async def replay_stream() -> AsyncIterator[str]:
        if event is not None:
            yield event.to_sse()

    return StreamingResponse(replay_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("", response_model=list[ArchivedResultSummary])
def list_extractions(
    limit: int = Query(default=200, ge=1, le=1000),
    store: ResultStore = Depends(get_store),
) -> list[ArchivedResultSummary]:
    """Archived terminal outcomes, newest first."""
    return [
        ArchivedResultSummary(
            session_id=row.session_id,
            created_at_utc=row.created_at_utc,
            status=row.status,
            document_length=row.document_length,
            error=row.error,
        )
        for row in store.list_archived(limit)
    ]


@router.delete("/{session_id}", status_code=204)
def delete_extraction(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
    store: ResultStore = Depends(get_store),
) -> None:
    """Forget a finished session and its stored outcome.

    Returns 204 No Content on success; 409 while the session is still running.
    """
    entry = registry.find(session_id)
    if entry is not None and not entry.session.is_terminal:
        raise HTTPException(status_code=409, detail="Extraction session is still running")
    removed = registry.remove(session_id) is not None
    removed = store.delete(session_id) or removed
    if not removed:
        raise HTTPException(status_code=404, detail="Extraction session not found")
    return None


@router.post("/{session_id}/start", response_model=StartResponse)
def start_extraction(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> StartResponse:
    """Start handshake. Idempotent while the session is running."""
    entry = registry.find(session_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Extraction session not found")
    if entry.session.is_terminal:
        raise HTTPException(status_code=409, detail="Extraction session already finished")
    started = orchestrator.handshake(session_id)
    return StartResponse(session_id=session_id, started=started)


@router.get("/{session_id}", response_model=SessionDetail)
def get_extraction(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionDetail:
    entry = registry.find(session_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Extraction session not found")
    entry.session.touch()
    return _session_detail(entry)


@router.get("/{session_id}/events")
async def extraction_events(
    session_id: str,
    start: bool = False,
    registry: SessionRegistry = Depends(get_registry),
    store: ResultStore = Depends(get_store),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """
    Server-Sent Events stream for one extraction session.

    Opening the stream joins the channel; ``?start=true`` also sends the start
    handshake, after the subscription exists. Closing the stream leaves.
    Sessions that already finished replay their terminal event.
    """
    entry = registry.find(session_id)
    if entry is None:
        event = store.terminal_event(session_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Extraction session not found")
        return _replay(event)

    subscription = entry.channel.subscribe()
    if subscription.closed:
        return _replay(store.terminal_event(session_id, entry.session.last_event_seq))
    if start:
        orchestrator.handshake(session_id)

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in subscription:
                yield event.to_sse()
        finally:
            subscription.close()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/{session_id}/result")
def get_extraction_result(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
    store: ResultStore = Depends(get_store),
) -> Response:
    """Poll fallback. Returns the same bytes the complete event carried."""
    found = store.lookup(session_id)
    entry = registry.find(session_id)
    if entry is not None:
        entry.session.touch()
    if found is None:
        if entry is None:
            raise HTTPException(status_code=404, detail="Extraction session not found")
        return Response(content=PENDING_PAYLOAD, media_type="application/json")
    return Response(content=found.payload, media_type="application/json")


@router.websocket("/{session_id}/ws")
async def extraction_socket(websocket: WebSocket, session_id: str) -> None:
    """
    Bidirectional channel: the client sends ``{"action": "join" | "start" |
    "leave"}`` and receives events as JSON text frames.
    """
    registry = get_registry(websocket)
    store = get_store(websocket)
    orchestrator = get_orchestrator(websocket)

    await websocket.accept()
    if registry.find(session_id) is None and store.lookup(session_id) is None:
        await websocket.close(code=4404, reason="Extraction session not found")
        return

    subscription: Subscription | None = None
    forwarder: asyncio.Task[None] | None = None

    async def forward(events: Subscription) -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            async for event in events:
                await websocket.send_text(event.to_wire())

    async def leave() -> None:
        nonlocal subscription, forwarder
        if subscription is not None:
            subscription.close()
            subscription = None
        if forwarder is not None:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder
            forwarder = None

    try:
        while True:
            raw = await websocket.receive_json()
            try:
                message = ControlMessage.model_validate(raw)
            except ValidationError:
                await websocket.send_json({"error": "Unknown control message"})
                continue

            if message.action == "join":
                if subscription is not None:
                    continue
                entry = registry.find(session_id)
                if entry is not None:
                    subscription = entry.channel.subscribe()
                if subscription is None or subscription.closed:
                    seq = entry.session.last_event_seq if entry is not None else 0
                    replay = store.terminal_event(session_id, seq)
                    if replay is not None:
                        await websocket.send_text(replay.to_wire())
                    continue
                forwarder = asyncio.create_task(forward(subscription))
            elif message.action == "start":
                try:
                    orchestrator.handshake(session_id)
                except SessionNotFoundError as e:
                    await websocket.send_json({"error": str(e)})
            else:
                await leave()
                await websocket.close()
                return
    except WebSocketDisconnect:
        logger.info("Session %s: websocket consumer disconnected", session_id)
    finally:
        await leave()
