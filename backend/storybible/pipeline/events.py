"""
Progress event system for the push channel.

Every event is a member of a closed tagged union discriminated on ``type``;
``found`` payloads are themselves discriminated on ``category``. Each session
owns one ProgressChannel; subscribers receive events through an async
iterator and unsubscribe explicitly (or by leaving the ``async with`` block).

Publishing never blocks: a subscriber whose queue is full misses the event
(at-most-once delivery). Consumers recover the terminal result through the
poll endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter

from storybible.pipeline.models import (
    Character,
    DeduplicationReport,
    EntityCollections,
    ExtractorKey,
    Faction,
    Item,
    Location,
    LoreEntry,
    Relationships,
    StageNumber,
    StoryEvent,
    Timing,
    WireModel,
    World,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event types; the values are part of the wire contract."""

    STARTED = "started"
    STAGE = "stage"
    AGENT_TASK = "agentTask"
    FOUND = "found"
    AGENT_DETAIL = "agentDetail"
    COMPLETE = "complete"
    ERROR = "error"


# =============================================================================
# Payloads
# =============================================================================

class StartedPayload(WireModel):
    document_length: int


class StagePayload(WireModel):
    stage: StageNumber
    status: Literal["running", "complete"]


class AgentTaskPayload(WireModel):
    agent: ExtractorKey
    status: Literal["running", "complete", "failed"]
    count: int | None = None
    error: str | None = None


class FoundCharacters(WireModel):
    category: Literal["characters"] = "characters"
    data: list[Character]


class FoundLocations(WireModel):
    category: Literal["locations"] = "locations"
    data: list[Location]


class FoundItems(WireModel):
    category: Literal["items"] = "items"
    data: list[Item]


class FoundFactions(WireModel):
    category: Literal["factions"] = "factions"
    data: list[Faction]


class FoundLore(WireModel):
    category: Literal["lore"] = "lore"
    data: list[LoreEntry]


class FoundEvents(WireModel):
    category: Literal["events"] = "events"
    data: list[StoryEvent]


class FoundWorld(WireModel):
    category: Literal["world"] = "world"
    data: World | None


class FoundRelationships(WireModel):
    category: Literal["relationships"] = "relationships"
    data: Relationships


class FoundDeduplication(WireModel):
    category: Literal["deduplication"] = "deduplication"
    data: DeduplicationReport


FoundPayload = Annotated[
    Union[
        FoundCharacters,
        FoundLocations,
        FoundItems,
        FoundFactions,
        FoundLore,
        FoundEvents,
        FoundWorld,
        FoundRelationships,
        FoundDeduplication,
    ],
    Field(discriminator="category"),
]


class AgentDetailPayload(WireModel):
    detail: str


class CompletePayload(WireModel):
    data: EntityCollections
    timing: Timing


class ErrorPayload(WireModel):
    message: str = Field(min_length=1)


# =============================================================================
# Events
# =============================================================================

class _EventBase(WireModel):
    session_id: str
    seq: int
    timestamp: float = Field(default_factory=time.time)

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        return f"data: {self.model_dump_json(by_alias=True)}\n\n"

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


class StartedEvent(_EventBase):
    type: Literal["started"] = "started"
    payload: StartedPayload


class StageEvent(_EventBase):
    type: Literal["stage"] = "stage"
    payload: StagePayload


class AgentTaskEvent(_EventBase):
    type: Literal["agentTask"] = "agentTask"
    payload: AgentTaskPayload


class FoundEvent(_EventBase):
    type: Literal["found"] = "found"
    payload: FoundPayload


class AgentDetailEvent(_EventBase):
    type: Literal["agentDetail"] = "agentDetail"
    payload: AgentDetailPayload


class CompleteEvent(_EventBase):
    type: Literal["complete"] = "complete"
    payload: CompletePayload


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    payload: ErrorPayload


ProgressEvent = Annotated[
    Union[
        StartedEvent,
        StageEvent,
        AgentTaskEvent,
        FoundEvent,
        AgentDetailEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

progress_event_adapter: TypeAdapter[ProgressEvent] = TypeAdapter(ProgressEvent)

EventPayload = Union[
    StartedPayload,
    StagePayload,
    AgentTaskPayload,
    FoundCharacters,
    FoundLocations,
    FoundItems,
    FoundFactions,
    FoundLore,
    FoundEvents,
    FoundWorld,
    FoundRelationships,
    FoundDeduplication,
    AgentDetailPayload,
    CompletePayload,
    ErrorPayload,
]

_EVENT_FOR_PAYLOAD: dict[type, type[_EventBase]] = {
    StartedPayload: StartedEvent,
    StagePayload: StageEvent,
    AgentTaskPayload: AgentTaskEvent,
    FoundCharacters: FoundEvent,
    FoundLocations: FoundEvent,
    FoundItems: FoundEvent,
    FoundFactions: FoundEvent,
    FoundLore: FoundEvent,
    FoundEvents: FoundEvent,
    FoundWorld: FoundEvent,
    FoundRelationships: FoundEvent,
    FoundDeduplication: FoundEvent,
    AgentDetailPayload: AgentDetailEvent,
    CompletePayload: CompleteEvent,
    ErrorPayload: ErrorEvent,
}

TERMINAL_EVENT_TYPES = frozenset({EventType.COMPLETE.value, EventType.ERROR.value})


def build_event(session_id: str, seq: int, payload: EventPayload) -> ProgressEvent:
    event_cls = _EVENT_FOR_PAYLOAD[type(payload)]
    return event_cls(session_id=session_id, seq=seq, payload=payload)


def parse_event(raw: str | bytes) -> ProgressEvent:
    """Parse one wire-format event (JSON) back into its typed model."""
    return progress_event_adapter.validate_json(raw)


# =============================================================================
# Channel
# =============================================================================

class Subscription:
    """
    One subscriber's view of a session channel.

    Usage:
        async with channel.subscribe() as events:
            async for event in events:
                ...
    """

    def __init__(self, channel: ProgressChannel, maxsize: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._finished = False

    @property
    def session_id(self) -> str:
        return self._channel.session_id

    @property
    def closed(self) -> bool:
        return self._finished

    def _offer(self, event: ProgressEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def _finish(self) -> None:
        """Enqueue the end-of-stream sentinel, evicting the oldest event if full."""
        if self._finished:
            return
        self._finished = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def close(self) -> None:
        """Unsubscribe (leave). Never affects the pipeline."""
        self._channel.unsubscribe(self)
        self._finish()

    async def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None once the stream has ended."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is None:
            # Keep the sentinel for any later reader
            self._queue.put_nowait(None)
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class ProgressChannel:
    """
    Per-session broadcast channel.

    Emission is gated on the start handshake: until ``start()`` is called,
    publish() drops events instead of sending them into a channel nobody has
    claimed.
    """

    def __init__(self, session_id: str, *, queue_size: int = 1000) -> None:
        self.session_id = session_id
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._seq = 0
        self._started = asyncio.Event()
        self._closed = False

    def subscribe(self) -> Subscription:
        """Join the channel."""
        subscription = Subscription(self, self._queue_size)
        if self._closed:
            subscription._finish()
        else:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def start(self) -> bool:
        """Start handshake. Returns True only for the call that opened the channel."""
        if self._started.is_set() or self._closed:
            return False
        self._started.set()
        return True

    async def wait_started(self) -> None:
        await self._started.wait()

    def publish(self, payload: EventPayload) -> ProgressEvent | None:
        """
        Emit an event to all current subscribers.

        Safe to call from any coroutine - uses put_nowait and never awaits.
        """
        if self._closed:
            return None
        if not self._started.is_set():
            logger.warning(
                "Session %s: %s published before start handshake; dropped",
                self.session_id,
                type(payload).__name__,
            )
            return None

        self._seq += 1
        event = build_event(self.session_id, self._seq, payload)
        for subscription in list(self._subscribers):
            if not subscription._offer(event):
                logger.warning(
                    "Session %s: subscriber queue full, dropping %s #%d",
                    self.session_id,
                    event.type,
                    event.seq,
                )
        logger.debug("Session %s: published %s #%d", self.session_id, event.type, event.seq)
        return event

    def close(self) -> None:
        """Signal end of events to all subscribers."""
        self._closed = True
        for subscription in self._subscribers:
            subscription._finish()
        self._subscribers.clear()

    @property
    def started(self) -> bool:
        return self._started.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def seq(self) -> int:
        return self._seq

    @property
    def has_subscribers(self) -> bool:
        return len(self._subscribers) > 0
