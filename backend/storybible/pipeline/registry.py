"""Session registry: owns every live session's state, channel and task."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from dataclasses import dataclass

from storybible.pipeline.errors import SessionNotFoundError
from storybible.pipeline.events import ProgressChannel
from storybible.pipeline.models import Session

logger = logging.getLogger(__name__)


@dataclass
class SessionEntry:
    session: Session
    channel: ProgressChannel
    task: asyncio.Task[None] | None = None

    @property
    def collectable(self) -> bool:
        """Terminal, or never claimed by a start handshake."""
        return self.session.is_terminal or not self.channel.started


class SessionRegistry:
    """
    In-process map of session id -> SessionEntry.

    Created once per application (or per test) and handed to the
    orchestrator, the routers and the sweeper.
    """

    def __init__(self, *, queue_size: int = 1000) -> None:
        self._entries: dict[str, SessionEntry] = {}
        self._queue_size = queue_size

    def create(self, session: Session) -> SessionEntry:
        if session.id in self._entries:
            raise ValueError(f"Session '{session.id}' already registered")
        entry = SessionEntry(
            session=session,
            channel=ProgressChannel(session.id, queue_size=self._queue_size),
        )
        self._entries[session.id] = entry
        logger.info("Registered session %s", session.id)
        return entry

    def get(self, session_id: str) -> SessionEntry:
        entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    def find(self, session_id: str) -> SessionEntry | None:
        return self._entries.get(session_id)

    def remove(self, session_id: str) -> SessionEntry | None:
        return self._entries.pop(session_id, None)

    def sweep(self, idle_horizon_s: float) -> list[str]:
        """
        Drop sessions idle beyond the horizon that are terminal or were never
        started. Returns the removed ids.
        """
        removed: list[str] = []
        for session_id, entry in list(self._entries.items()):
            if entry.session.idle_seconds < idle_horizon_s or not entry.collectable:
                continue
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
            entry.channel.close()
            del self._entries[session_id]
            removed.append(session_id)
        if removed:
            logger.info("Swept %d idle session(s)", len(removed))
        return removed

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SessionEntry]:
        return iter(list(self._entries.values()))
