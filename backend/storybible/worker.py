"""Background session sweeper."""
from __future__ import annotations

import asyncio
import contextlib
import logging

from storybible.pipeline.registry import SessionRegistry
from storybible.pipeline.store import ResultStore
from storybible.settings import Settings

logger = logging.getLogger(__name__)


def sweep_once(registry: SessionRegistry, store: ResultStore, *, idle_horizon_s: float) -> list[str]:
    """Remove idle sessions and forget their in-memory results."""
    removed = registry.sweep(idle_horizon_s)
    for session_id in removed:
        store.evict(session_id)
    return removed


async def run_session_sweeper(
    *,
    registry: SessionRegistry,
    store: ResultStore,
    settings: Settings,
    stop_event: asyncio.Event | None = None,
) -> None:
    """
    Periodically garbage-collect sessions idle beyond the horizon.

    Only terminal sessions and sessions that never received a start handshake
    are collected; a running pipeline is never interrupted.
    """
    stop_event = stop_event or asyncio.Event()
    logger.info(
        "Session sweeper starting (horizon=%ss, interval=%ss)",
        settings.session_idle_horizon_s,
        settings.sweep_interval_s,
    )
    while not stop_event.is_set():
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=settings.sweep_interval_s)
        if stop_event.is_set():
            break
        removed = sweep_once(registry, store, idle_horizon_s=settings.session_idle_horizon_s)
        if removed:
            logger.info("Sweeper removed %d session(s): %s", len(removed), ", ".join(removed))
    logger.info("Session sweeper stopped")
