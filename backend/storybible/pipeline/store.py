"""
ResultStore: the single place terminal outcomes are written.

The push channel's ``complete`` event and the poll endpoint both read from
here. A FinalResult is serialized exactly once; every later read returns the
same bytes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from storybible.db import (
    ResultRow,
    archive_result,
    delete_archived_result,
    get_archived_result,
    init_db,
    list_archived_results,
)
from storybible.pipeline.errors import ResultAlreadyWrittenError
from storybible.pipeline.events import CompletePayload, ErrorPayload, ProgressEvent, build_event
from storybible.pipeline.models import FinalResult

logger = logging.getLogger(__name__)

PENDING_PAYLOAD = b'{"success":false,"pending":true}'


class LookupState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ResultLookup:
    state: LookupState
    payload: bytes
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state != LookupState.PENDING


def failure_payload(message: str) -> bytes:
    return json.dumps(
        {"success": False, "pending": False, "error": message},
        separators=(",", ":"),
    ).encode("utf-8")


class ResultStore:
    """In-memory terminal outcomes, optionally archived to SQLite."""

    def __init__(self, archive_path: Path | None = None) -> None:
        self._results: dict[str, bytes] = {}
        self._failures: dict[str, str] = {}
        self._archive_path = archive_path
        if archive_path is not None:
            init_db(archive_path)

    def _check_unwritten(self, session_id: str) -> None:
        if session_id in self._results or session_id in self._failures:
            raise ResultAlreadyWrittenError(session_id)

    def _archive(self, session_id: str, **row) -> None:
        """Copy a terminal payload to the archive. The in-memory copy is authoritative."""
        if self._archive_path is None:
            return
        try:
            archive_result(self._archive_path, session_id=session_id, **row)
        except (sqlite3.Error, OSError):
            logger.warning("Failed to archive outcome for session %s", session_id, exc_info=True)

    def put(
        self,
        session_id: str,
        result: FinalResult,
        *,
        document_length: int | None = None,
    ) -> bytes:
        """Write the FinalResult for a session. Write-once."""
        self._check_unwritten(session_id)
        payload = result.model_dump_json(by_alias=True).encode("utf-8")
        self._results[session_id] = payload
        self._archive(
            session_id,
            status=LookupState.READY.value,
            payload=payload,
            document_length=document_length,
        )
        logger.info("Stored result for session %s (%d bytes)", session_id, len(payload))
        return payload

    def put_failure(
        self,
        session_id: str,
        message: str,
        *,
        document_length: int | None = None,
    ) -> bytes:
        """Record a fatal failure. Write-once, shares the slot with put()."""
        self._check_unwritten(session_id)
        self._failures[session_id] = message
        payload = failure_payload(message)
        self._archive(
            session_id,
            status=LookupState.FAILED.value,
            payload=payload,
            document_length=document_length,
            error=message,
        )
        logger.info("Stored failure for session %s: %s", session_id, message)
        return payload

    def lookup(self, session_id: str) -> ResultLookup | None:
        """
        Current outcome for a session.

        Returns None when neither memory nor the archive know the session;
        the caller decides whether that means pending or not found.
        """
        if session_id in self._results:
            return ResultLookup(LookupState.READY, self._results[session_id])
        if session_id in self._failures:
            message = self._failures[session_id]
            return ResultLookup(LookupState.FAILED, failure_payload(message), message)
        if self._archive_path is not None:
            row = get_archived_result(self._archive_path, session_id)
            if row is not None:
                return ResultLookup(LookupState(row.status), row.payload, row.error)
        return None

    def get_result(self, session_id: str) -> FinalResult | None:
        found = self.lookup(session_id)
        if found is None or found.state != LookupState.READY:
            return None
        return FinalResult.model_validate_json(found.payload)

    def terminal_event(self, session_id: str, seq: int = 0) -> ProgressEvent | None:
        """Rebuild the terminal push event from the stored outcome."""
        found = self.lookup(session_id)
        if found is None or found.state == LookupState.PENDING:
            return None
        if found.state == LookupState.READY:
            result = FinalResult.model_validate_json(found.payload)
            payload: CompletePayload | ErrorPayload = CompletePayload(
                data=result.data, timing=result.timing
            )
        else:
            payload = ErrorPayload(message=found.error or "Extraction failed")
        return build_event(session_id, seq, payload)

    def evict(self, session_id: str) -> None:
        """Forget the in-memory copy. Archived payloads stay readable."""
        self._results.pop(session_id, None)
        self._failures.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._results or session_id in self._failures

    def list_archived(self, limit: int = 200) -> list[ResultRow]:
        """Most recent archived outcomes first. Empty when archiving is off."""
        if self._archive_path is None:
            return []
        return list_archived_results(self._archive_path, limit=limit)

    def delete(self, session_id: str) -> bool:
        """Drop a stored outcome from memory and the archive. True if anything was removed."""
        removed = session_id in self
        self.evict(session_id)
        if self._archive_path is not None:
            removed = delete_archived_result(self._archive_path, session_id) or removed
        if removed:
            logger.info("Deleted stored outcome for session %s", session_id)
        return removed
