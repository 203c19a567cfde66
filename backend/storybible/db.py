from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


def utc_now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _connect(db_path: Path) -> sqlite3.Connection:
    """Create a database connection with proper configuration.

    Sets a timeout for concurrent access and IMMEDIATE isolation so the
    write lock is taken at BEGIN.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(db_path),
        timeout=30.0,
        isolation_level="IMMEDIATE",
    )
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    with _connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS results (
              session_id TEXT PRIMARY KEY,
              created_at_utc TEXT NOT NULL,
              status TEXT NOT NULL,
              document_length INTEGER,
              error TEXT,
              payload BLOB NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_results_created ON results(created_at_utc)"
        )


@dataclass(frozen=True)
class ResultRow:
    session_id: str
    created_at_utc: str
    status: str
    document_length: int | None
    error: str | None
    payload: bytes


def _row_to_result(row: sqlite3.Row) -> ResultRow:
    return ResultRow(
        session_id=row["session_id"],
        created_at_utc=row["created_at_utc"],
        status=row["status"],
        document_length=row["document_length"],
        error=row["error"],
        payload=bytes(row["payload"]),
    )


def archive_result(
    db_path: Path,
    *,
    session_id: str,
    status: str,
    payload: bytes,
    document_length: int | None = None,
    error: str | None = None,
) -> None:
    """Persist a terminal payload. Existing rows are never overwritten."""
    with _connect(db_path) as conn:
        conn.execute(
            """
            INSERT OR IGNORE INTO results (
              session_id, created_at_utc, status, document_length, error, payload
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, utc_now_iso(), status, document_length, error, payload),
        )


def get_archived_result(db_path: Path, session_id: str) -> ResultRow | None:
    with _connect(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM results WHERE session_id = ?", (session_id,)
        ).fetchone()
        return _row_to_result(row) if row else None


def list_archived_results(db_path: Path, limit: int = 200) -> list[ResultRow]:
    with _connect(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM results ORDER BY created_at_utc DESC LIMIT ?",
            (limit,),
        ).fetchall()
    return [_row_to_result(r) for r in rows]


def delete_archived_result(db_path: Path, session_id: str) -> bool:
    with _connect(db_path) as conn:
        cursor = conn.execute("DELETE FROM results WHERE session_id = ?", (session_id,))
        return cursor.rowcount > 0
