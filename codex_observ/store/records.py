from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from typing import Any

from .. import db
from ..utils import chunked
from .types import BatchInsertResult, InsertFailure, WorktreeAction

logger = logging.getLogger(__name__)

RECORD_COLUMNS: dict[str, tuple[str, ...]] = {
    "session": (
        "id",
        "ts",
        "cwd",
        "originator",
        "cli_version",
        "model_provider",
        "git_branch",
        "git_commit",
        "source_file",
        "source_line",
        "dedup_key",
    ),
    "message": (
        "id",
        "session_id",
        "role",
        "ts",
        "content",
        "source_file",
        "source_line",
        "dedup_key",
    ),
    "model_call": (
        "id",
        "session_id",
        "ts",
        "model",
        "input_tokens",
        "cached_input_tokens",
        "output_tokens",
        "reasoning_tokens",
        "total_tokens",
        "duration_ms",
        "source_file",
        "source_line",
        "dedup_key",
    ),
    "tool_call": (
        "id",
        "tool_name",
        "command",
        "status",
        "start_ts",
        "end_ts",
        "duration_ms",
        "exit_code",
        "error",
        "stdout_bytes",
        "stderr_bytes",
        "source_file",
        "source_line",
        "correlation_key",
        "dedup_key",
    ),
    "desktop_log_event": (
        "id",
        "ts",
        "level",
        "component",
        "message",
        "payload_text",
        "app_session_id",
        "process_id",
        "thread_id",
        "instance_id",
        "segment_index",
        "file_path",
        "line_number",
        "dedup_key",
    ),
    "worktree_event": (
        "id",
        "ts",
        "action",
        "worktree_path",
        "repo_root",
        "branch",
        "status",
        "error",
        "app_session_id",
        "source_log_id",
        "dedup_key",
    ),
    "automation_event": (
        "id",
        "ts",
        "action",
        "thread_id",
        "status",
        "error",
        "app_session_id",
        "source_log_id",
        "dedup_key",
    ),
}


def _insert_sql(kind: str) -> str:
    table = db.table_for(kind)
    columns = RECORD_COLUMNS[kind]
    placeholders = ", ".join("?" for _ in columns)
    return (
        f"INSERT INTO {table}({', '.join(columns)}) VALUES ({placeholders}) "
        "ON CONFLICT(dedup_key) DO NOTHING"
    )


def _row_values(kind: str, record: Any) -> tuple[Any, ...]:
    if isinstance(record, dict):
        return tuple(record.get(column) for column in RECORD_COLUMNS[kind])
    return tuple(getattr(record, column) for column in RECORD_COLUMNS[kind])


def _source_line(record: Any) -> int:
    if isinstance(record, dict):
        return int(record.get("source_line") or record.get("line_number") or 0)
    return int(getattr(record, "source_line", 0) or 0)


def insert_if_absent(conn: sqlite3.Connection, kind: str, record: Any) -> bool:
    """Insert ``record`` unless a row with its dedup key exists.

    Does not commit. Raises ``sqlite3.Error`` for any other constraint
    failure, such as an id collision under a different dedup key.
    """

    cur = conn.execute(_insert_sql(kind), _row_values(kind, record))
    return cur.rowcount == 1


def insert_batched(
    conn: sqlite3.Connection,
    kind: str,
    records: Sequence[Any],
    chunk_size: int = 100,
) -> BatchInsertResult:
    """Insert records in fixed-size chunks, one transaction per chunk.

    A failing row is recorded and skipped; the rest of its chunk still
    commits.
    """

    result = BatchInsertResult()
    if not records:
        return result
    for chunk in chunked(records, chunk_size):
        with conn:
            for record in chunk:
                result.attempted += 1
                try:
                    inserted = insert_if_absent(conn, kind, record)
                except (sqlite3.Error, OverflowError) as exc:
                    line = _source_line(record)
                    logger.warning("%s insert failed at line %d: %s", kind, line, exc)
                    result.failures.append(InsertFailure(line=line, message=str(exc)))
                    continue
                if inserted:
                    result.inserted += 1
    return result


def count_rows(conn: sqlite3.Connection, kind: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) FROM {db.table_for(kind)}").fetchone()
    return int(row[0]) if row else 0


def latest_worktree_actions(conn: sqlite3.Connection) -> list[WorktreeAction]:
    rows = conn.execute(
        """
        SELECT worktree_path, action, ts
        FROM (
            SELECT worktree_path,
                   action,
                   ts,
                   ROW_NUMBER() OVER (PARTITION BY worktree_path ORDER BY ts DESC) AS rn
            FROM worktree_event
            WHERE worktree_path IS NOT NULL
        )
        WHERE rn = 1
        ORDER BY worktree_path
        """
    ).fetchall()
    return [
        {
            "worktree_path": str(row["worktree_path"]),
            "action": str(row["action"] or ""),
            "ts": int(row["ts"] or 0),
        }
        for row in rows
        if row["worktree_path"]
    ]
