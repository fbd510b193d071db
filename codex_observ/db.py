from __future__ import annotations

import os
import sqlite3
from pathlib import Path

from .fs_paths import ensure_path

DEFAULT_DB_PATH = Path("~/.codex-observ/data.db").expanduser()
SCHEMA_VERSION = 1

RECORD_KINDS = frozenset(
    {
        "session",
        "message",
        "model_call",
        "tool_call",
        "desktop_log_event",
        "worktree_event",
        "automation_event",
    }
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ingest_state (
    path TEXT PRIMARY KEY,
    byte_offset INTEGER NOT NULL,
    mtime_ms INTEGER,
    updated_at INTEGER NOT NULL,
    session_id TEXT,
    model TEXT,
    model_provider TEXT
);

CREATE TABLE IF NOT EXISTS session (
    id TEXT PRIMARY KEY,
    ts INTEGER NOT NULL,
    cwd TEXT,
    originator TEXT,
    cli_version TEXT,
    model_provider TEXT,
    git_branch TEXT,
    git_commit TEXT,
    source_file TEXT NOT NULL,
    source_line INTEGER NOT NULL,
    dedup_key TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS message (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    ts INTEGER NOT NULL,
    content TEXT,
    source_file TEXT NOT NULL,
    source_line INTEGER NOT NULL,
    dedup_key TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS idx_message_session ON message(session_id, ts);

CREATE TABLE IF NOT EXISTS model_call (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    ts INTEGER NOT NULL,
    model TEXT,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    cached_input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    reasoning_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER,
    source_file TEXT NOT NULL,
    source_line INTEGER NOT NULL,
    dedup_key TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS idx_model_call_session ON model_call(session_id, ts);

CREATE TABLE IF NOT EXISTS tool_call (
    id TEXT PRIMARY KEY,
    tool_name TEXT NOT NULL,
    command TEXT,
    status TEXT NOT NULL CHECK (status IN ('ok', 'failed', 'unknown')),
    start_ts INTEGER NOT NULL,
    end_ts INTEGER,
    duration_ms INTEGER,
    exit_code INTEGER,
    error TEXT,
    stdout_bytes INTEGER,
    stderr_bytes INTEGER,
    source_file TEXT NOT NULL,
    source_line INTEGER NOT NULL,
    correlation_key TEXT NOT NULL,
    dedup_key TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS idx_tool_call_start ON tool_call(start_ts);

CREATE TABLE IF NOT EXISTS desktop_log_event (
    id TEXT PRIMARY KEY,
    ts INTEGER NOT NULL,
    level TEXT,
    component TEXT,
    message TEXT NOT NULL,
    payload_text TEXT,
    app_session_id TEXT,
    process_id INTEGER,
    thread_id INTEGER,
    instance_id INTEGER,
    segment_index INTEGER,
    file_path TEXT NOT NULL,
    line_number INTEGER NOT NULL,
    dedup_key TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS idx_desktop_log_event_ts ON desktop_log_event(ts);

CREATE TABLE IF NOT EXISTS worktree_event (
    id TEXT PRIMARY KEY,
    ts INTEGER NOT NULL,
    action TEXT NOT NULL,
    worktree_path TEXT,
    repo_root TEXT,
    branch TEXT,
    status TEXT NOT NULL,
    error TEXT,
    app_session_id TEXT,
    source_log_id TEXT,
    dedup_key TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS idx_worktree_event_path ON worktree_event(worktree_path, ts);

CREATE TABLE IF NOT EXISTS automation_event (
    id TEXT PRIMARY KEY,
    ts INTEGER NOT NULL,
    action TEXT NOT NULL,
    thread_id TEXT,
    status TEXT NOT NULL,
    error TEXT,
    app_session_id TEXT,
    source_log_id TEXT,
    dedup_key TEXT NOT NULL UNIQUE
);
"""


def resolve_db_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.getenv("CODEX_OBSERV_DB_PATH")
    if env_path and env_path.strip():
        return Path(env_path.strip()).expanduser()
    return DEFAULT_DB_PATH


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = ensure_path(db_path)
    conn = sqlite3.connect(str(path), check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    row = conn.execute("PRAGMA user_version").fetchone()
    version = int(row[0]) if row else 0
    if version >= SCHEMA_VERSION:
        return
    conn.executescript(SCHEMA_SQL)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()


def table_for(kind: str) -> str:
    if kind not in RECORD_KINDS:
        raise ValueError(f"unknown record kind: {kind}")
    return kind
