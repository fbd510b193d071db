from __future__ import annotations

import sqlite3

from ..utils import now_ms
from .types import Watermark


def _from_row(row: sqlite3.Row) -> Watermark:
    return Watermark(
        path=str(row["path"]),
        byte_offset=int(row["byte_offset"]),
        mtime_ms=int(row["mtime_ms"]) if row["mtime_ms"] is not None else None,
        updated_at=int(row["updated_at"]),
        session_id=row["session_id"],
        model=row["model"],
        model_provider=row["model_provider"],
    )


def get_watermark(conn: sqlite3.Connection, path: str) -> Watermark | None:
    row = conn.execute(
        """
        SELECT path, byte_offset, mtime_ms, updated_at, session_id, model, model_provider
        FROM ingest_state
        WHERE path = ?
        """,
        (path,),
    ).fetchone()
    if row is None:
        return None
    return _from_row(row)


def set_watermark(
    conn: sqlite3.Connection,
    path: str,
    byte_offset: int,
    mtime_ms: int | None,
    *,
    session_id: str | None = None,
    model: str | None = None,
    model_provider: str | None = None,
    updated_at: int | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO ingest_state(
            path, byte_offset, mtime_ms, updated_at, session_id, model, model_provider
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(path) DO UPDATE SET
            byte_offset = excluded.byte_offset,
            mtime_ms = excluded.mtime_ms,
            updated_at = excluded.updated_at,
            session_id = excluded.session_id,
            model = excluded.model,
            model_provider = excluded.model_provider
        """,
        (
            path,
            int(byte_offset),
            mtime_ms,
            updated_at if updated_at is not None else now_ms(),
            session_id,
            model,
            model_provider,
        ),
    )
    conn.commit()


def delete_watermark(conn: sqlite3.Connection, path: str) -> bool:
    cur = conn.execute("DELETE FROM ingest_state WHERE path = ?", (path,))
    conn.commit()
    return cur.rowcount > 0


def list_watermarks(conn: sqlite3.Connection) -> list[Watermark]:
    rows = conn.execute(
        """
        SELECT path, byte_offset, mtime_ms, updated_at, session_id, model, model_provider
        FROM ingest_state
        ORDER BY updated_at DESC, path
        """
    ).fetchall()
    return [_from_row(row) for row in rows]


def last_sync_time(conn: sqlite3.Connection) -> int | None:
    row = conn.execute("SELECT MAX(updated_at) AS last FROM ingest_state").fetchone()
    if row is None or row["last"] is None:
        return None
    return int(row["last"])
