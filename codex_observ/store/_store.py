from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .. import db
from . import records as store_records
from . import watermarks as store_watermarks
from .types import BatchInsertResult, Watermark, WorktreeAction

if TYPE_CHECKING:
    from ..ingest.types import IngestResult


class IngestStore:
    """SQLite-backed storage for ingested records and per-file watermarks."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        check_same_thread: bool = True,
    ):
        self.db_path = db.resolve_db_path(db_path)
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)
        # Held for the length of an ingest run against this store.
        self.ingest_lock = threading.Lock()
        self.last_ingest_result: IngestResult | None = None

    def insert_if_absent(self, kind: str, record: Any) -> bool:
        with self.conn:
            return store_records.insert_if_absent(self.conn, kind, record)

    def insert_batched(
        self, kind: str, records: Sequence[Any], chunk_size: int = 100
    ) -> BatchInsertResult:
        return store_records.insert_batched(self.conn, kind, records, chunk_size)

    def count_rows(self, kind: str) -> int:
        return store_records.count_rows(self.conn, kind)

    def latest_worktree_actions(self) -> list[WorktreeAction]:
        return store_records.latest_worktree_actions(self.conn)

    def get_watermark(self, path: str) -> Watermark | None:
        return store_watermarks.get_watermark(self.conn, path)

    def set_watermark(
        self,
        path: str,
        byte_offset: int,
        mtime_ms: int | None,
        *,
        session_id: str | None = None,
        model: str | None = None,
        model_provider: str | None = None,
    ) -> None:
        store_watermarks.set_watermark(
            self.conn,
            path,
            byte_offset,
            mtime_ms,
            session_id=session_id,
            model=model,
            model_provider=model_provider,
        )

    def delete_watermark(self, path: str) -> bool:
        return store_watermarks.delete_watermark(self.conn, path)

    def list_watermarks(self) -> list[Watermark]:
        return store_watermarks.list_watermarks(self.conn)

    def last_sync_time(self) -> int | None:
        return store_watermarks.last_sync_time(self.conn)

    def close(self) -> None:
        self.conn.close()
