"""Run one ingestion pass over sessions, the CLI log and desktop logs."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ..config import CodexObservConfig, load_config
from ..fs_paths import (
    cli_log_path,
    discover_desktop_log_files,
    discover_session_files,
    resolve_codex_home,
    resolve_desktop_log_roots,
)
from ..store import IngestStore, Watermark
from ..utils import now_ms
from .cli_log import parse_cli_log_file
from .desktop_log import parse_desktop_log_file
from .reader import read_jsonl_incremental
from .sessions import SessionTracker, extract_session_lines
from .types import IngestError, IngestProgress, IngestResult, IngestSettings, ParseContext
from .worktrees import infer_archived_worktrees

logger = logging.getLogger(__name__)

IngestMode = Literal["incremental", "full"]
ProgressCallback = Callable[[IngestProgress], None]

# Failures that cost one file or source, never the whole run.
RECOVERABLE_ERRORS = (OSError, sqlite3.Error, ValueError, OverflowError)


@dataclass(slots=True)
class IngestContext:
    """State threaded through one run."""

    store: IngestStore
    config: CodexObservConfig
    settings: IngestSettings
    codex_home: Path
    desktop_log_roots: list[Path]
    incremental: bool
    on_progress: ProgressCallback | None = None
    result: IngestResult = field(default_factory=IngestResult)

    def record_error(self, file: str | Path, line: int, message: str) -> None:
        self.result.errors.append(IngestError(file=str(file), line=line, message=message))

    def previous_watermark(self, file_key: str) -> Watermark | None:
        if not self.incremental:
            return None
        return self.store.get_watermark(file_key)

    def insert(self, kind: str, records: Sequence[Any], file_key: str) -> None:
        if not records:
            return
        inserted = self.store.insert_batched(kind, records, self.config.chunk_size)
        self.result.rows_inserted += inserted.inserted
        for failure in inserted.failures:
            self.record_error(file_key, failure.line, failure.message)

    def progress(self, file_key: str, index: int, count: int, lines: int, offset: int) -> None:
        if self.on_progress is None:
            return
        self.on_progress(
            IngestProgress(
                file=file_key,
                file_index=index,
                file_count=count,
                lines_read=lines,
                new_offset=offset,
            )
        )


def _mtime_ms(path: Path) -> int:
    return int(path.stat().st_mtime * 1000)


def _file_key(path: Path) -> str:
    return str(path.resolve())


def _start_offset(watermark: Watermark | None) -> int:
    return watermark.byte_offset if watermark else 0


def _is_settled(ctx: IngestContext, mtime_ms: int) -> bool:
    if ctx.settings.tail_settle_ms <= 0:
        return True
    return now_ms() - mtime_ms >= ctx.settings.tail_settle_ms


def ingest_session_file(ctx: IngestContext, path: Path, index: int, count: int) -> None:
    file_key = _file_key(path)
    mtime_ms = _mtime_ms(path)
    watermark = ctx.previous_watermark(file_key)
    read = read_jsonl_incremental(file_key, _start_offset(watermark))
    if read.was_reset:
        ctx.result.reset_files.append(file_key)

    for error in read.errors:
        ctx.record_error(file_key, error.line, error.message)

    tracker = SessionTracker()
    if watermark is not None and not read.was_reset:
        tracker = SessionTracker.resume(
            watermark.session_id, watermark.model, watermark.model_provider
        )
    batch = extract_session_lines(
        read.lines,
        base_context=ParseContext(
            file_path=file_key, line_number=0, fallback_ts=mtime_ms, settings=ctx.settings
        ),
        tracker=tracker,
    )
    ctx.insert("session", batch.sessions, file_key)
    ctx.insert("message", batch.messages, file_key)
    ctx.insert("model_call", batch.model_calls, file_key)

    current = tracker.current()
    ctx.store.set_watermark(
        file_key,
        read.new_offset,
        mtime_ms,
        session_id=tracker.session_id,
        model=current.model if current else None,
        model_provider=current.model_provider if current else None,
    )
    ctx.result.files_processed += 1
    ctx.result.lines_ingested += len(read.lines)
    logger.debug("session file %s: %d lines, %d records", file_key, len(read.lines), len(batch))
    ctx.progress(file_key, index, count, read.lines_read, read.new_offset)


def ingest_sessions(ctx: IngestContext) -> None:
    try:
        files = discover_session_files(ctx.codex_home)
    except OSError as exc:
        logger.warning("session discovery failed under %s: %s", ctx.codex_home, exc)
        ctx.record_error(ctx.codex_home / "sessions", 0, str(exc))
        return
    for index, path in enumerate(files, start=1):
        try:
            ingest_session_file(ctx, path, index, len(files))
        except RECOVERABLE_ERRORS as exc:
            logger.warning("skipping session file %s: %s", path, exc)
            ctx.record_error(path, 0, str(exc))


def ingest_cli_log(ctx: IngestContext) -> None:
    path = cli_log_path(ctx.codex_home)
    if not path.exists():
        return
    try:
        file_key = _file_key(path)
        mtime_ms = _mtime_ms(path)
        parsed = parse_cli_log_file(
            file_key,
            _start_offset(ctx.previous_watermark(file_key)),
            settings=ctx.settings,
            final=_is_settled(ctx, mtime_ms),
        )
        if parsed.was_reset:
            ctx.result.reset_files.append(file_key)
        for error in parsed.errors:
            ctx.record_error(file_key, error.line, error.message)
        ctx.insert("tool_call", parsed.tool_calls, file_key)
        ctx.store.set_watermark(file_key, parsed.new_offset, mtime_ms)
    except RECOVERABLE_ERRORS as exc:
        logger.warning("skipping cli log %s: %s", path, exc)
        ctx.record_error(path, 0, str(exc))
        return
    ctx.result.files_processed += 1
    ctx.result.lines_ingested += len(parsed.tool_calls)
    ctx.progress(file_key, 1, 1, parsed.lines_read, parsed.new_offset)


def ingest_desktop_log_file(ctx: IngestContext, path: Path, index: int, count: int) -> None:
    file_key = _file_key(path)
    mtime_ms = _mtime_ms(path)
    parsed = parse_desktop_log_file(
        file_key,
        _start_offset(ctx.previous_watermark(file_key)),
        settings=ctx.settings,
        final=_is_settled(ctx, mtime_ms),
    )
    if parsed.was_reset:
        ctx.result.reset_files.append(file_key)
    for error in parsed.errors:
        ctx.record_error(file_key, error.line, error.message)
    ctx.insert("desktop_log_event", parsed.events, file_key)
    ctx.insert("worktree_event", parsed.worktree_events, file_key)
    ctx.insert("automation_event", parsed.automation_events, file_key)
    ctx.store.set_watermark(file_key, parsed.new_offset, mtime_ms)
    ctx.result.files_processed += 1
    ctx.result.lines_ingested += len(parsed.events)
    ctx.progress(file_key, index, count, parsed.lines_read, parsed.new_offset)


def ingest_desktop_logs(ctx: IngestContext) -> None:
    try:
        files = discover_desktop_log_files(ctx.desktop_log_roots)
    except OSError as exc:
        logger.warning("desktop log discovery failed: %s", exc)
        roots = ", ".join(str(root) for root in ctx.desktop_log_roots)
        ctx.record_error(roots, 0, str(exc))
        return
    for index, path in enumerate(files, start=1):
        try:
            ingest_desktop_log_file(ctx, path, index, len(files))
        except RECOVERABLE_ERRORS as exc:
            logger.warning("skipping desktop log %s: %s", path, exc)
            ctx.record_error(path, 0, str(exc))


def reconcile_worktrees(ctx: IngestContext) -> None:
    try:
        archived = infer_archived_worktrees(ctx.store, ctx.codex_home, settings=ctx.settings)
    except RECOVERABLE_ERRORS as exc:
        logger.warning("worktree reconciliation failed: %s", exc)
        ctx.record_error(ctx.codex_home / "worktrees", 0, str(exc))
        return
    ctx.result.rows_inserted += archived.inserted
    for failure in archived.failures:
        ctx.record_error(ctx.codex_home / "worktrees", failure.line, failure.message)


def _tracked_roots(ctx: IngestContext) -> list[Path]:
    roots = [ctx.codex_home / "sessions", cli_log_path(ctx.codex_home)]
    roots.extend(ctx.desktop_log_roots)
    resolved: list[Path] = []
    for root in roots:
        try:
            resolved.append(root.resolve())
        except OSError:
            resolved.append(root)
    return resolved


def prune_watermarks(ctx: IngestContext) -> int:
    """Drop watermarks of vanished files under the sources this run scanned."""

    roots = _tracked_roots(ctx)
    removed = 0
    try:
        for watermark in ctx.store.list_watermarks():
            path = Path(watermark.path)
            if path.exists():
                continue
            if not any(path == root or path.is_relative_to(root) for root in roots):
                continue
            if ctx.store.delete_watermark(watermark.path):
                removed += 1
    except sqlite3.Error as exc:
        logger.warning("watermark cleanup failed: %s", exc)
        ctx.record_error("ingest_state", 0, str(exc))
    if removed:
        logger.info("removed %d watermarks for missing files", removed)
    return removed


class IngestRunner:
    """Runs ingestion passes against one store.

    Runs are serialized per store within this process: a call made while
    another run on the same store is in flight returns the previous result
    instead of starting a second pass over the same files.
    """

    def __init__(self, store: IngestStore, config: CodexObservConfig | None = None) -> None:
        self.store = store
        self.config = config or load_config()

    @property
    def last_result(self) -> IngestResult | None:
        return self.store.last_ingest_result

    def build_context(
        self, mode: IngestMode, on_progress: ProgressCallback | None = None
    ) -> IngestContext:
        if mode not in ("incremental", "full"):
            raise ValueError(f"unknown ingest mode: {mode}")
        return IngestContext(
            store=self.store,
            config=self.config,
            settings=self.config.ingest_settings(),
            codex_home=resolve_codex_home(self.config.codex_home),
            desktop_log_roots=resolve_desktop_log_roots(self.config.desktop_log_dirs),
            incremental=mode == "incremental",
            on_progress=on_progress,
        )

    def run(
        self, mode: IngestMode = "incremental", on_progress: ProgressCallback | None = None
    ) -> IngestResult:
        ctx = self.build_context(mode, on_progress)
        lock = self.store.ingest_lock
        if not lock.acquire(blocking=False):
            logger.info("ingest already running; returning previous result")
            return self.last_result or IngestResult()
        try:
            started = now_ms()
            ingest_sessions(ctx)
            ingest_cli_log(ctx)
            ingest_desktop_logs(ctx)
            reconcile_worktrees(ctx)
            prune_watermarks(ctx)
            ctx.result.duration_ms = now_ms() - started
            logger.info(
                "ingest (%s) finished: %d files, %d lines, %d rows, %d errors in %dms",
                mode,
                ctx.result.files_processed,
                ctx.result.lines_ingested,
                ctx.result.rows_inserted,
                len(ctx.result.errors),
                ctx.result.duration_ms,
            )
            self.store.last_ingest_result = ctx.result
            return ctx.result
        finally:
            lock.release()


def run_ingest(
    store: IngestStore,
    *,
    mode: IngestMode = "incremental",
    config: CodexObservConfig | None = None,
    on_progress: ProgressCallback | None = None,
) -> IngestResult:
    """Ingest everything appended since the last run (or everything, in full mode).

    Expected failures end up in ``IngestResult.errors``; the call itself only
    raises for programming errors such as an unknown mode.
    """

    return IngestRunner(store, config).run(mode, on_progress)
