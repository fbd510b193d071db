from __future__ import annotations

import json
from collections.abc import Callable

import typer
from rich import print
from rich.markup import escape

from codex_observ.config import CodexObservConfig
from codex_observ.db import RECORD_KINDS
from codex_observ.ingest.runner import IngestMode, run_ingest
from codex_observ.ingest.types import IngestProgress
from codex_observ.store import IngestStore

from .common import format_ms

MAX_ERRORS_SHOWN = 10


def init_db_cmd(
    *, store_from_path: Callable[[str | None], IngestStore], db_path: str | None
) -> None:
    """Create the SQLite database (no-op if it already exists)."""

    store = store_from_path(db_path)
    try:
        print(f"Initialized database at {store.db_path}")
    finally:
        store.close()


def ingest_cmd(
    store: IngestStore,
    *,
    config: CodexObservConfig,
    mode: IngestMode,
    as_json: bool,
    show_progress: bool,
) -> None:
    """Run one ingest pass and print its summary."""

    def _progress(progress: IngestProgress) -> None:
        print(
            f"[dim][{progress.file_index}/{progress.file_count}] {progress.file} "
            f"lines={progress.lines_read} offset={progress.new_offset}[/dim]"
        )

    result = run_ingest(
        store,
        mode=mode,
        config=config,
        on_progress=_progress if show_progress and not as_json else None,
    )
    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return

    print(f"[bold]Ingest ({mode})[/bold]")
    print(f"- Files processed: {result.files_processed}")
    print(f"- Lines ingested: {result.lines_ingested}")
    print(f"- Rows inserted: {result.rows_inserted}")
    print(f"- Duration: {result.duration_ms} ms")
    if result.reset_files:
        print(f"- Re-read from start (truncated): {len(result.reset_files)}")
    if not result.errors:
        return
    print(f"[yellow]- Errors: {len(result.errors)}[/yellow]")
    for error in result.errors[:MAX_ERRORS_SHOWN]:
        print(escape(f"  {error.file}:{error.line} {error.message}"))
    if len(result.errors) > MAX_ERRORS_SHOWN:
        print(f"  ... {len(result.errors) - MAX_ERRORS_SHOWN} more")


def status_cmd(store: IngestStore) -> None:
    """Show tracked files, their offsets, and stored row counts."""

    watermarks = store.list_watermarks()
    print("[bold]Ingest status[/bold]")
    print(f"- Database: {store.db_path}")
    print(f"- Last sync: {format_ms(store.last_sync_time())}")
    print(f"- Tracked files: {len(watermarks)}")
    for watermark in watermarks:
        print(
            f"  {watermark.path} offset={watermark.byte_offset} "
            f"updated={format_ms(watermark.updated_at)}"
        )

    print("\n[bold]Rows[/bold]")
    for kind in sorted(RECORD_KINDS):
        print(f"- {kind}: {store.count_rows(kind)}")
