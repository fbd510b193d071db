from __future__ import annotations

import typer
from rich import print

from . import __version__
from .commands.common import configure_logging, load_config_or_exit, require_file
from .commands.ingest_cmds import ingest_cmd, init_db_cmd, status_cmd
from .commands.parse_cmds import parse_desktop_log_cmd, parse_log_cmd
from .store import IngestStore

app = typer.Typer(help="codex-observ: local ingestion of Codex sessions and logs")
parse_app = typer.Typer(help="Parse a single log file without storing anything")
app.add_typer(parse_app, name="parse")


def _store(db_path: str | None) -> IngestStore:
    return IngestStore(db_path or load_config_or_exit().db_path)


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    init_db_cmd(store_from_path=_store, db_path=db_path)


@app.command()
def ingest(
    full: bool = typer.Option(False, help="Re-read every file from the start"),
    codex_home: str = typer.Option(None, help="Codex home directory (defaults to ~/.codex)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    store_content: bool = typer.Option(False, help="Keep message bodies"),
    json_output: bool = typer.Option(False, "--json", help="Print the run summary as JSON"),
    progress: bool = typer.Option(False, help="Print a line per processed file"),
    verbose: bool = typer.Option(False, help="Enable debug logging"),
) -> None:
    """Ingest new session, CLI log and desktop log lines."""
    configure_logging(verbose)
    config = load_config_or_exit()
    if codex_home:
        config.codex_home = codex_home
    if db_path:
        config.db_path = db_path
    if store_content:
        config.store_content = True
    store = IngestStore(config.db_path)
    try:
        ingest_cmd(
            store,
            config=config,
            mode="full" if full else "incremental",
            as_json=json_output,
            show_progress=progress,
        )
    finally:
        store.close()


@app.command()
def status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show tracked files and stored row counts."""
    store = _store(db_path)
    try:
        status_cmd(store)
    finally:
        store.close()


@parse_app.command("cli-log")
def parse_cli_log(
    path: str = typer.Argument(..., help="Path to codex-tui.log"),
    offset: int = typer.Option(0, help="Byte offset to start reading from"),
    limit: int = typer.Option(20, help="Max tool calls to list"),
    verbose: bool = typer.Option(False, help="Enable debug logging"),
) -> None:
    """Correlate tool calls in a CLI log and print them."""
    configure_logging(verbose)
    settings = load_config_or_exit().ingest_settings()
    parse_log_cmd(require_file(path), offset=offset, settings=settings, limit=limit)


@parse_app.command("desktop-log")
def parse_desktop_log(
    path: str = typer.Argument(..., help="Path to a codex-desktop-*.log file"),
    offset: int = typer.Option(0, help="Byte offset to start reading from"),
    limit: int = typer.Option(20, help="Max events to list"),
    verbose: bool = typer.Option(False, help="Enable debug logging"),
) -> None:
    """Parse a desktop log and print the events that would be stored."""
    configure_logging(verbose)
    settings = load_config_or_exit().ingest_settings()
    parse_desktop_log_cmd(require_file(path), offset=offset, settings=settings, limit=limit)


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)
