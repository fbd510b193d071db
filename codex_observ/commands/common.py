from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path

import typer
from rich import print

from codex_observ.config import CodexObservConfig, load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format=LOG_FORMAT)


def load_config_or_exit() -> CodexObservConfig:
    try:
        return load_config()
    except ValueError as exc:
        print(f"[red]Config error: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def require_file(path: str) -> Path:
    resolved = Path(path).expanduser()
    if not resolved.is_file():
        print(f"[red]File not found: {resolved}[/red]")
        raise typer.Exit(code=1)
    return resolved


def format_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return dt.datetime.fromtimestamp(value / 1000, tz=dt.UTC).isoformat(timespec="seconds")


def compact_text(value: str | None, limit: int = 80) -> str:
    if not value:
        return ""
    text = " ".join(value.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
