from __future__ import annotations

from pathlib import Path

from rich import print
from rich.markup import escape

from codex_observ.ingest.cli_log import parse_cli_log_file
from codex_observ.ingest.desktop_log import parse_desktop_log_file
from codex_observ.ingest.types import IngestSettings

from .common import compact_text, format_ms


def parse_log_cmd(path: Path, *, offset: int, settings: IngestSettings, limit: int) -> None:
    """Print the tool calls a CLI log would yield, without storing anything."""

    result = parse_cli_log_file(path, offset, settings=settings)
    print(f"[bold]{escape(str(path))}[/bold]")
    print(f"- Lines read: {result.lines_read} (new offset {result.new_offset})")
    print(f"- Tool calls: {len(result.tool_calls)}")
    statuses: dict[str, int] = {}
    for call in result.tool_calls:
        statuses[call.status] = statuses.get(call.status, 0) + 1
    if statuses:
        summary = ", ".join(f"{status}={count}" for status, count in sorted(statuses.items()))
        print(f"- Status: {summary}")
    for call in result.tool_calls[:limit]:
        duration = f"{call.duration_ms}ms" if call.duration_ms is not None else "-"
        print(
            f"  {format_ms(call.start_ts)} {call.tool_name} ({call.status}) {duration} "
            f"line={call.source_line} {escape(compact_text(call.command))}"
        )


def parse_desktop_log_cmd(
    path: Path, *, offset: int, settings: IngestSettings, limit: int
) -> None:
    """Print the retained events a desktop log would yield, without storing anything."""

    result = parse_desktop_log_file(path, offset, settings=settings)
    print(f"[bold]{escape(str(path))}[/bold]")
    print(f"- Lines read: {result.lines_read} (new offset {result.new_offset})")
    print(f"- Retained events: {len(result.events)}")
    print(f"- Worktree events: {len(result.worktree_events)}")
    print(f"- Automation events: {len(result.automation_events)}")
    if result.errors:
        print(f"[yellow]- Unparseable records: {len(result.errors)}[/yellow]")
    for event in result.events[:limit]:
        component = escape(f"[{event.component}] ") if event.component else ""
        print(
            f"  {format_ms(event.ts)} {event.level or '-'} {component}"
            f"{escape(compact_text(event.message))}"
        )
