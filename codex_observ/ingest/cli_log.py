from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .correlate import CorrelatedCall, build_record, correlate_tool_calls, pair_markers
from .markers import extract_markers
from .reader import read_lines_incremental
from .types import DEFAULT_SETTINGS, IngestSettings, LineError, ToolCallRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CliLogParseResult:
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    errors: list[LineError] = field(default_factory=list)
    new_offset: int = 0
    was_reset: bool = False
    lines_read: int = 0
    # First line of the calls left for the next read, if any.
    held_from_line: int | None = None


def parse_cli_log_lines(
    lines: list[str],
    source_file: str,
    *,
    first_line_number: int = 1,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> list[ToolCallRecord]:
    batch = extract_markers(lines, first_line_number, settings=settings)
    return correlate_tool_calls(batch.starts, batch.ends, source_file, settings=settings)


def find_open_call_line(
    calls: list[CorrelatedCall], last_ts: int | None, window_ms: int
) -> int | None:
    """Return the line from which calls may still change with more input.

    A start without an end stays open while an end logged after ``last_ts``
    could still fall inside the correlation window. Calls that straddle that
    line are pulled back with it, so everything before it pairs the same way
    whether or not the rest of the file is read in the same pass.
    """

    if last_ts is None:
        return None
    horizon = last_ts - window_ms
    open_lines = [
        call.first_line
        for call in calls
        if call.end is None and call.start is not None and call.start.ts >= horizon
    ]
    if not open_lines:
        return None
    cut = min(open_lines)
    moved = True
    while moved:
        moved = False
        for call in calls:
            if call.first_line < cut <= call.last_line:
                cut = call.first_line
                moved = True
    return cut


def parse_cli_log_file(
    path: str | Path,
    from_offset: int = 0,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
    final: bool = True,
) -> CliLogParseResult:
    """Extract tool calls from the CLI log lines appended since ``from_offset``.

    With ``final`` unset, calls that a later append could still complete are
    not emitted; ``new_offset`` stops at the first of them so the next read
    correlates them whole. With ``final`` set, pending starts are emitted as
    ``unknown``. Raises ``OSError`` when the file cannot be read.
    """

    file_path = str(Path(path).resolve())
    read = read_lines_incremental(file_path, from_offset)
    batch = extract_markers(read.lines, read.first_line_number, settings=settings)
    calls = pair_markers(batch.starts, batch.ends, settings=settings)

    result = CliLogParseResult(
        new_offset=read.new_offset,
        was_reset=read.was_reset,
        lines_read=len(read.lines),
    )
    if not final:
        result.held_from_line = find_open_call_line(
            calls, batch.last_ts, settings.correlation_window_ms
        )
    if result.held_from_line is not None:
        calls = [call for call in calls if call.last_line < result.held_from_line]
        result.new_offset = read.offset_of(result.held_from_line)
    result.tool_calls = [
        build_record(start=call.start, end=call.end, source_file=file_path, settings=settings)
        for call in calls
    ]
    logger.debug(
        "cli log %s: %d tool calls from %d lines, held from line %s",
        file_path,
        len(result.tool_calls),
        len(read.lines),
        result.held_from_line,
    )
    return result
