from __future__ import annotations

import datetime as dt
import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..redaction import strip_ansi
from .fields import as_int, as_text, fields, first_of
from .types import (
    ARG_CONTINUATION_MAX_LINES,
    DEFAULT_SETTINGS,
    SIGNATURE_MAX_CHARS,
    EndMarker,
    IngestSettings,
    StartMarker,
    ToolCallPhase,
)

FUNCTION_CALL_RE = re.compile(r"\bFunctionCall:\s*([A-Za-z0-9_.:-]+)")
TOOL_CALL_RE = re.compile(r"\bToolCall:\s*([A-Za-z0-9_.:-]+)")
BACKGROUND_EVENT_RE = re.compile(r"\bBackgroundEvent:")
TIMESTAMP_START_RE = re.compile(r"^\s*\d{4}-\d{2}-\d{2}[ T]")

ISO_TIMESTAMP_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?(Z|[+-]\d{2}:?\d{2})?"
)
LEGACY_TIMESTAMP_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?"
)

ARGS_PREFIX_RE = re.compile(r"^[:\-\s]+")
ARGS_LABEL_RE = re.compile(r"^args?=\s*", re.IGNORECASE)
KEY_VALUE_RE = re.compile(r"""(\w+)=("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'|\S+)""")

BACKGROUND_EXIT_CODE_RES = [
    re.compile(r"exit\s*code\s*=?\s*(-?\d+)", re.IGNORECASE),
    re.compile(r"code\s*=?\s*(-?\d+)", re.IGNORECASE),
]
BACKGROUND_ERROR_RE = re.compile(r"(Execution failed:|Error:|Failed:)(.*)$", re.IGNORECASE)
BACKGROUND_TOOL_RE = re.compile(r"\btool\s*=?\s*([A-Za-z0-9_.:-]+)", re.IGNORECASE)
BACKGROUND_COMMAND_RE = re.compile(
    r"""\bcommand\s*=?\s*("[^"]+"|'[^']+'|[^,]+)$""", re.IGNORECASE
)

STATUS_WORDS: dict[str, ToolCallPhase] = {
    **dict.fromkeys(("start", "started", "starting", "running", "pending"), "start"),
    **dict.fromkeys(
        ("ok", "success", "succeeded", "complete", "completed", "done", "finished", "exit"),
        "exit",
    ),
    **dict.fromkeys(("fail", "failed", "failure", "error", "errored"), "failure"),
}

# Substring scan of the whole line, checked in order.
LINE_STATUS_KEYWORDS: list[tuple[tuple[str, ...], ToolCallPhase]] = [
    (("failed", "error"), "failure"),
    (("completed", "finished", "success"), "exit"),
    (("started", "running", "pending"), "start"),
]

COMMAND_FIELDS = fields("cmd", "command", coerce=as_text)
EXIT_CODE_FIELDS = fields("exit_code", "exitCode", "code", coerce=as_int)
DURATION_FIELDS = fields("duration_ms", "durationMs", "duration", coerce=as_int)
STDOUT_FIELDS = fields("stdout_bytes", "stdoutBytes", "stdout", coerce=as_int)
STDERR_FIELDS = fields("stderr_bytes", "stderrBytes", "stderr", coerce=as_int)
ERROR_FIELDS = fields("error", "err", "message", coerce=as_text)
STATUS_FIELDS = fields("status", "state", "event", "phase", coerce=as_text)


@dataclass(frozen=True, slots=True)
class MarkerMatch:
    marker: StartMarker | EndMarker
    consumed_lines: int


@dataclass(slots=True)
class MarkerBatch:
    starts: list[StartMarker] = field(default_factory=list)
    ends: list[EndMarker] = field(default_factory=list)
    # Latest timestamp seen on any line of the batch.
    last_ts: int | None = None


def _epoch_ms(value: dt.datetime) -> int:
    return int(round(value.timestamp() * 1000))


def _millis(fraction: str | None) -> int:
    if not fraction:
        return 0
    return int(fraction[:3].ljust(3, "0"))


def _offset(value: str | None) -> dt.tzinfo:
    if not value or value == "Z":
        return dt.UTC
    sign = -1 if value[0] == "-" else 1
    digits = value[1:].replace(":", "")
    delta = dt.timedelta(hours=int(digits[:2]), minutes=int(digits[2:4]))
    return dt.timezone(sign * delta)


def parse_timestamp(line: str) -> int | None:
    """Return the first timestamp in ``line`` as epoch milliseconds.

    ISO-8601 (``T`` separator, optional offset, UTC when absent) is preferred;
    ``YYYY-MM-DD HH:MM:SS`` is accepted as local time.
    """

    iso = ISO_TIMESTAMP_RE.search(line)
    if iso:
        try:
            parsed = dt.datetime(
                int(iso.group(1)),
                int(iso.group(2)),
                int(iso.group(3)),
                int(iso.group(4)),
                int(iso.group(5)),
                int(iso.group(6)),
                _millis(iso.group(7)) * 1000,
                tzinfo=_offset(iso.group(8)),
            )
        except ValueError:
            parsed = None
        if parsed is not None:
            return _epoch_ms(parsed)

    legacy = LEGACY_TIMESTAMP_RE.search(line)
    if not legacy:
        return None
    try:
        local = dt.datetime(
            int(legacy.group(1)),
            int(legacy.group(2)),
            int(legacy.group(3)),
            int(legacy.group(4)),
            int(legacy.group(5)),
            int(legacy.group(6)),
            _millis(legacy.group(7)) * 1000,
        )
    except ValueError:
        return None
    return _epoch_ms(local)


def normalize_command(value: str) -> str:
    return " ".join(value.split())[:SIGNATURE_MAX_CHARS]


def build_signature(tool_name: str | None, command: str | None, fallback: str | None) -> str:
    normalized = normalize_command(command or fallback or "")
    if not tool_name:
        return normalized
    if not normalized:
        return tool_name
    return f"{tool_name}|{normalized}"


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def cleanup_args_prefix(value: str) -> str:
    text = value.strip()
    if not text:
        return text
    text = ARGS_PREFIX_RE.sub("", text)
    text = ARGS_LABEL_RE.sub("", text)
    return text.strip()


def collect_args_text(
    lines: Sequence[str],
    index: int,
    remainder: str,
    *,
    max_lines: int = ARG_CONTINUATION_MAX_LINES,
) -> tuple[str | None, int]:
    """Gather argument text for the marker on ``lines[index]``.

    Returns the text and how many following lines it consumed. JSON that
    spills over several lines is extended until it parses, a timestamped line
    starts, or ``max_lines`` continuation lines were taken.
    """

    text = cleanup_args_prefix(remainder)
    consumed = 0

    if not text and index + 1 < len(lines) and lines[index + 1]:
        following = lines[index + 1].strip()
        if following.startswith(("{", "[")):
            text = following
            consumed = 1

    if not text:
        return None, 0

    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()

    if text.startswith(("{", "[")):
        combined = text
        cursor = index + consumed + 1
        while cursor < len(lines) and consumed < max_lines and not _is_json(combined):
            following = lines[cursor]
            if TIMESTAMP_START_RE.match(following):
                break
            combined = f"{combined}\n{following}"
            consumed += 1
            cursor += 1
        text = combined

    return text, consumed


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def parse_key_values(text: str) -> dict[str, str]:
    return {match.group(1): _unquote(match.group(2)) for match in KEY_VALUE_RE.finditer(text)}


def parse_args(args_text: str | None) -> tuple[dict[str, Any], str | None]:
    """Parse marker arguments as a JSON object, else as ``key=value`` tokens."""

    if not args_text:
        return {}, None
    trimmed = args_text.strip()
    looks_like_json = (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    )
    if looks_like_json:
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            parsed = None
        else:
            if isinstance(parsed, dict):
                return parsed, first_of(parsed, COMMAND_FIELDS)
            return {}, None

    pairs = parse_key_values(trimmed)
    return pairs, first_of(pairs, COMMAND_FIELDS)


def status_from_text(value: str | None) -> ToolCallPhase | None:
    if not value:
        return None
    return STATUS_WORDS.get(value.strip().lower())


def status_from_line(line: str) -> ToolCallPhase | None:
    lowered = line.lower()
    for keywords, phase in LINE_STATUS_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return phase
    return None


def infer_phase(
    line: str,
    *,
    status: str | None,
    exit_code: int | None,
    error: str | None,
    duration_ms: int | None,
) -> ToolCallPhase:
    phase = status_from_text(status) or status_from_line(line)
    if phase is not None:
        return phase
    if exit_code is not None:
        return "exit" if exit_code == 0 else "failure"
    if error:
        return "failure"
    if duration_ms is not None:
        return "exit"
    return "start"


def parse_function_call(
    lines: Sequence[str],
    index: int,
    ts: int,
    source_line: int,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> MarkerMatch | None:
    line = lines[index]
    match = FUNCTION_CALL_RE.search(line)
    if not match:
        return None
    tool_name = match.group(1)
    args_text, consumed = collect_args_text(
        lines, index, line[match.end() :], max_lines=settings.arg_continuation_max_lines
    )
    _, command = parse_args(args_text)
    marker = StartMarker(
        ts=ts,
        tool_name=tool_name,
        command=command,
        signature=build_signature(tool_name, command, args_text),
        source_line=source_line,
    )
    return MarkerMatch(marker=marker, consumed_lines=consumed)


def parse_tool_call(
    lines: Sequence[str],
    index: int,
    ts: int,
    source_line: int,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> MarkerMatch | None:
    line = lines[index]
    match = TOOL_CALL_RE.search(line)
    if not match:
        return None
    tool_name = match.group(1)
    args_text, consumed = collect_args_text(
        lines, index, line[match.end() :], max_lines=settings.arg_continuation_max_lines
    )
    args, command = parse_args(args_text)
    signature = build_signature(tool_name, command, args_text)

    exit_code = first_of(args, EXIT_CODE_FIELDS)
    duration_ms = first_of(args, DURATION_FIELDS)
    error = first_of(args, ERROR_FIELDS)
    phase = infer_phase(
        line,
        status=first_of(args, STATUS_FIELDS),
        exit_code=exit_code,
        error=error,
        duration_ms=duration_ms,
    )

    marker: StartMarker | EndMarker
    if phase == "start":
        marker = StartMarker(
            ts=ts,
            tool_name=tool_name,
            command=command,
            signature=signature,
            source_line=source_line,
        )
    else:
        marker = EndMarker(
            ts=ts,
            tool_name=tool_name,
            command=command,
            signature=signature,
            source_line=source_line,
            event_kind=phase,
            exit_code=exit_code,
            duration_ms=duration_ms,
            stdout_bytes=first_of(args, STDOUT_FIELDS),
            stderr_bytes=first_of(args, STDERR_FIELDS),
            error=error,
            source="tool_call",
        )
    return MarkerMatch(marker=marker, consumed_lines=consumed)


def _background_exit_code(line: str) -> int | None:
    for pattern in BACKGROUND_EXIT_CODE_RES:
        match = pattern.search(line)
        if match:
            return as_int(match.group(1))
    return None


def _background_error(line: str) -> str | None:
    match = BACKGROUND_ERROR_RE.search(line)
    if not match:
        return None
    return match.group(2).strip() or None


def _background_tool(line: str) -> str | None:
    match = BACKGROUND_TOOL_RE.search(line)
    return match.group(1) if match else None


def _background_command(line: str) -> str | None:
    match = BACKGROUND_COMMAND_RE.search(line)
    if not match:
        return None
    return _unquote(match.group(1).strip())


def parse_background_event(
    lines: Sequence[str],
    index: int,
    ts: int,
    source_line: int,
) -> MarkerMatch | None:
    """Match a failed ``BackgroundEvent:`` line. Never produces a start."""

    line = lines[index]
    if not BACKGROUND_EVENT_RE.search(line):
        return None
    lowered = line.lower()
    if "failed" not in lowered and "error" not in lowered:
        return None

    tool_name = _background_tool(line)
    command = _background_command(line)
    marker = EndMarker(
        ts=ts,
        tool_name=tool_name,
        command=command,
        signature=build_signature(tool_name, command, line),
        source_line=source_line,
        event_kind="failure",
        exit_code=_background_exit_code(line),
        error=_background_error(line),
        source="background_event",
    )
    return MarkerMatch(marker=marker, consumed_lines=0)


def extract_markers(
    lines: Sequence[str],
    first_line_number: int = 1,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> MarkerBatch:
    """Scan CLI log lines for tool-call lifecycle markers.

    ``lines[i]`` is absolute line ``first_line_number + i``. Only lines that
    carry a timestamp can start a marker; the following untimestamped lines
    may be consumed as its argument text.
    """

    clean = [strip_ansi(line) for line in lines]
    batch = MarkerBatch()
    index = 0
    while index < len(clean):
        trimmed = clean[index].strip()
        if not trimmed:
            index += 1
            continue
        ts = parse_timestamp(trimmed)
        if ts is None:
            index += 1
            continue
        if batch.last_ts is None or ts > batch.last_ts:
            batch.last_ts = ts
        source_line = first_line_number + index

        found = (
            parse_tool_call(clean, index, ts, source_line, settings=settings)
            or parse_function_call(clean, index, ts, source_line, settings=settings)
            or parse_background_event(clean, index, ts, source_line)
        )
        if found is None:
            index += 1
            continue
        if isinstance(found.marker, StartMarker):
            batch.starts.append(found.marker)
        else:
            batch.ends.append(found.marker)
        index += found.consumed_lines + 1
    return batch
