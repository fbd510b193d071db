from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from ..dedup import generate_dedup_key
from ..redaction import sanitize_log_text, strip_ansi
from ..utils import iso_to_epoch_ms
from . import policy
from .fields import as_int
from .reader import read_lines_incremental
from .types import (
    DEFAULT_SETTINGS,
    RAW_TEXT_MAX_CHARS,
    AutomationEvent,
    DesktopLogEvent,
    IngestSettings,
    LineError,
    WorktreeEvent,
)

logger = logging.getLogger(__name__)

RECORD_START_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\s")
HEADER_RE = re.compile(
    r"^(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z)\s+(?P<level>[a-zA-Z]+)\s+(?P<rest>.*)$"
)
PAYLOAD_SPLIT_RE = re.compile(r"^(.*?)(\s\{.*)$", re.DOTALL)
FILE_NAME_RE = re.compile(
    r"^codex-desktop-([a-f0-9-]+)-(\d+)-t(\d+)-i(\d+)-\d{6}-(\d+)\.log$", re.IGNORECASE
)

PATH_PATTERNS = [
    re.compile(r"[\"'](/[^\"']+)[\"']"),
    re.compile(r"[\"']([A-Za-z]:\\[^\"']+)[\"']"),
    re.compile(r"(/[^\s'\"`]+)"),
    re.compile(r"([A-Za-z]:\\[^\s'\"`]+)"),
]
BRANCH_RE = re.compile(r"branch[:=\s]+([A-Za-z0-9._/-]+)", re.IGNORECASE)
THREAD_RE = re.compile(r"thread(?:_id)?[:=\s]+([A-Za-z0-9-]+)", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class FileMeta:
    app_session_id: str | None = None
    process_id: int | None = None
    thread_id: int | None = None
    instance_id: int | None = None
    segment_index: int | None = None


@dataclass(frozen=True, slots=True)
class LogRecord:
    ts: int
    level: str | None
    component: str | None
    message: str
    payload_text: str | None


@dataclass(slots=True)
class DesktopLogParseResult:
    events: list[DesktopLogEvent] = field(default_factory=list)
    worktree_events: list[WorktreeEvent] = field(default_factory=list)
    automation_events: list[AutomationEvent] = field(default_factory=list)
    errors: list[LineError] = field(default_factory=list)
    new_offset: int = 0
    was_reset: bool = False
    lines_read: int = 0
    # Header line of a trailing record left for the next read, if any.
    held_from_line: int | None = None


def parse_log_file_name(path: str | Path) -> FileMeta:
    match = FILE_NAME_RE.match(Path(path).name)
    if not match:
        return FileMeta()
    return FileMeta(
        app_session_id=match.group(1),
        process_id=as_int(match.group(2)),
        thread_id=as_int(match.group(3)),
        instance_id=as_int(match.group(4)),
        segment_index=as_int(match.group(5)),
    )


def parse_log_record(lines: list[str]) -> LogRecord | None:
    if not lines:
        return None
    header = HEADER_RE.match(lines[0])
    if not header:
        return None
    ts = iso_to_epoch_ms(header.group("ts"))
    if ts is None:
        return None

    level = header.group("level").lower()
    rest = header.group("rest").strip()
    component: str | None = None
    if rest.startswith("["):
        end = rest.find("]")
        if end > 0:
            component = rest[1:end]
            rest = rest[end + 1 :].strip()

    message = rest
    if len(lines) > 1:
        message = message + "\n" + "\n".join(lines[1:])

    payload_text: str | None = None
    payload = PAYLOAD_SPLIT_RE.match(message)
    if payload:
        message = payload.group(1).strip()
        payload_text = payload.group(2).strip() or None
    return LogRecord(
        ts=ts, level=level, component=component, message=message, payload_text=payload_text
    )


def extract_path(text: str) -> str | None:
    for pattern in PATH_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def extract_branch(text: str) -> str | None:
    match = BRANCH_RE.search(text)
    return match.group(1) if match else None


def extract_thread_id(text: str, fallback: int | None) -> str | None:
    match = THREAD_RE.search(text)
    if match:
        return match.group(1)
    if fallback is not None:
        return str(fallback)
    return None


def extract_worktree_event(
    record: LogRecord,
    *,
    log_id: str,
    meta: FileMeta,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> WorktreeEvent | None:
    lowered = record.message.lower()
    component = (record.component or "").lower()
    if "worktree" not in lowered and "git" not in component:
        return None

    path_value = extract_path(record.message)
    action = policy.classify_worktree_action(record.message, record.level, path_value)
    if action is None:
        return None

    branch = extract_branch(record.message)
    failed = action == "error"
    dedup_key = generate_dedup_key(
        log_id,
        0,
        {"ts": record.ts, "action": action, "path": path_value, "branch": branch},
        settings.dedup_key_length,
    )
    sanitized_path = sanitize_log_text(path_value) if path_value else None
    return WorktreeEvent(
        id=dedup_key,
        ts=record.ts,
        action=action,
        worktree_path=sanitized_path,
        repo_root=sanitized_path,
        branch=branch,
        status="failed" if failed else "ok",
        error=sanitize_log_text(record.message) if failed else None,
        app_session_id=meta.app_session_id,
        source_log_id=log_id,
        dedup_key=dedup_key,
    )


def extract_automation_event(
    record: LogRecord,
    *,
    log_id: str,
    meta: FileMeta,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> AutomationEvent | None:
    lowered = record.message.lower()
    component = (record.component or "").lower()
    if "automation" not in lowered and "automation" not in component:
        return None

    action = policy.classify_automation_action(record.message, record.level)
    if action is None:
        return None

    thread_id = extract_thread_id(record.message, meta.thread_id)
    failed = action == "failed"
    dedup_key = generate_dedup_key(
        log_id,
        0,
        {"ts": record.ts, "action": action, "thread_id": thread_id},
        settings.dedup_key_length,
    )
    return AutomationEvent(
        id=dedup_key,
        ts=record.ts,
        action=action,
        thread_id=thread_id,
        status="failed" if failed else "ok",
        error=sanitize_log_text(record.message) if failed else None,
        app_session_id=meta.app_session_id,
        source_log_id=log_id,
        dedup_key=dedup_key,
    )


class _RecordAssembler:
    """Folds continuation lines into the record that precedes them."""

    def __init__(
        self,
        file_path: str,
        meta: FileMeta,
        result: DesktopLogParseResult,
        settings: IngestSettings,
    ) -> None:
        self.file_path = file_path
        self.meta = meta
        self.result = result
        self.settings = settings
        self.lines: list[str] = []
        self.line_number = 0

    def start(self, line_number: int, line: str) -> None:
        self.flush()
        self.lines = [line]
        self.line_number = line_number

    def append(self, line: str) -> None:
        if self.lines:
            self.lines.append(line)

    def flush(self) -> None:
        if not self.lines:
            return
        lines, line_number = self.lines, self.line_number
        self.lines = []
        self.line_number = 0

        record = parse_log_record(lines)
        if record is None:
            self.result.errors.append(
                LineError(
                    line=line_number,
                    message="Failed to parse log record",
                    raw=lines[0][:RAW_TEXT_MAX_CHARS],
                )
            )
            return
        if not policy.should_store_log(record.level, record.component, record.message):
            return
        self._emit(record, line_number)

    def _emit(self, record: LogRecord, line_number: int) -> None:
        message = sanitize_log_text(record.message)
        payload_text = sanitize_log_text(record.payload_text) if record.payload_text else None
        dedup_key = generate_dedup_key(
            self.file_path,
            line_number,
            {
                "ts": record.ts,
                "level": record.level,
                "component": record.component,
                "message": message,
                "payload": payload_text,
            },
            self.settings.dedup_key_length,
        )
        meta = self.meta
        self.result.events.append(
            DesktopLogEvent(
                id=dedup_key,
                ts=record.ts,
                level=record.level,
                component=record.component,
                message=message,
                payload_text=payload_text,
                app_session_id=meta.app_session_id,
                process_id=meta.process_id,
                thread_id=meta.thread_id,
                instance_id=meta.instance_id,
                segment_index=meta.segment_index,
                file_path=self.file_path,
                line_number=line_number,
                dedup_key=dedup_key,
            )
        )
        worktree = extract_worktree_event(
            record, log_id=dedup_key, meta=meta, settings=self.settings
        )
        if worktree is not None:
            self.result.worktree_events.append(worktree)
        automation = extract_automation_event(
            record, log_id=dedup_key, meta=meta, settings=self.settings
        )
        if automation is not None:
            self.result.automation_events.append(automation)


def parse_desktop_lines(
    numbered_lines: Iterable[tuple[int, str]],
    file_path: str,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
    result: DesktopLogParseResult | None = None,
    final: bool = True,
) -> DesktopLogParseResult:
    """Assemble and classify desktop log records.

    Without ``final`` the last record stays buffered; its continuation lines
    may not be written yet.
    """

    result = result if result is not None else DesktopLogParseResult()
    assembler = _RecordAssembler(file_path, parse_log_file_name(file_path), result, settings)
    for line_number, raw in numbered_lines:
        line = strip_ansi(raw)
        if RECORD_START_RE.match(line):
            assembler.start(line_number, line)
        else:
            assembler.append(line)
    if final:
        assembler.flush()
    elif assembler.lines:
        result.held_from_line = assembler.line_number
    return result


def parse_desktop_log_file(
    path: str | Path,
    from_offset: int = 0,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
    final: bool = True,
) -> DesktopLogParseResult:
    """Parse the complete desktop log records appended since ``from_offset``.

    Without ``final``, ``new_offset`` stops at the header of the last record
    so a later read sees it with all of its continuation lines. Raises
    ``OSError`` when the file cannot be read.
    """

    file_path = str(Path(path).resolve())
    read = read_lines_incremental(file_path, from_offset)
    result = DesktopLogParseResult(
        new_offset=read.new_offset,
        was_reset=read.was_reset,
        lines_read=len(read.lines),
    )
    parse_desktop_lines(
        read.numbered(), file_path, settings=settings, result=result, final=final
    )
    if result.held_from_line is not None:
        result.new_offset = read.offset_of(result.held_from_line)
    if result.errors:
        logger.warning(
            "desktop log %s: %d unparseable records", file_path, len(result.errors)
        )
    return result
