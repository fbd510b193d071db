from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

from ..dedup import DEDUP_KEY_LENGTH

DUPLICATE_START_WINDOW_MS = 1000
CORRELATION_WINDOW_MS = 5 * 60 * 1000
# A file untouched this long has no record or call left to complete.
TAIL_SETTLE_MS = 5 * 60 * 1000
ARG_CONTINUATION_MAX_LINES = 20
SIGNATURE_MAX_CHARS = 200
RAW_TEXT_MAX_CHARS = 500

ToolCallStatus = Literal["ok", "failed", "unknown"]
EndKind = Literal["exit", "failure"]
ToolCallPhase = Literal["start", "exit", "failure"]


@dataclass(frozen=True, slots=True)
class IngestSettings:
    dedup_key_length: int = DEDUP_KEY_LENGTH
    duplicate_start_window_ms: int = DUPLICATE_START_WINDOW_MS
    correlation_window_ms: int = CORRELATION_WINDOW_MS
    arg_continuation_max_lines: int = ARG_CONTINUATION_MAX_LINES
    tail_settle_ms: int = TAIL_SETTLE_MS
    store_content: bool = False


DEFAULT_SETTINGS = IngestSettings()


@dataclass(frozen=True, slots=True)
class LineError:
    line: int
    message: str
    raw: str = ""


@dataclass(frozen=True, slots=True)
class ParsedLine:
    line_number: int
    json: Any
    raw: str


@dataclass(frozen=True, slots=True)
class StartMarker:
    ts: int
    tool_name: str
    command: str | None
    signature: str
    source_line: int


@dataclass(frozen=True, slots=True)
class EndMarker:
    ts: int
    tool_name: str | None
    command: str | None
    signature: str
    source_line: int
    event_kind: EndKind
    exit_code: int | None = None
    duration_ms: int | None = None
    stdout_bytes: int | None = None
    stderr_bytes: int | None = None
    error: str | None = None
    source: str = "tool_call"


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    tool_name: str
    command: str | None
    status: ToolCallStatus
    start_ts: int
    end_ts: int | None
    duration_ms: int | None
    exit_code: int | None
    error: str | None
    stdout_bytes: int | None
    stderr_bytes: int | None
    source_file: str
    source_line: int
    correlation_key: str
    dedup_key: str

    @property
    def id(self) -> str:
        return self.dedup_key


@dataclass(frozen=True, slots=True)
class DesktopLogEvent:
    id: str
    ts: int
    level: str | None
    component: str | None
    message: str
    payload_text: str | None
    app_session_id: str | None
    process_id: int | None
    thread_id: int | None
    instance_id: int | None
    segment_index: int | None
    file_path: str
    line_number: int
    dedup_key: str

    @property
    def source_line(self) -> int:
        return self.line_number


@dataclass(frozen=True, slots=True)
class WorktreeEvent:
    id: str
    ts: int
    action: str
    worktree_path: str | None
    repo_root: str | None
    branch: str | None
    status: str
    error: str | None
    app_session_id: str | None
    source_log_id: str | None
    dedup_key: str
    source_line: int = 0


@dataclass(frozen=True, slots=True)
class AutomationEvent:
    id: str
    ts: int
    action: str
    thread_id: str | None
    status: str
    error: str | None
    app_session_id: str | None
    source_log_id: str | None
    dedup_key: str
    source_line: int = 0


@dataclass(frozen=True, slots=True)
class SessionRecord:
    id: str
    ts: int
    cwd: str | None
    originator: str | None
    cli_version: str | None
    model_provider: str | None
    git_branch: str | None
    git_commit: str | None
    source_file: str
    source_line: int
    dedup_key: str


@dataclass(frozen=True, slots=True)
class MessageRecord:
    id: str
    session_id: str
    role: str
    ts: int
    content: str | None
    source_file: str
    source_line: int
    dedup_key: str


@dataclass(frozen=True, slots=True)
class ModelCallRecord:
    id: str
    session_id: str
    ts: int
    model: str | None
    input_tokens: int
    cached_input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    total_tokens: int
    duration_ms: int | None
    source_file: str
    source_line: int
    dedup_key: str


@dataclass(slots=True)
class ParseContext:
    file_path: str
    line_number: int
    fallback_ts: int | None = None
    session_id: str | None = None
    model: str | None = None
    model_provider: str | None = None
    settings: IngestSettings = DEFAULT_SETTINGS


@dataclass(frozen=True, slots=True)
class SessionContextUpdate:
    session_id: str
    model: str | None = None
    model_provider: str | None = None


@dataclass(slots=True)
class IngestError:
    file: str
    line: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "line": self.line, "message": self.message}


@dataclass(frozen=True, slots=True)
class IngestProgress:
    file: str
    file_index: int
    file_count: int
    lines_read: int
    new_offset: int


@dataclass(slots=True)
class IngestResult:
    files_processed: int = 0
    lines_ingested: int = 0
    duration_ms: int = 0
    rows_inserted: int = 0
    errors: list[IngestError] = field(default_factory=list)
    reset_files: list[str] = field(default_factory=list)

    def to_dict(self) -> RunSummary:
        return {
            "filesProcessed": self.files_processed,
            "linesIngested": self.lines_ingested,
            "durationMs": self.duration_ms,
            "rowsInserted": self.rows_inserted,
            "errors": [error.to_dict() for error in self.errors],
            "resetFiles": list(self.reset_files),
        }


class RunSummary(TypedDict):
    filesProcessed: int
    linesIngested: int
    durationMs: int
    rowsInserted: int
    errors: list[dict[str, Any]]
    resetFiles: list[str]
