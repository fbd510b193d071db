"""Extract session, message and model-call records from session JSONL lines.

Every extractor returns ``None`` for lines it does not own, so a line can be
offered to each in turn.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field as dataclass_field
from typing import Any

from ..dedup import generate_dedup_key
from ..utils import now_ms
from .fields import (
    as_int,
    as_mapping,
    as_str,
    as_timestamp,
    field,
    fields,
    first_in,
    first_of,
)
from .types import (
    MessageRecord,
    ModelCallRecord,
    ParseContext,
    ParsedLine,
    SessionContextUpdate,
    SessionRecord,
)

MESSAGE_ROLES = frozenset({"user", "assistant", "system"})

LINE_TYPE = fields("type", "kind", "event_type", "eventType", coerce=as_str)
PAYLOAD_TYPE = fields("type", "event_type", "kind", coerce=as_str)
TIMESTAMP = fields("ts", "timestamp", "time", "created_at", "createdAt", coerce=as_timestamp)
SESSION_ID = [
    field("session_id", coerce=as_str),
    field("sessionId", coerce=as_str),
    field("session", "id", coerce=as_str),
    field("session", "session_id", coerce=as_str),
    field("id", coerce=as_str),
]
# Explicit session references only. A bare "id" on a message or event names
# that item, not its session.
SESSION_REF = SESSION_ID[:-1]

SESSION_META = fields("session_meta", "meta", "session", "payload", coerce=as_mapping)
SESSION_CWD = fields("cwd", "working_dir", "workingDirectory", "project", "repo", coerce=as_str)
SESSION_ORIGINATOR = fields("originator", "user", "actor", "owner", coerce=as_str)
SESSION_CLI_VERSION = fields(
    "cli_version", "cliVersion", "version", "client_version", "clientVersion", coerce=as_str
)
SESSION_PROVIDER = fields("model_provider", "modelProvider", "provider", coerce=as_str)
SESSION_GIT_BRANCH = [
    field("git_branch", coerce=as_str),
    field("gitBranch", coerce=as_str),
    field("git", "branch", coerce=as_str),
]
SESSION_GIT_COMMIT = [
    field("git_commit", coerce=as_str),
    field("gitCommit", coerce=as_str),
    field("git", "commit", coerce=as_str),
    field("git", "commit_hash", coerce=as_str),
    field("git", "sha", coerce=as_str),
]

TURN_CONTEXT = fields("context", "turn_context", "payload", coerce=as_mapping)
LINE_MODEL = fields("model", coerce=as_str)
LINE_PROVIDER = fields("model_provider", coerce=as_str)
TURN_MODEL = [
    field("model", coerce=as_str),
    field("model_name", coerce=as_str),
    field("modelId", coerce=as_str),
    field("model", "name", coerce=as_str),
]
TURN_PROVIDER = [
    field("model_provider", coerce=as_str),
    field("modelProvider", coerce=as_str),
    field("provider", coerce=as_str),
    field("model", "provider", coerce=as_str),
]

MESSAGE_ITEM = fields("item", "payload", coerce=as_mapping)
MESSAGE_ROLE = fields("role", coerce=as_str)
MESSAGE_NATIVE_ID = fields("message_id", "id", coerce=as_str)
LINE_MESSAGE_ID = fields("message_id", coerce=as_str)

EVENT_PAYLOAD = [
    field("payload", coerce=as_mapping),
    field("event", "payload", coerce=as_mapping),
    field("message", "payload", coerce=as_mapping),
]
EVENT_MODEL = fields("model", "model_name", coerce=as_str)
EVENT_DURATION = fields("duration_ms", coerce=as_int)
EVENT_ID = fields("id", coerce=as_str)

INPUT_TOKENS = ("input_tokens", "input", "prompt_tokens")
CACHED_INPUT_TOKENS = (
    "cached_input_tokens",
    "cached_input",
    "cache_read_tokens",
    "cached_prompt_tokens",
)
OUTPUT_TOKENS = ("output_tokens", "output", "completion_tokens")
REASONING_TOKENS = ("reasoning_tokens", "reasoning_output_tokens", "reasoning")
TOTAL_TOKENS = ("total_tokens", "total", "tokens")


@dataclass(frozen=True, slots=True)
class ParsedSessionMeta:
    record: SessionRecord
    session_id: str


@dataclass(slots=True)
class SessionLineBatch:
    sessions: list[SessionRecord] = dataclass_field(default_factory=list)
    messages: list[MessageRecord] = dataclass_field(default_factory=list)
    model_calls: list[ModelCallRecord] = dataclass_field(default_factory=list)

    def __len__(self) -> int:
        return len(self.sessions) + len(self.messages) + len(self.model_calls)


def line_type(value: Mapping[str, Any]) -> str | None:
    raw = first_of(value, LINE_TYPE)
    return raw.lower() if raw else None


def _resolve_ts(sources: list[Any], context: ParseContext) -> int:
    ts = first_in(sources, TIMESTAMP)
    if ts is not None:
        return ts
    if context.fallback_ts is not None:
        return context.fallback_ts
    return now_ms()


def _native_id(candidate: str | None, session_id: str, dedup_key: str) -> str:
    if candidate and candidate != session_id:
        return candidate
    return dedup_key


def parse_session_meta(value: Any, context: ParseContext) -> ParsedSessionMeta | None:
    if not isinstance(value, dict):
        return None
    kind = line_type(value)
    if not kind or "session_meta" not in kind:
        return None

    meta = first_of(value, SESSION_META) or value
    session_id = first_in([meta, value], SESSION_ID)
    ts = _resolve_ts([meta, value], context)
    payload = {
        "sessionId": session_id,
        "ts": ts,
        "cwd": first_of(meta, SESSION_CWD),
        "originator": first_of(meta, SESSION_ORIGINATOR),
        "cli_version": first_of(meta, SESSION_CLI_VERSION),
        "model_provider": first_of(meta, SESSION_PROVIDER),
        "git_branch": first_of(meta, SESSION_GIT_BRANCH),
        "git_commit": first_of(meta, SESSION_GIT_COMMIT),
    }
    dedup_key = generate_dedup_key(
        context.file_path, context.line_number, payload, context.settings.dedup_key_length
    )
    record_id = session_id or dedup_key
    record = SessionRecord(
        id=record_id,
        ts=ts,
        cwd=payload["cwd"],
        originator=payload["originator"],
        cli_version=payload["cli_version"],
        model_provider=payload["model_provider"],
        git_branch=payload["git_branch"],
        git_commit=payload["git_commit"],
        source_file=context.file_path,
        source_line=context.line_number,
        dedup_key=dedup_key,
    )
    return ParsedSessionMeta(record=record, session_id=record_id)


def parse_turn_context(value: Any, context: ParseContext) -> SessionContextUpdate | None:
    if not isinstance(value, dict):
        return None
    kind = line_type(value)
    if not kind or "turn_context" not in kind:
        return None

    turn = first_of(value, TURN_CONTEXT) or value
    session_id = first_in([turn, value], SESSION_REF) or context.session_id
    if not session_id:
        return None
    return SessionContextUpdate(
        session_id=session_id,
        model=first_of(turn, TURN_MODEL) or first_of(value, LINE_MODEL),
        model_provider=first_of(turn, TURN_PROVIDER) or first_of(value, LINE_PROVIDER),
    )


def _text_part(entry: Any) -> str | None:
    if isinstance(entry, str):
        return entry
    if not isinstance(entry, dict):
        return None
    text = entry.get("text")
    if isinstance(text, str):
        return text
    if isinstance(text, dict) and isinstance(text.get("value"), str):
        return text["value"]
    content = entry.get("content")
    if isinstance(content, str):
        return content
    return None


def extract_content(value: Any) -> str | None:
    """Flatten a message body (plain string, list of parts or text object)."""

    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [part for part in (_text_part(entry) for entry in value) if part is not None]
        if parts:
            return " ".join(parts)
        return None
    if isinstance(value, dict):
        text = value.get("text")
        if isinstance(text, str):
            return text
        if isinstance(text, dict) and isinstance(text.get("value"), str):
            return text["value"]
    return None


def normalize_role(role: str | None) -> str | None:
    if not role:
        return None
    lowered = role.lower()
    return lowered if lowered in MESSAGE_ROLES else None


def parse_response_item(value: Any, context: ParseContext) -> MessageRecord | None:
    if not isinstance(value, dict):
        return None
    kind = line_type(value)
    if not kind or "response_item" not in kind:
        return None

    item = first_of(value, MESSAGE_ITEM) or value
    role = normalize_role(first_in([item, value], MESSAGE_ROLE))
    if role is None:
        return None
    session_id = first_in([item, value], SESSION_REF) or context.session_id
    if not session_id:
        return None

    ts = _resolve_ts([item, value], context)
    content = None
    if context.settings.store_content:
        body = item.get("content")
        content = extract_content(body if body is not None else value.get("content"))

    dedup_key = generate_dedup_key(
        context.file_path,
        context.line_number,
        {"sessionId": session_id, "role": role, "ts": ts},
        context.settings.dedup_key_length,
    )
    native_id = first_of(item, MESSAGE_NATIVE_ID) or first_of(value, LINE_MESSAGE_ID)
    return MessageRecord(
        id=_native_id(native_id, session_id, dedup_key),
        session_id=session_id,
        role=role,
        ts=ts,
        content=content,
        source_file=context.file_path,
        source_line=context.line_number,
        dedup_key=dedup_key,
    )


def read_token_value(sources: list[Mapping[str, Any] | None], keys: tuple[str, ...]) -> int:
    """Return the first present token count; a present but invalid value is 0."""

    for source in sources:
        if not source:
            continue
        for key in keys:
            if key in source:
                return as_int(source[key]) or 0
    return 0


def parse_event_msg(value: Any, context: ParseContext) -> ModelCallRecord | None:
    if not isinstance(value, dict):
        return None
    kind = line_type(value)
    if not kind or "event_msg" not in kind:
        return None

    payload = first_of(value, EVENT_PAYLOAD)
    payload_type = first_of(payload, PAYLOAD_TYPE) if payload else None
    if not payload_type or "token_count" not in payload_type.lower():
        return None

    session_id = first_in([payload, value], SESSION_REF) or context.session_id
    if not session_id:
        return None
    ts = _resolve_ts([payload, value], context)

    info = as_mapping(payload.get("info")) or {}
    sources = [
        as_mapping(info.get("last_token_usage")),
        as_mapping(info.get("total_token_usage")),
        as_mapping(payload.get("usage")),
        payload,
        value,
    ]
    input_tokens = read_token_value(sources, INPUT_TOKENS)
    cached_input_tokens = read_token_value(sources, CACHED_INPUT_TOKENS)
    output_tokens = read_token_value(sources, OUTPUT_TOKENS)
    reasoning_tokens = read_token_value(sources, REASONING_TOKENS)
    total_tokens = read_token_value(sources, TOTAL_TOKENS)
    computed_total = input_tokens + output_tokens + reasoning_tokens
    if total_tokens == 0 and computed_total > 0:
        total_tokens = computed_total

    duration_ms = first_in([payload, value], EVENT_DURATION)
    model = first_of(payload, LINE_MODEL) or first_of(value, EVENT_MODEL)
    if model is None:
        model = context.model

    dedup_key = generate_dedup_key(
        context.file_path,
        context.line_number,
        {
            "sessionId": session_id,
            "ts": ts,
            "model": model,
            "input_tokens": input_tokens,
            "cached_input_tokens": cached_input_tokens,
            "output_tokens": output_tokens,
            "reasoning_tokens": reasoning_tokens,
            "total_tokens": total_tokens,
        },
        context.settings.dedup_key_length,
    )
    return ModelCallRecord(
        id=_native_id(first_in([payload, value], EVENT_ID), session_id, dedup_key),
        session_id=session_id,
        ts=ts,
        model=model,
        input_tokens=input_tokens,
        cached_input_tokens=cached_input_tokens,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        total_tokens=total_tokens,
        duration_ms=duration_ms if duration_ms and duration_ms > 0 else None,
        source_file=context.file_path,
        source_line=context.line_number,
        dedup_key=dedup_key,
    )


@dataclass(slots=True)
class SessionTracker:
    """Carries the active session, model and provider across one file's lines."""

    session_id: str | None = None
    contexts: dict[str, SessionContextUpdate] = dataclass_field(default_factory=dict)

    @classmethod
    def resume(
        cls,
        session_id: str | None,
        model: str | None = None,
        model_provider: str | None = None,
    ) -> SessionTracker:
        tracker = cls()
        if session_id:
            tracker.update(
                SessionContextUpdate(
                    session_id=session_id, model=model, model_provider=model_provider
                )
            )
        return tracker

    def update(self, update: SessionContextUpdate) -> None:
        existing = self.contexts.get(update.session_id)
        self.contexts[update.session_id] = SessionContextUpdate(
            session_id=update.session_id,
            model=update.model or (existing.model if existing else None),
            model_provider=update.model_provider
            or (existing.model_provider if existing else None),
        )
        self.session_id = update.session_id

    def current(self) -> SessionContextUpdate | None:
        if self.session_id is None:
            return None
        return self.contexts.get(self.session_id)

    def context_for(self, base: ParseContext) -> ParseContext:
        current = self.current()
        base.session_id = self.session_id
        base.model = current.model if current else None
        base.model_provider = current.model_provider if current else None
        return base


def extract_session_lines(
    lines: Iterable[ParsedLine],
    *,
    base_context: ParseContext,
    tracker: SessionTracker | None = None,
) -> SessionLineBatch:
    """Route parsed lines through the session extractors in file order.

    ``tracker`` carries the session context in from a previous run so a
    resumed file keeps attributing messages to the right session.
    """

    tracker = tracker if tracker is not None else SessionTracker()
    batch = SessionLineBatch()
    for line in lines:
        context = tracker.context_for(
            ParseContext(
                file_path=base_context.file_path,
                line_number=line.line_number,
                fallback_ts=base_context.fallback_ts,
                settings=base_context.settings,
            )
        )

        parsed_meta = parse_session_meta(line.json, context)
        if parsed_meta is not None:
            batch.sessions.append(parsed_meta.record)
            tracker.update(
                SessionContextUpdate(
                    session_id=parsed_meta.session_id,
                    model_provider=parsed_meta.record.model_provider,
                )
            )
            continue

        update = parse_turn_context(line.json, context)
        if update is not None:
            tracker.update(update)
            continue

        message = parse_response_item(line.json, context)
        if message is not None:
            batch.messages.append(message)
            continue

        model_call = parse_event_msg(line.json, context)
        if model_call is not None:
            batch.model_calls.append(model_call)
    return batch
