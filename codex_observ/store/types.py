from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypedDict


@dataclass(frozen=True, slots=True)
class Watermark:
    path: str
    byte_offset: int
    mtime_ms: int | None
    updated_at: int
    session_id: str | None = None
    model: str | None = None
    model_provider: str | None = None


@dataclass(slots=True)
class InsertFailure:
    line: int
    message: str


@dataclass(slots=True)
class BatchInsertResult:
    attempted: int = 0
    inserted: int = 0
    failures: list[InsertFailure] = field(default_factory=list)


class WorktreeAction(TypedDict):
    worktree_path: str
    action: str
    ts: int
