"""Reconcile logged worktree activity against the worktrees left on disk."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from ..dedup import generate_dedup_key
from ..fs_paths import normalize_home_path
from ..utils import now_ms
from .types import DEFAULT_SETTINGS, IngestSettings, WorktreeEvent

if TYPE_CHECKING:
    from ..store import BatchInsertResult, IngestStore

logger = logging.getLogger(__name__)

ARCHIVE_SOURCE = "worktree_archive"
TERMINAL_ACTIONS = frozenset({"archived", "deleted"})


def list_worktree_paths(codex_home: str | Path) -> set[str]:
    """``<codex_home>/worktrees/<id>/<name>`` directories, home shown as ``~``."""

    root = Path(codex_home) / "worktrees"
    if not root.is_dir():
        return set()
    found: set[str] = set()
    for id_dir in root.iterdir():
        if not id_dir.is_dir() or id_dir.name.startswith("."):
            continue
        try:
            children = list(id_dir.iterdir())
        except OSError:
            continue
        for child in children:
            if child.is_dir() and not child.name.startswith("."):
                found.add(normalize_home_path(str(child)))
    return found


def build_archive_event(
    worktree_path: str,
    last_seen_ts: int,
    *,
    ts: int,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> WorktreeEvent:
    dedup_key = generate_dedup_key(
        ARCHIVE_SOURCE,
        0,
        {"path": worktree_path, "action": "archived", "last_seen_ts": last_seen_ts},
        settings.dedup_key_length,
    )
    return WorktreeEvent(
        id=dedup_key,
        ts=ts,
        action="archived",
        worktree_path=worktree_path,
        repo_root=worktree_path,
        branch=None,
        status="ok",
        error=None,
        app_session_id=None,
        source_log_id=None,
        dedup_key=dedup_key,
    )


def infer_archived_worktrees(
    store: IngestStore,
    codex_home: str | Path,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> BatchInsertResult:
    """Record an ``archived`` event for each known worktree gone from disk.

    Only worktrees whose latest logged action is not already terminal are
    considered. The dedup key depends on the last sighting, so repeated runs
    add nothing until the worktree is seen again.
    """

    on_disk = list_worktree_paths(codex_home)
    now = now_ms()
    events = [
        build_archive_event(entry["worktree_path"], entry["ts"], ts=now, settings=settings)
        for entry in store.latest_worktree_actions()
        if entry["worktree_path"] not in on_disk
        and entry["action"].lower() not in TERMINAL_ACTIONS
    ]
    result = store.insert_batched("worktree_event", events)
    if result.inserted:
        logger.info("marked %d worktrees archived", result.inserted)
    return result
