"""Classification tables for desktop log content.

Each table maps a pattern to a decision so retention and sub-event policy
can change without touching the parsers.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

SEVERE_LEVELS = frozenset({"warn", "warning", "error"})

SENSITIVE_PATTERNS = [
    re.compile(r"^\s*user:", re.IGNORECASE),
    re.compile(r"^\s*assistant:", re.IGNORECASE),
    re.compile(r"system prompt", re.IGNORECASE),
    re.compile(r"\bprompt\b", re.IGNORECASE),
]

SAFE_COMPONENTS = frozenset(
    {
        "sparkle",
        "git",
        "git-repo-watcher",
        "desktop-notifications",
        "electron-message-handler",
        "app-server",
        "main",
        "worker",
        "ipc",
        "router",
    }
)

SAFE_MESSAGE_PATTERNS = [
    re.compile(r"codex_app_", re.IGNORECASE),
    re.compile(r"launching app", re.IGNORECASE),
    re.compile(r"sparkle", re.IGNORECASE),
    re.compile(r"git\b", re.IGNORECASE),
    re.compile(r"worktree", re.IGNORECASE),
    re.compile(r"automation", re.IGNORECASE),
    re.compile(r"desktop notification", re.IGNORECASE),
    re.compile(r"app server", re.IGNORECASE),
    re.compile(r"skills?/", re.IGNORECASE),
]

CODEX_WORKTREE_MARKERS = ("/.codex/worktrees/", "\\.codex\\worktrees\\")

WORKTREE_WATCHER_RE = re.compile(r"starting git repo watcher\b")

WORKTREE_ACTION_RULES = [
    (re.compile(r"(create|created|creating)\b"), "created"),
    (re.compile(r"(delete|deleted|remove|removed)\b"), "archived"),
    (re.compile(r"(error|failed|fatal|exception)\b"), "error"),
]

AUTOMATION_ACTION_RULES = [
    (re.compile(r"(queued|enqueue|enqueued)\b"), "queued"),
    (re.compile(r"(completed|complete|finished|succeeded)\b"), "completed"),
    (re.compile(r"(failed|error|exception)\b"), "failed"),
]


def is_severe(level: str | None) -> bool:
    return bool(level) and level.lower() in SEVERE_LEVELS


def is_sensitive(message: str) -> bool:
    return any(pattern.search(message) for pattern in SENSITIVE_PATTERNS)


def should_store_log(level: str | None, component: str | None, message: str) -> bool:
    """Decide whether a desktop log record may be persisted.

    Sensitive content is rejected first; safe components, safe keywords and
    warn/error severity then admit a record, in that order.
    """

    if is_sensitive(message):
        return False
    if component and component.lower() in SAFE_COMPONENTS:
        return True
    if any(pattern.search(message) for pattern in SAFE_MESSAGE_PATTERNS):
        return True
    return is_severe(level)


def first_matching_action(
    text: str, rules: Sequence[tuple[re.Pattern[str], str]]
) -> str | None:
    for pattern, action in rules:
        if pattern.search(text):
            return action
    return None


def is_codex_worktree_path(path: str | None) -> bool:
    if not path:
        return False
    lowered = path.lower()
    return any(marker in lowered for marker in CODEX_WORKTREE_MARKERS)


def classify_worktree_action(
    message: str, level: str | None, path: str | None
) -> str | None:
    lowered = message.lower()
    if WORKTREE_WATCHER_RE.search(lowered) and is_codex_worktree_path(path):
        return "created"
    action = first_matching_action(lowered, WORKTREE_ACTION_RULES)
    if action is None and is_severe(level):
        return "error"
    return action


def classify_automation_action(message: str, level: str | None) -> str | None:
    action = first_matching_action(message.lower(), AUTOMATION_ACTION_RULES)
    if action is None and is_severe(level):
        return "failed"
    return action
