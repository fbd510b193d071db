import pytest

from codex_observ.ingest.policy import (
    classify_automation_action,
    classify_worktree_action,
    should_store_log,
)


@pytest.mark.parametrize(
    ("level", "component", "message", "expected"),
    [
        ("info", "git", "fetch finished", True),
        ("info", "renderer", "launching app window", True),
        ("debug", "renderer", "frame rendered", False),
        ("warn", "renderer", "frame dropped", True),
        ("error", None, "unexpected", True),
        ("info", "git", "user: please fix this", False),
        ("error", "main", "System prompt loaded", False),
    ],
)
def test_should_store_log(
    level: str, component: str | None, message: str, expected: bool
) -> None:
    assert should_store_log(level, component, message) is expected


def test_worktree_watcher_counts_as_created_only_for_codex_worktrees() -> None:
    message = "Starting git repo watcher"
    assert classify_worktree_action(message, "info", "/u/.codex/worktrees/1/app") == "created"
    assert classify_worktree_action(message, "info", "/u/src/app") is None


def test_worktree_actions_from_keywords() -> None:
    assert classify_worktree_action("worktree created", "info", None) == "created"
    assert classify_worktree_action("removed worktree", "info", None) == "archived"
    assert classify_worktree_action("worktree add failed", "info", None) == "error"
    assert classify_worktree_action("worktree idle", "error", None) == "error"
    assert classify_worktree_action("worktree idle", "info", None) is None


def test_automation_actions() -> None:
    assert classify_automation_action("automation enqueued", "info") == "queued"
    assert classify_automation_action("automation finished", "info") == "completed"
    assert classify_automation_action("automation crashed", "error") == "failed"
    assert classify_automation_action("automation tick", "info") is None
