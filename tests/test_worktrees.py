from pathlib import Path

from codex_observ.ingest.worktrees import (
    build_archive_event,
    infer_archived_worktrees,
    list_worktree_paths,
)
from codex_observ.store import IngestStore


def _record_action(store: IngestStore, path: str, action: str, ts: int) -> None:
    store.insert_if_absent(
        "worktree_event",
        {
            "id": f"{action}-{ts}",
            "ts": ts,
            "action": action,
            "worktree_path": path,
            "repo_root": path,
            "branch": None,
            "status": "ok",
            "error": None,
            "app_session_id": None,
            "source_log_id": None,
            "dedup_key": f"{action}-{ts}",
        },
    )


def test_list_worktree_paths(codex_home: Path) -> None:
    (codex_home / "worktrees" / "ab12" / "repo").mkdir(parents=True)
    (codex_home / "worktrees" / "ab12" / ".hidden").mkdir()
    (codex_home / "worktrees" / "ab12" / "notes.txt").write_text("x")

    assert list_worktree_paths(codex_home) == {str(codex_home / "worktrees" / "ab12" / "repo")}


def test_list_worktree_paths_without_directory(tmp_path: Path) -> None:
    assert list_worktree_paths(tmp_path / "nowhere") == set()


def test_missing_worktree_is_archived_once(codex_home: Path, tmp_path: Path) -> None:
    store = IngestStore(tmp_path / "data.db")
    gone = str(codex_home / "worktrees" / "ff00" / "repo")
    _record_action(store, gone, "created", 1000)

    first = infer_archived_worktrees(store, codex_home)
    second = infer_archived_worktrees(store, codex_home)

    assert first.inserted == 1
    assert second.inserted == 0
    latest = store.latest_worktree_actions()
    assert [(entry["worktree_path"], entry["action"]) for entry in latest] == [
        (gone, "archived")
    ]


def test_present_and_terminal_worktrees_are_left_alone(codex_home: Path, tmp_path: Path) -> None:
    store = IngestStore(tmp_path / "data.db")
    present = codex_home / "worktrees" / "ab12" / "repo"
    present.mkdir(parents=True)
    _record_action(store, str(present), "created", 1000)
    _record_action(store, "/elsewhere/deleted", "deleted", 2000)

    result = infer_archived_worktrees(store, codex_home)

    assert result.inserted == 0
    assert store.count_rows("worktree_event") == 2


def test_archive_key_depends_on_last_sighting() -> None:
    first = build_archive_event("/wt/a", 100, ts=5000)
    later = build_archive_event("/wt/a", 100, ts=9000)
    resighted = build_archive_event("/wt/a", 200, ts=9000)
    assert first.dedup_key == later.dedup_key
    assert first.dedup_key != resighted.dedup_key
    assert first.action == "archived"
