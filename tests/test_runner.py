import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from codex_observ.config import CodexObservConfig
from codex_observ.ingest.runner import run_ingest
from codex_observ.ingest.types import IngestProgress, IngestResult
from codex_observ.store import IngestStore

SESSION_LINES: list[dict[str, Any]] = [
    {
        "timestamp": "2025-01-02T03:04:05.000Z",
        "type": "session_meta",
        "payload": {"id": "sess-1", "cwd": "/repo", "model_provider": "openai"},
    },
    {
        "timestamp": "2025-01-02T03:04:05.500Z",
        "type": "turn_context",
        "payload": {"model": "gpt-5-codex"},
    },
    {
        "timestamp": "2025-01-02T03:04:06.000Z",
        "type": "response_item",
        "payload": {"type": "message", "role": "user", "content": "hello"},
    },
    {
        "timestamp": "2025-01-02T03:04:07.000Z",
        "type": "response_item",
        "payload": {"type": "message", "role": "assistant", "content": "hi"},
    },
    {
        "timestamp": "2025-01-02T03:04:08.000Z",
        "type": "event_msg",
        "payload": {"type": "token_count", "info": {"last_token_usage": {"input_tokens": 9}}},
    },
]

CLI_LINES = [
    '2025-01-02T03:04:06.000Z INFO ToolCall: exec_command {"cmd": "ls"}',
    '2025-01-02T03:04:06.300Z INFO ToolCall: exec_command {"cmd": "ls", "exit_code": 0}',
]

DESKTOP_NAME = "codex-desktop-0a1b2c3d-123-t4-i1-000000-0.log"


def _write_jsonl(path: Path, values: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(value) + "\n" for value in values))


def _append(path: Path, text: str) -> None:
    with path.open("a") as handle:
        handle.write(text)


@pytest.fixture
def desktop_dir(tmp_path: Path) -> Path:
    path = tmp_path / "desktop-logs"
    path.mkdir()
    return path


@pytest.fixture
def session_file(codex_home: Path) -> Path:
    path = codex_home / "sessions" / "2025" / "01" / "02" / "rollout-1.jsonl"
    _write_jsonl(path, SESSION_LINES)
    return path


@pytest.fixture
def populated(codex_home: Path, desktop_dir: Path, session_file: Path) -> Path:
    (codex_home / "log" / "codex-tui.log").write_text("\n".join(CLI_LINES) + "\n")
    worktree = codex_home / "worktrees" / "ab12" / "repo"
    worktree.mkdir(parents=True)
    (desktop_dir / DESKTOP_NAME).write_text(
        f'2025-01-02T03:04:09.000Z info [git] Starting git repo watcher for "{worktree}"\n'
    )
    return codex_home


@pytest.fixture
def config(codex_home: Path, desktop_dir: Path) -> CodexObservConfig:
    return CodexObservConfig(
        codex_home=str(codex_home), desktop_log_dirs=[str(desktop_dir)], tail_settle_ms=0
    )


@pytest.fixture
def store(tmp_path: Path) -> IngestStore:
    return IngestStore(tmp_path / "data.db")


def test_first_run_ingests_every_source(
    populated: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    progress: list[IngestProgress] = []

    result = run_ingest(store, config=config, on_progress=progress.append)

    assert result.errors == []
    assert result.files_processed == 3
    assert result.lines_ingested == 5 + 1 + 1
    assert result.rows_inserted == 7
    assert store.count_rows("session") == 1
    assert store.count_rows("message") == 2
    assert store.count_rows("model_call") == 1
    assert store.count_rows("tool_call") == 1
    assert store.count_rows("desktop_log_event") == 1
    assert store.count_rows("worktree_event") == 1
    assert [item.file_count for item in progress] == [1, 1, 1]
    assert len(store.list_watermarks()) == 3


def test_second_incremental_run_is_a_no_op(
    populated: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    run_ingest(store, config=config)

    again = run_ingest(store, config=config)

    assert again.rows_inserted == 0
    assert again.lines_ingested == 0
    assert again.errors == []
    assert store.count_rows("message") == 2


def test_full_run_rereads_without_duplicating(
    populated: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    run_ingest(store, config=config)

    full = run_ingest(store, mode="full", config=config)

    assert full.lines_ingested == 7
    assert full.rows_inserted == 0
    assert store.count_rows("tool_call") == 1


def test_appended_lines_keep_session_context(
    session_file: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    run_ingest(store, config=config)
    _append(
        session_file,
        json.dumps(
            {
                "timestamp": "2025-01-02T03:05:00.000Z",
                "type": "response_item",
                "payload": {"type": "message", "role": "user", "content": "more"},
            }
        )
        + "\n",
    )

    result = run_ingest(store, config=config)

    assert result.rows_inserted == 1
    rows = store.conn.execute("SELECT session_id, source_line FROM message").fetchall()
    assert sorted((row["session_id"], row["source_line"]) for row in rows) == [
        ("sess-1", 3),
        ("sess-1", 4),
        ("sess-1", 6),
    ]
    mark = store.get_watermark(str(session_file.resolve()))
    assert mark is not None
    assert mark.byte_offset == session_file.stat().st_size
    assert mark.model == "gpt-5-codex"


def test_partial_trailing_line_waits_for_newline(
    session_file: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    run_ingest(store, config=config)
    line = json.dumps(
        {
            "timestamp": "2025-01-02T03:05:00.000Z",
            "type": "response_item",
            "payload": {"type": "message", "role": "user", "content": "later"},
        }
    )
    _append(session_file, line[:10])

    assert run_ingest(store, config=config).rows_inserted == 0

    _append(session_file, line[10:] + "\n")
    assert run_ingest(store, config=config).rows_inserted == 1


def test_truncated_file_is_reingested(
    session_file: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    run_ingest(store, config=config)
    _write_jsonl(session_file, SESSION_LINES[:1])

    result = run_ingest(store, config=config)

    assert result.reset_files == [str(session_file.resolve())]
    assert result.lines_ingested == 1


def test_bad_lines_are_reported_and_skipped(
    session_file: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    _append(session_file, "{not json\n")

    result = run_ingest(store, config=config)

    assert [(error.line, error.file) for error in result.errors] == [
        (6, str(session_file.resolve()))
    ]
    assert store.count_rows("message") == 2
    summary = result.to_dict()
    assert summary["errors"][0]["line"] == 6
    assert summary["filesProcessed"] == 1


def test_missing_sources_are_not_errors(
    codex_home: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    result = run_ingest(store, config=config)
    assert result.errors == []
    assert result.files_processed == 0


def test_watermarks_of_deleted_files_are_pruned(
    session_file: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    store.set_watermark("/unrelated/file.log", 10, None)
    run_ingest(store, config=config)
    session_file.unlink()

    run_ingest(store, config=config)

    paths = {mark.path for mark in store.list_watermarks()}
    assert str(session_file.resolve()) not in paths
    assert "/unrelated/file.log" in paths


def test_unknown_mode_is_rejected(store: IngestStore, config: CodexObservConfig) -> None:
    with pytest.raises(ValueError, match="unknown ingest mode"):
        run_ingest(store, mode="sideways", config=config)  # type: ignore[arg-type]


def test_overlapping_run_returns_previous_result(
    session_file: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    first = run_ingest(store, config=config)
    overlapping: list[IngestResult] = []

    def start_second_run(_: IngestProgress) -> None:
        worker = threading.Thread(
            target=lambda: overlapping.append(run_ingest(store, config=config))
        )
        worker.start()
        worker.join()

    run_ingest(store, config=config, on_progress=start_second_run)

    assert overlapping == [first]
    assert overlapping[0] is first
    assert store.count_rows("message") == 2


def test_out_of_range_numbers_do_not_abort_the_run(
    codex_home: Path, store: IngestStore, config: CodexObservConfig
) -> None:
    _write_jsonl(
        codex_home / "sessions" / "rollout-2.jsonl",
        [
            SESSION_LINES[0],
            {
                "timestamp": "2025-01-02T03:04:08.000Z",
                "type": "event_msg",
                "payload": {"type": "token_count", "input_tokens": 1e20},
            },
        ],
    )
    (codex_home / "log" / "codex-tui.log").write_text(
        "2025-01-02T03:04:06.000Z INFO ToolCall: lint status=failed "
        "exit_code=99999999999999999999\n"
    )

    result = run_ingest(store, config=config)
    again = run_ingest(store, config=config)

    assert result.errors == []
    assert again.errors == []
    assert store.count_rows("model_call") == 1
    row = store.conn.execute("SELECT status, exit_code FROM tool_call").fetchone()
    assert (row["status"], row["exit_code"]) == ("failed", None)


DESKTOP_SPLIT_TEXT = (
    "2025-01-02T03:04:05.000Z error [main] renderer crashed\n"
    "    at frame one\n"
    "    at frame two\n"
    "2025-01-02T03:04:06.000Z info [sparkle] checking for updates\n"
    '2025-01-02T03:04:07.000Z warn [ipc] slow reply {"ms": 900}\n'
)
CLI_SPLIT_TEXT = (
    '2025-01-02T03:04:05.000Z INFO FunctionCall: exec_command({"cmd": "ls"})\n'
    '2025-01-02T03:04:06.000Z INFO ToolCall: exec_command {"cmd": "ls", "exit_code": 0, '
    '"duration_ms": 120}\n'
    '2025-01-02T03:04:07.000Z INFO ToolCall: lint {"cmd": "ruff", "exit_code": 1}\n'
    '2025-01-02T03:04:08.000Z INFO FunctionCall: deploy({"target": "prod"})\n'
)
DESKTOP_ROWS_SQL = "SELECT line_number, level, message, payload_text FROM desktop_log_event"
TOOL_CALL_ROWS_SQL = (
    "SELECT source_line, tool_name, status, start_ts, end_ts, duration_ms, exit_code "
    "FROM tool_call"
)


def _split_config(root: Path, **overrides: Any) -> CodexObservConfig:
    home = root / ".codex"
    (home / "sessions").mkdir(parents=True, exist_ok=True)
    (home / "log").mkdir(exist_ok=True)
    desktop = root / "desktop-logs"
    desktop.mkdir(exist_ok=True)
    return CodexObservConfig(
        codex_home=str(home), desktop_log_dirs=[str(desktop)], **overrides
    )


def _rows(store: IngestStore, sql: str) -> list[tuple[Any, ...]]:
    return sorted(tuple(row) for row in store.conn.execute(sql).fetchall())


def _ingest_at_once(root: Path, relative: str, data: bytes, sql: str) -> list[tuple[Any, ...]]:
    config = _split_config(root, tail_settle_ms=0)
    (root / relative).write_bytes(data)
    store = IngestStore(root / "data.db")
    run_ingest(store, config=config)
    return _rows(store, sql)


def _ingest_in_two_parts(
    root: Path, relative: str, data: bytes, split: int, sql: str
) -> list[tuple[Any, ...]]:
    config = _split_config(root)
    target = root / relative
    target.write_bytes(data[:split])
    store = IngestStore(root / "data.db")
    first = run_ingest(store, config=config)
    with target.open("ab") as handle:
        handle.write(data[split:])
    second = run_ingest(store, config=config)
    settled = run_ingest(store, config=replace(config, tail_settle_ms=0))
    assert first.errors == second.errors == settled.errors == []
    return _rows(store, sql)


@pytest.mark.parametrize(
    ("relative", "text", "sql", "expected_rows"),
    [
        (f"desktop-logs/{DESKTOP_NAME}", DESKTOP_SPLIT_TEXT, DESKTOP_ROWS_SQL, 3),
        (".codex/log/codex-tui.log", CLI_SPLIT_TEXT, TOOL_CALL_ROWS_SQL, 3),
    ],
    ids=["desktop-log", "cli-log"],
)
def test_any_split_point_matches_a_single_run(
    tmp_path: Path, relative: str, text: str, sql: str, expected_rows: int
) -> None:
    data = text.encode()
    expected = _ingest_at_once(tmp_path / "whole", relative, data, sql)
    assert len(expected) == expected_rows

    for split in range(len(data) + 1):
        rows = _ingest_in_two_parts(tmp_path / f"split-{split}", relative, data, split, sql)
        assert rows == expected, f"split at byte {split}"


def test_open_records_wait_until_the_file_settles(tmp_path: Path) -> None:
    config = _split_config(tmp_path)
    (tmp_path / "desktop-logs" / DESKTOP_NAME).write_text(DESKTOP_SPLIT_TEXT)
    (tmp_path / ".codex" / "log" / "codex-tui.log").write_text(CLI_SPLIT_TEXT)
    store = IngestStore(tmp_path / "data.db")

    run_ingest(store, config=config)

    assert [row[0] for row in _rows(store, DESKTOP_ROWS_SQL)] == [1, 4]
    assert [row[:3] for row in _rows(store, TOOL_CALL_ROWS_SQL)] == [
        (1, "exec_command", "ok"),
        (3, "lint", "failed"),
    ]

    run_ingest(store, config=replace(config, tail_settle_ms=0))

    assert [row[0] for row in _rows(store, DESKTOP_ROWS_SQL)] == [1, 4, 5]
    assert _rows(store, TOOL_CALL_ROWS_SQL)[-1][:3] == (4, "deploy", "unknown")
