from pathlib import Path

from codex_observ.ingest.cli_log import parse_cli_log_file, parse_cli_log_lines

LOG_LINES = [
    "2025-01-02T03:04:05.000Z INFO codex starting",
    '2025-01-02T03:04:06.000Z INFO ToolCall: exec_command {"cmd": "git status"}',
    '2025-01-02T03:04:06.400Z INFO ToolCall: exec_command {"cmd": "git status"}',
    '2025-01-02T03:04:07.000Z INFO ToolCall: exec_command {"cmd": "git status", '
    '"exit_code": 0, "stdout_bytes": 120}',
    '2025-01-02T03:04:08.000Z INFO FunctionCall: shell({"command": "npm test"})',
    "2025-01-02T03:04:20.000Z WARN BackgroundEvent: Execution failed: code=1 tool=shell",
    '2025-01-02T03:04:30.000Z INFO ToolCall: read_file {"path": "README.md"}',
]


def _write(tmp_path: Path, lines: list[str]) -> Path:
    path = tmp_path / "codex-tui.log"
    path.write_text("\n".join(lines) + "\n")
    return path


def test_parse_cli_log_file_correlates_calls(tmp_path: Path) -> None:
    path = _write(tmp_path, LOG_LINES)

    result = parse_cli_log_file(path)

    by_line = {record.source_line: record for record in result.tool_calls}
    assert sorted(by_line) == [2, 5, 7]

    git = by_line[2]
    assert git.status == "ok"
    assert git.duration_ms == 1000
    assert git.stdout_bytes == 120
    assert git.command == "git status"

    shell = by_line[5]
    assert shell.status == "failed"
    assert shell.exit_code == 1
    assert shell.tool_name == "shell"
    assert shell.end_ts is not None

    read = by_line[7]
    assert read.status == "unknown"
    assert read.tool_name == "read_file"

    assert result.lines_read == len(LOG_LINES)
    assert result.new_offset == path.stat().st_size
    assert all(record.source_file == str(path.resolve()) for record in result.tool_calls)


def test_resumed_parse_reports_new_calls_with_absolute_lines(tmp_path: Path) -> None:
    path = _write(tmp_path, LOG_LINES[:4])
    first = parse_cli_log_file(path)
    with path.open("a") as handle:
        handle.write(LOG_LINES[6] + "\n")

    second = parse_cli_log_file(path, first.new_offset)

    assert [record.source_line for record in first.tool_calls] == [2]
    assert [record.source_line for record in second.tool_calls] == [5]


def test_reparsing_yields_identical_keys(tmp_path: Path) -> None:
    path = _write(tmp_path, LOG_LINES)
    first = parse_cli_log_file(path)
    again = parse_cli_log_file(path)
    assert sorted(r.dedup_key for r in first.tool_calls) == sorted(
        r.dedup_key for r in again.tool_calls
    )


def test_parse_cli_log_lines_without_markers() -> None:
    assert parse_cli_log_lines(["2025-01-02T03:04:05.000Z INFO idle"], "x.log") == []


def test_unsettled_parse_holds_calls_that_may_still_complete(tmp_path: Path) -> None:
    path = _write(tmp_path, LOG_LINES)

    result = parse_cli_log_file(path, final=False)

    assert [record.source_line for record in result.tool_calls] == [2, 5]
    assert result.held_from_line == 7
    assert result.new_offset == path.stat().st_size - len((LOG_LINES[6] + "\n").encode())


def test_start_and_end_split_across_reads_form_one_call(tmp_path: Path) -> None:
    path = _write(tmp_path, ['2025-01-02T03:04:05.000Z INFO FunctionCall: exec_command(cmd="ls")'])
    first = parse_cli_log_file(path, final=False)
    with path.open("a") as handle:
        handle.write(
            "2025-01-02T03:04:06.000Z INFO ToolCall: exec_command cmd=ls status=ok "
            "exit_code=0 duration_ms=120\n"
        )

    second = parse_cli_log_file(path, first.new_offset, final=False)

    assert first.tool_calls == []
    assert first.new_offset == 0
    assert [(r.status, r.duration_ms, r.source_line) for r in second.tool_calls] == [
        ("ok", 120, 1)
    ]
    assert second.held_from_line is None


def test_old_pending_starts_are_not_held(tmp_path: Path) -> None:
    lines = [
        '2025-01-02T03:04:05.000Z INFO FunctionCall: deploy({"target": "prod"})',
        "2025-01-02T03:20:00.000Z INFO codex idle",
    ]
    path = _write(tmp_path, lines)

    result = parse_cli_log_file(path, final=False)

    assert [(r.tool_name, r.status) for r in result.tool_calls] == [("deploy", "unknown")]
    assert result.held_from_line is None
    assert result.new_offset == path.stat().st_size
