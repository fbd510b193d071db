from pathlib import Path

import pytest

from codex_observ.ingest.reader import read_jsonl_incremental, read_lines_incremental


def test_reads_complete_lines_and_holds_back_partial(tmp_path: Path) -> None:
    path = tmp_path / "a.log"
    path.write_bytes(b"one\ntwo\nthr")

    result = read_lines_incremental(path)

    assert result.lines == ["one", "two"]
    assert result.new_offset == len(b"one\ntwo\n")
    assert result.first_line_number == 1
    assert not result.was_reset


def test_resumes_from_offset_with_absolute_line_numbers(tmp_path: Path) -> None:
    path = tmp_path / "a.log"
    path.write_bytes(b"one\ntwo\n")
    first = read_lines_incremental(path)
    with path.open("ab") as handle:
        handle.write(b"three\r\nfour\n")

    second = read_lines_incremental(path, first.new_offset)

    assert list(second.numbered()) == [(3, "three"), (4, "four")]
    assert second.new_offset == path.stat().st_size


def test_no_new_data_keeps_offset(tmp_path: Path) -> None:
    path = tmp_path / "a.log"
    path.write_bytes(b"one\n")
    result = read_lines_incremental(path, 4)
    assert result.lines == []
    assert result.new_offset == 4


def test_truncated_file_is_reread_from_start(tmp_path: Path) -> None:
    path = tmp_path / "a.log"
    path.write_bytes(b"short\n")

    result = read_lines_incremental(path, 1000)

    assert result.was_reset
    assert result.lines == ["short"]
    assert result.first_line_number == 1


def test_offset_inside_a_line_skips_the_fragment(tmp_path: Path) -> None:
    path = tmp_path / "a.log"
    path.write_bytes(b"alpha\nbeta\ngamma\n")

    result = read_lines_incremental(path, 8)

    assert list(result.numbered()) == [(3, "gamma")]
    assert result.skipped_fragment


def test_jsonl_reports_bad_lines_and_keeps_going(tmp_path: Path) -> None:
    path = tmp_path / "s.jsonl"
    path.write_text('{"type": "a"}\n{broken\n\n{"type": "b"}\n')

    result = read_jsonl_incremental(path)

    assert [line.json["type"] for line in result.lines] == ["a", "b"]
    assert [line.line_number for line in result.lines] == [1, 4]
    assert [error.line for error in result.errors] == [2]
    assert result.lines_read == 4
    assert result.new_offset == path.stat().st_size


def test_line_offsets_count_bytes_not_characters(tmp_path: Path) -> None:
    path = tmp_path / "a.log"
    path.write_bytes("skip\ncafé\r\nlast\n".encode())
    first_line = len(b"skip\n")

    result = read_lines_incremental(path, first_line)

    assert result.line_offsets == [first_line, first_line + len("café\r\n".encode())]
    assert result.offset_of(3) == path.stat().st_size - len(b"last\n")
    with pytest.raises(ValueError, match="not part of this read"):
        result.offset_of(1)
