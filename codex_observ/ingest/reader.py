from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from .types import RAW_TEXT_MAX_CHARS, LineError, ParsedLine

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 1 << 20


@dataclass(frozen=True, slots=True)
class LineReadResult:
    """Complete lines appended since an offset.

    ``lines[i]`` is absolute line number ``first_line_number + i``.
    """

    lines: list[str]
    new_offset: int
    was_reset: bool
    line_number_base: int
    first_line_number: int
    skipped_fragment: bool = False
    # Byte offset where each of ``lines`` starts.
    line_offsets: list[int] = field(default_factory=list)

    def numbered(self) -> Iterator[tuple[int, str]]:
        for index, line in enumerate(self.lines):
            yield self.first_line_number + index, line

    def offset_of(self, line_number: int) -> int:
        """Byte offset of absolute line ``line_number``, for resuming there."""

        index = line_number - self.first_line_number
        if index < 0 or index >= len(self.line_offsets):
            raise ValueError(f"line {line_number} is not part of this read")
        return self.line_offsets[index]


@dataclass(frozen=True, slots=True)
class JsonlReadResult:
    lines: list[ParsedLine]
    new_offset: int
    was_reset: bool
    lines_read: int
    line_number_base: int
    errors: list[LineError] = field(default_factory=list)


def count_newlines_before(handle: BinaryIO, offset: int) -> int:
    if offset <= 0:
        return 0
    handle.seek(0)
    remaining = offset
    count = 0
    while remaining > 0:
        chunk = handle.read(min(READ_CHUNK_BYTES, remaining))
        if not chunk:
            break
        count += chunk.count(b"\n")
        remaining -= len(chunk)
    return count


def is_line_boundary(handle: BinaryIO, offset: int) -> bool:
    if offset <= 0:
        return True
    handle.seek(offset - 1)
    previous = handle.read(1)
    if not previous:
        return True
    return previous == b"\n"


def _split_lines(data: bytes, base_offset: int) -> tuple[list[str], list[int]]:
    lines: list[str] = []
    offsets: list[int] = []
    position = base_offset
    for raw in data.split(b"\n"):
        offsets.append(position)
        position += len(raw) + 1
        line = raw.decode("utf-8", errors="replace")
        lines.append(line[:-1] if line.endswith("\r") else line)
    return lines, offsets


def read_lines_incremental(path: str | Path, from_offset: int = 0) -> LineReadResult:
    """Read every complete line appended at or after ``from_offset``.

    Bytes after the last newline are left unconsumed so a later read picks the
    line up whole. A file that shrank below the offset is re-read from 0.
    """

    file_path = Path(path)
    size = file_path.stat().st_size
    offset = max(int(from_offset or 0), 0)
    was_reset = False
    if offset > size:
        logger.info("file shrank below watermark, re-reading from start: %s", file_path)
        offset = 0
        was_reset = True

    with file_path.open("rb") as handle:
        line_number_base = count_newlines_before(handle, offset)
        skip_first = not is_line_boundary(handle, offset)
        handle.seek(offset)
        data = handle.read()

    first_line_number = line_number_base + 1
    last_newline = data.rfind(b"\n")
    if last_newline == -1:
        return LineReadResult(
            lines=[],
            new_offset=offset,
            was_reset=was_reset,
            line_number_base=line_number_base,
            first_line_number=first_line_number,
        )

    lines, offsets = _split_lines(data[:last_newline], offset)
    if skip_first:
        lines = lines[1:]
        offsets = offsets[1:]
        first_line_number += 1
    return LineReadResult(
        lines=lines,
        new_offset=offset + last_newline + 1,
        was_reset=was_reset,
        line_number_base=line_number_base,
        first_line_number=first_line_number,
        skipped_fragment=skip_first,
        line_offsets=offsets,
    )


def read_jsonl_incremental(path: str | Path, from_offset: int = 0) -> JsonlReadResult:
    result = read_lines_incremental(path, from_offset)
    parsed: list[ParsedLine] = []
    errors: list[LineError] = []
    for line_number, raw in result.numbered():
        trimmed = raw.strip()
        if not trimmed:
            continue
        try:
            value = json.loads(trimmed)
        except json.JSONDecodeError as exc:
            logger.warning(
                "skipping undecodable jsonl line %s:%d: %s", path, line_number, exc.msg
            )
            errors.append(
                LineError(line=line_number, message=str(exc), raw=raw[:RAW_TEXT_MAX_CHARS])
            )
            continue
        parsed.append(ParsedLine(line_number=line_number, json=value, raw=raw))
    return JsonlReadResult(
        lines=parsed,
        new_offset=result.new_offset,
        was_reset=result.was_reset,
        lines_read=len(result.lines),
        line_number_base=result.line_number_base,
        errors=errors,
    )
