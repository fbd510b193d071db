"""Pair tool-call start and end markers into complete call records."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from ..dedup import generate_dedup_key, hash_payload
from .types import (
    DEFAULT_SETTINGS,
    EndMarker,
    IngestSettings,
    StartMarker,
    ToolCallRecord,
    ToolCallStatus,
)

Marker = StartMarker | EndMarker


def _sort_key(marker: Marker) -> tuple[int, int, int, str]:
    # Starts sort ahead of ends sharing a timestamp so a same-millisecond pair
    # still matches.
    phase = 0 if isinstance(marker, StartMarker) else 1
    return (marker.ts, phase, marker.source_line, marker.signature)


@dataclass(slots=True)
class CorrelatedCall:
    """One logical tool call: its markers before they become a record."""

    start: StartMarker | None = None
    end: EndMarker | None = None
    # Repeated starts folded into this call.
    duplicates: list[StartMarker] = field(default_factory=list)

    def source_lines(self) -> list[int]:
        markers: list[Marker] = [*self.duplicates]
        if self.start is not None:
            markers.append(self.start)
        if self.end is not None:
            markers.append(self.end)
        return [marker.source_line for marker in markers]

    @property
    def first_line(self) -> int:
        return min(self.source_lines())

    @property
    def last_line(self) -> int:
        return max(self.source_lines())


def find_duplicate_start(
    pending: list[StartMarker], start: StartMarker, window_ms: int
) -> int | None:
    for index, existing in enumerate(pending):
        if existing.signature == start.signature and abs(existing.ts - start.ts) <= window_ms:
            return index
    return None


def match_score(start: StartMarker, end: EndMarker) -> int:
    score = 0
    if start.signature == end.signature:
        score += 2
    if end.tool_name and start.tool_name == end.tool_name:
        score += 1
    return score


def find_matching_start(
    pending: list[StartMarker], end: EndMarker, window_ms: int
) -> int | None:
    """Return the index of the pending start that best explains ``end``.

    The highest score wins, then the smallest time delta, then the earliest
    pending entry. Score-zero candidates only count when nothing scores
    higher, which makes the nearest start in the window the fallback.
    """

    best_index: int | None = None
    best_rank: tuple[int, int] | None = None
    for index, start in enumerate(pending):
        delta = abs(end.ts - start.ts)
        if delta > window_ms:
            continue
        rank = (match_score(start, end), -delta)
        if best_rank is None or rank > best_rank:
            best_index = index
            best_rank = rank
    return best_index


def derive_status(end: EndMarker | None) -> ToolCallStatus:
    if end is None:
        return "unknown"
    if end.event_kind == "failure":
        return "failed"
    if end.exit_code is not None and end.exit_code != 0:
        return "failed"
    if end.event_kind == "exit":
        return "ok"
    return "unknown"


def infer_start_ts(end: EndMarker) -> int:
    if end.duration_ms is not None:
        return end.ts - end.duration_ms
    return end.ts


def build_record(
    *,
    start: StartMarker | None,
    end: EndMarker | None,
    source_file: str,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> ToolCallRecord:
    anchor: Marker
    if start is not None:
        anchor = start
        start_ts = start.ts
    elif end is not None:
        anchor = end
        start_ts = infer_start_ts(end)
    else:
        raise ValueError("a tool call needs a start or an end marker")

    tool_name = (start.tool_name if start else None) or (end.tool_name if end else None)
    command = (start.command if start else None) or (end.command if end else None)
    end_ts = end.ts if end is not None else None

    duration_ms: int | None = None
    if end is not None:
        duration_ms = end.duration_ms if end.duration_ms is not None else end.ts - start_ts

    signature = anchor.signature or tool_name or "unknown"
    key_payload = {"signature": signature, "ts": anchor.ts}

    return ToolCallRecord(
        tool_name=tool_name or "unknown",
        command=command,
        status=derive_status(end),
        start_ts=start_ts,
        end_ts=end_ts,
        duration_ms=duration_ms,
        exit_code=end.exit_code if end else None,
        error=end.error if end else None,
        stdout_bytes=end.stdout_bytes if end else None,
        stderr_bytes=end.stderr_bytes if end else None,
        source_file=source_file,
        source_line=anchor.source_line,
        correlation_key=hash_payload(key_payload, settings.dedup_key_length),
        dedup_key=generate_dedup_key(
            source_file, anchor.source_line, key_payload, settings.dedup_key_length
        ),
    )


def pair_markers(
    starts: Iterable[StartMarker],
    ends: Iterable[EndMarker],
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> list[CorrelatedCall]:
    """Group the markers of one batch into calls.

    Every end belongs to exactly one call, matched or standalone; starts that
    no end claimed come last, in the order they arrived.
    """

    stream: list[Marker] = [*starts, *ends]
    stream.sort(key=_sort_key)

    pending: list[CorrelatedCall] = []
    calls: list[CorrelatedCall] = []
    for marker in stream:
        if isinstance(marker, StartMarker):
            duplicate = find_duplicate_start(
                [call.start for call in pending if call.start is not None],
                marker,
                settings.duplicate_start_window_ms,
            )
            if duplicate is None:
                pending.append(CorrelatedCall(start=marker))
            else:
                pending[duplicate].duplicates.append(marker)
            continue

        index = find_matching_start(
            [call.start for call in pending if call.start is not None],
            marker,
            settings.correlation_window_ms,
        )
        if index is None:
            calls.append(CorrelatedCall(end=marker))
            continue
        call = pending.pop(index)
        call.end = marker
        calls.append(call)

    calls.extend(pending)
    return calls


def correlate_tool_calls(
    starts: Iterable[StartMarker],
    ends: Iterable[EndMarker],
    source_file: str,
    *,
    settings: IngestSettings = DEFAULT_SETTINGS,
) -> list[ToolCallRecord]:
    """Merge the markers of one batch into tool-call records.

    Every end yields exactly one record, matched or standalone; starts that
    no end claimed are emitted with ``unknown`` status once the stream is
    exhausted. The output does not depend on input order.
    """

    return [
        build_record(start=call.start, end=call.end, source_file=source_file, settings=settings)
        for call in pair_markers(starts, ends, settings=settings)
    ]
