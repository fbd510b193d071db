from __future__ import annotations

import datetime as dt
import time
from collections.abc import Iterator, Sequence
from typing import TypeVar

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def to_epoch_ms(value: dt.datetime) -> int:
    return int(round(value.timestamp() * 1000))


def iso_to_epoch_ms(value: str) -> int | None:
    parsed = parse_iso8601(value)
    if parsed is None:
        return None
    return to_epoch_ms(parsed)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start : start + size]
