"""Typed field extractors for loosely shaped log payloads.

A field is described by an ordered list of extractors; the first one that
yields a value wins.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping
from typing import Any, TypeVar

from ..utils import iso_to_epoch_ms

T = TypeVar("T")

# SQLite INTEGER range.
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

Extractor = Callable[[Any], T | None]


def as_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def as_str(value: Any) -> str | None:
    text = as_text(value)
    if text is not None:
        return text
    if isinstance(value, int | float) and not isinstance(value, bool):
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    return None


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def as_int(value: Any) -> int | None:
    number = as_number(value)
    if number is None:
        return None
    result = int(round(number))
    if result < INT64_MIN or result > INT64_MAX:
        return None
    return result


def as_mapping(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    return None


def as_timestamp(value: Any) -> int | None:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return as_int(value)
    if isinstance(value, str):
        parsed = iso_to_epoch_ms(value)
        if parsed is not None:
            return parsed
        return as_int(value)
    return None


def field(*path: str, coerce: Callable[[Any], T | None]) -> Extractor[T]:
    """Build an extractor reading ``path`` through nested mappings."""

    def extract(source: Any) -> T | None:
        current = source
        for key in path:
            if not isinstance(current, Mapping) or key not in current:
                return None
            current = current[key]
        if current is None:
            return None
        return coerce(current)

    return extract


def fields(*keys: str, coerce: Callable[[Any], T | None]) -> list[Extractor[T]]:
    return [field(key, coerce=coerce) for key in keys]


def first_of(source: Any, extractors: Iterable[Extractor[T]]) -> T | None:
    for extract in extractors:
        value = extract(source)
        if value is not None:
            return value
    return None


def first_in(sources: Iterable[Any], extractors: Iterable[Extractor[T]]) -> T | None:
    extractors = list(extractors)
    for source in sources:
        if source is None:
            continue
        value = first_of(source, extractors)
        if value is not None:
            return value
    return None
