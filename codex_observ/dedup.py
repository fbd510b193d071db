from __future__ import annotations

import base64
import dataclasses
import datetime as dt
import hashlib
import json
import math
from typing import Any

DEDUP_KEY_LENGTH = 24


def _encode_number(value: int | float) -> str:
    if isinstance(value, float):
        if not math.isfinite(value):
            return "null"
        if value.is_integer():
            return json.dumps(int(value))
    return json.dumps(value)


def stable_serialize(value: Any) -> str:
    """Serialize ``value`` so that equal content always yields equal text.

    Mapping keys are sorted, sequences keep their order, binary data is
    base64 encoded. Whole floats serialize like ints so ``1.0`` and ``1``
    produce the same key.
    """

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return _encode_number(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bytes | bytearray | memoryview):
        return json.dumps(base64.b64encode(bytes(value)).decode("ascii"))
    if isinstance(value, dt.datetime | dt.date):
        return json.dumps(value.isoformat())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return stable_serialize(dataclasses.asdict(value))
    if isinstance(value, dict):
        entries = sorted(
            ((str(key), item) for key, item in value.items() if not callable(item)),
            key=lambda entry: entry[0],
        )
        body = ",".join(
            f"{json.dumps(key, ensure_ascii=False)}:{stable_serialize(item)}"
            for key, item in entries
        )
        return "{" + body + "}"
    if isinstance(value, list | tuple):
        return "[" + ",".join(stable_serialize(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: Any, length: int = DEDUP_KEY_LENGTH) -> str:
    return sha256_hex(stable_serialize(payload))[:length]


def generate_dedup_key(
    source_file: str,
    source_line: int,
    payload: Any,
    length: int = DEDUP_KEY_LENGTH,
) -> str:
    payload_hash = hash_payload(payload, length)
    return sha256_hex(f"{source_file}:{source_line}:{payload_hash}")[:length]
