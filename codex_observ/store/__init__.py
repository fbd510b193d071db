from __future__ import annotations

from ._store import IngestStore
from .types import BatchInsertResult, InsertFailure, Watermark, WorktreeAction

__all__ = [
    "BatchInsertResult",
    "IngestStore",
    "InsertFailure",
    "Watermark",
    "WorktreeAction",
]
