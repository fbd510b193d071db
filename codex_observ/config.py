from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .dedup import DEDUP_KEY_LENGTH
from .ingest.types import (
    ARG_CONTINUATION_MAX_LINES,
    CORRELATION_WINDOW_MS,
    DUPLICATE_START_WINDOW_MS,
    TAIL_SETTLE_MS,
    IngestSettings,
)

DEFAULT_CONFIG_PATH = Path("~/.config/codex-observ/config.json").expanduser()
DEFAULT_CHUNK_SIZE = 100

CONFIG_ENV_OVERRIDES = {
    "codex_home": "CODEX_OBSERV_CODEX_HOME",
    "desktop_log_dirs": "CODEX_OBSERV_DESKTOP_LOG_DIR",
    "db_path": "CODEX_OBSERV_DB_PATH",
    "store_content": "CODEX_OBSERV_STORE_CONTENT",
    "chunk_size": "CODEX_OBSERV_CHUNK_SIZE",
    "dedup_key_length": "CODEX_OBSERV_DEDUP_KEY_LENGTH",
    "duplicate_start_window_ms": "CODEX_OBSERV_DUPLICATE_START_WINDOW_MS",
    "correlation_window_ms": "CODEX_OBSERV_CORRELATION_WINDOW_MS",
    "arg_continuation_max_lines": "CODEX_OBSERV_ARG_CONTINUATION_MAX_LINES",
    "tail_settle_ms": "CODEX_OBSERV_TAIL_SETTLE_MS",
}

INT_KEYS = frozenset(
    {
        "chunk_size",
        "dedup_key_length",
        "duplicate_start_window_ms",
        "correlation_window_ms",
        "arg_continuation_max_lines",
        "tail_settle_ms",
    }
)
# Keys where 0 is meaningful; every other int must be positive.
ZERO_ALLOWED_KEYS = frozenset({"tail_settle_ms"})


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CODEX_OBSERV_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


@dataclass
class CodexObservConfig:
    codex_home: str | None = None
    desktop_log_dirs: list[str] = field(default_factory=list)
    db_path: str | None = None
    # Message bodies are only kept when explicitly enabled.
    store_content: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    dedup_key_length: int = DEDUP_KEY_LENGTH
    duplicate_start_window_ms: int = DUPLICATE_START_WINDOW_MS
    correlation_window_ms: int = CORRELATION_WINDOW_MS
    arg_continuation_max_lines: int = ARG_CONTINUATION_MAX_LINES
    tail_settle_ms: int = TAIL_SETTLE_MS

    def ingest_settings(self) -> IngestSettings:
        return IngestSettings(
            dedup_key_length=self.dedup_key_length,
            duplicate_start_window_ms=self.duplicate_start_window_ms,
            correlation_window_ms=self.correlation_window_ms,
            arg_continuation_max_lines=self.arg_continuation_max_lines,
            tail_settle_ms=self.tail_settle_ms,
            store_content=self.store_content,
        )


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    minimum = 0 if key in ZERO_ALLOWED_KEYS else 1
    if value is None:
        return default
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    if parsed < minimum:
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    return parsed


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _coerce_path_list(value: object, *, key: str) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        return [p.strip() for p in value.split(os.pathsep) if p.strip()]
    warnings.warn(f"Invalid list for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return None


def _coerce_optional_str(value: object, *, key: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    warnings.warn(f"Invalid string for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return None


def load_config(path: Path | None = None) -> CodexObservConfig:
    """Load the config file, then apply environment overrides.

    Raises ``ValueError`` when the file exists but is not a JSON object.
    """

    cfg = _apply_dict(CodexObservConfig(), read_config_file(path))
    return _apply_env(cfg)


def _apply_dict(cfg: CodexObservConfig, data: dict[str, Any]) -> CodexObservConfig:
    for key, value in data.items():
        if not hasattr(cfg, key) or key == "ingest_settings":
            continue
        if key in INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key == "store_content":
            cfg.store_content = _coerce_bool(value, cfg.store_content, key=key)
            continue
        if key == "desktop_log_dirs":
            parsed = _coerce_path_list(value, key=key)
            if parsed is not None:
                cfg.desktop_log_dirs = parsed
            continue
        setattr(cfg, key, _coerce_optional_str(value, key=key))
    return cfg


def _apply_env(cfg: CodexObservConfig) -> CodexObservConfig:
    codex_home = os.getenv("CODEX_OBSERV_CODEX_HOME") or os.getenv("CODEX_HOME")
    if codex_home and codex_home.strip():
        cfg.codex_home = codex_home.strip()
    db_path = os.getenv("CODEX_OBSERV_DB_PATH")
    if db_path and db_path.strip():
        cfg.db_path = db_path.strip()
    desktop_dirs = _coerce_path_list(
        os.getenv("CODEX_OBSERV_DESKTOP_LOG_DIR"), key="desktop_log_dirs"
    )
    if desktop_dirs:
        cfg.desktop_log_dirs = desktop_dirs
    cfg.store_content = _parse_bool(os.getenv("CODEX_OBSERV_STORE_CONTENT"), cfg.store_content)
    for key in INT_KEYS:
        setattr(
            cfg,
            key,
            _parse_int(os.getenv(CONFIG_ENV_OVERRIDES[key]), getattr(cfg, key), key=key),
        )
    return cfg
