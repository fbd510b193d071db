from __future__ import annotations

import os
import sys
from collections.abc import Iterable
from pathlib import Path

DEFAULT_CODEX_HOME = Path("~/.codex")
CLI_LOG_NAME = "codex-tui.log"
DESKTOP_LOG_PREFIX = "codex-desktop-"


def ensure_path(path: str | Path) -> Path:
    resolved = Path(path).expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def resolve_codex_home(codex_home: str | Path | None = None) -> Path:
    return Path(codex_home or DEFAULT_CODEX_HOME).expanduser()


def cli_log_path(codex_home: str | Path) -> Path:
    return Path(codex_home) / "log" / CLI_LOG_NAME


def _sorted_by_mtime(paths: Iterable[Path]) -> list[Path]:
    found: list[tuple[float, str, Path]] = []
    for path in paths:
        try:
            stat = path.stat()
        except OSError:
            continue
        found.append((stat.st_mtime, str(path), path))
    found.sort(key=lambda entry: (entry[0], entry[1]))
    return [entry[2] for entry in found]


def discover_session_files(codex_home: str | Path) -> list[Path]:
    """Every ``sessions/**/*.jsonl`` file, oldest modification first."""

    root = Path(codex_home) / "sessions"
    if not root.is_dir():
        return []
    return _sorted_by_mtime(path for path in root.rglob("*.jsonl") if path.is_file())


def default_desktop_log_root() -> Path | None:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Logs" / "com.openai.codex"
    if sys.platform == "win32":
        local_app_data = os.getenv("LOCALAPPDATA")
        return Path(local_app_data) / "Codex" / "Logs" if local_app_data else None
    state_home = os.getenv("XDG_STATE_HOME") or str(home / ".local" / "state")
    return Path(state_home) / "codex" / "logs"


def resolve_desktop_log_roots(configured: Iterable[str] | None = None) -> list[Path]:
    roots = [Path(entry).expanduser() for entry in (configured or []) if entry]
    if roots:
        return roots
    default = default_desktop_log_root()
    return [default] if default else []


def is_desktop_log_file(name: str) -> bool:
    return name.startswith(DESKTOP_LOG_PREFIX) and name.endswith(".log")


def discover_desktop_log_files(roots: Iterable[Path]) -> list[Path]:
    """Desktop log files under every existing root, oldest modification first."""

    candidates: list[Path] = []
    for root in roots:
        if not root.is_dir():
            continue
        candidates.extend(
            path
            for path in root.rglob("*.log")
            if path.is_file() and is_desktop_log_file(path.name)
        )
    return _sorted_by_mtime(candidates)


def normalize_home_path(value: str) -> str:
    home = str(Path.home())
    if value.startswith(home):
        return "~" + value[len(home) :]
    return value
