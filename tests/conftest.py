from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_codex_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CODEX_OBSERV_CONFIG", str(tmp_path / "config" / "config.json"))
    monkeypatch.setenv("CODEX_OBSERV_DESKTOP_LOG_DIR", str(tmp_path / "desktop-logs"))
    for name in (
        "CODEX_HOME",
        "CODEX_OBSERV_CODEX_HOME",
        "CODEX_OBSERV_DB_PATH",
        "CODEX_OBSERV_STORE_CONTENT",
        "CODEX_OBSERV_CHUNK_SIZE",
        "CODEX_OBSERV_DEDUP_KEY_LENGTH",
        "CODEX_OBSERV_DUPLICATE_START_WINDOW_MS",
        "CODEX_OBSERV_CORRELATION_WINDOW_MS",
        "CODEX_OBSERV_ARG_CONTINUATION_MAX_LINES",
        "CODEX_OBSERV_TAIL_SETTLE_MS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def codex_home(tmp_path: Path) -> Path:
    home = tmp_path / ".codex"
    (home / "sessions").mkdir(parents=True)
    (home / "log").mkdir()
    return home
