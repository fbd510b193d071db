from __future__ import annotations

import re
from pathlib import Path

REDACTED = "[redacted]"

OSC_ESCAPE_RE = re.compile(r"\x1B\][^\x07]*(?:\x07|\x1B\\)")

CSI_ESCAPE_RE = re.compile(
    r"""
    [\x1B\x9B]
    [\[\]()#;?]*
    (?:[0-9]{1,4}(?:;[0-9]{0,4})*)?
    [0-9A-ORZcf-nq-uy=><]
    """,
    re.VERBOSE,
)

TWO_CHAR_ESCAPE_RE = re.compile(r"\x1B[@-Z\\-_]")

# Applied in order; user-profile rules run after the home directory rewrite.
USER_PATH_PATTERNS = [
    (re.compile(r"/Users/[^/\s]+"), "/Users/" + REDACTED),
    (re.compile(r"/home/[^/\s]+"), "/home/" + REDACTED),
    (re.compile(r"[A-Za-z]:\\Users\\[^\\\s]+"), "C:\\\\Users\\\\" + REDACTED),
    (re.compile(r"[A-Za-z]:/Users/[^/\s]+"), "C:/Users/" + REDACTED),
]

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")


def strip_ansi(text: str) -> str:
    if not text:
        return text
    text = OSC_ESCAPE_RE.sub("", text)
    text = CSI_ESCAPE_RE.sub("", text)
    return TWO_CHAR_ESCAPE_RE.sub("", text)


def _home_dir() -> str:
    try:
        return str(Path.home())
    except RuntimeError:
        return ""


def sanitize_log_text(text: str, *, home_dir: str | None = None) -> str:
    """Redact user-identifying paths and email addresses from log text."""

    if not text:
        return text
    result = text
    home = _home_dir() if home_dir is None else home_dir
    if home and home not in {"/", "\\"}:
        result = result.replace(home, "~")
    for pattern, replacement in USER_PATH_PATTERNS:
        result = pattern.sub(replacement, result)
    return EMAIL_RE.sub(REDACTED, result)
