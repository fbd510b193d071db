from codex_observ.redaction import REDACTED, sanitize_log_text, strip_ansi


def test_strip_ansi_removes_color_codes() -> None:
    assert strip_ansi("\x1b[32mINFO\x1b[0m ready") == "INFO ready"


def test_strip_ansi_removes_osc_sequences() -> None:
    assert strip_ansi("\x1b]0;title\x07hello") == "hello"


def test_strip_ansi_leaves_plain_text() -> None:
    assert strip_ansi("plain [brackets] text") == "plain [brackets] text"


def test_sanitize_replaces_home_directory() -> None:
    text = "opened /opt/me/projects/app"
    assert sanitize_log_text(text, home_dir="/opt/me") == "opened ~/projects/app"


def test_sanitize_redacts_user_profile_paths() -> None:
    text = "repo at /Users/alice/src and /home/bob/work"
    sanitized = sanitize_log_text(text, home_dir="")
    assert "alice" not in sanitized
    assert "bob" not in sanitized
    assert f"/Users/{REDACTED}/src" in sanitized
    assert f"/home/{REDACTED}/work" in sanitized


def test_sanitize_redacts_windows_profile_paths() -> None:
    sanitized = sanitize_log_text(r"C:\Users\carol\repo", home_dir="")
    assert "carol" not in sanitized
    assert REDACTED in sanitized


def test_sanitize_redacts_emails() -> None:
    sanitized = sanitize_log_text("signed in as someone@example.com", home_dir="")
    assert sanitized == f"signed in as {REDACTED}"


def test_sanitize_ignores_root_home() -> None:
    assert sanitize_log_text("/var/log/x", home_dir="/") == "/var/log/x"
