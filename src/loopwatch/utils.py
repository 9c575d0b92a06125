"""Loopwatch utility functions: paths, logging, and file I/O helpers."""

from __future__ import annotations

import json
import os
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loopwatch.constants import (
    DEFAULT_LOOP_TMP_DIR,
    EXTERNAL_COMMAND_TIMEOUT_SECONDS,
    FEATURE_NAME_PATTERN,
    LOOP_FILE_PREFIX,
    LOOP_TMP_DIR_ENV,
    SUPERVISOR_LOG_FILENAME,
)
from loopwatch.models import InvalidInputError


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Feature names and per-feature paths
# ---------------------------------------------------------------------------


def _validate_feature_name(feature: str) -> str:
    """Return *feature* unchanged, or raise ``InvalidInputError``.

    Feature names are interpolated into file paths and pgrep/pkill patterns,
    so anything outside ``[A-Za-z0-9_-]`` is rejected before use.
    """
    if not isinstance(feature, str) or not FEATURE_NAME_PATTERN.fullmatch(feature):
        raise InvalidInputError(
            f'Invalid feature name: "{feature}". '
            "Must contain only letters, numbers, hyphens, and underscores."
        )
    return feature


def _loop_tmp_dir() -> Path:
    override = os.environ.get(LOOP_TMP_DIR_ENV, "").strip()
    return Path(override or DEFAULT_LOOP_TMP_DIR)


def _loop_file_path(feature: str, suffix: str, *, tmp_dir: Path | None = None) -> Path:
    _validate_feature_name(feature)
    base = tmp_dir if tmp_dir is not None else _loop_tmp_dir()
    return base / f"{LOOP_FILE_PREFIX}-{feature}.{suffix}"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(message: str, *, log_dir: Path | None = None) -> None:
    log_path = (log_dir if log_dir is not None else _loop_tmp_dir()) / SUPERVISOR_LOG_FILENAME
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{_utc_now()} {message}\n")
    except OSError:
        pass


def _describe_exc(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


# ---------------------------------------------------------------------------
# File I/O helpers
# ---------------------------------------------------------------------------


def _read_text_if_exists(path: Path, *, log_dir: Path | None = None) -> str | None:
    """Return the file text, or None when it is absent or unreadable."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        _append_log(f"warning: failed to read {path}: {_describe_exc(exc)}", log_dir=log_dir)
        return None


def _read_log_text(path: Path, *, log_dir: Path | None = None) -> str | None:
    """Read captured tool output; undecodable bytes become U+FFFD."""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError as exc:
        _append_log(f"warning: failed to read {path}: {_describe_exc(exc)}", log_dir=log_dir)
        return None


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_text(text, encoding="utf-8")
    os.replace(tmp_path, path)


def _write_json_atomic(path: Path, payload: Any, *, indent: int | None = 2) -> None:
    rendered = json.dumps(payload, indent=indent)
    _write_text_atomic(path, rendered + "\n" if indent is not None else rendered)


def _remove_if_exists(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def _tail_lines(path: Path, max_lines: int, *, log_dir: Path | None = None) -> str | None:
    text = _read_log_text(path, log_dir=log_dir)
    if not text:
        return None
    lines = text.rstrip().splitlines()
    if not lines:
        return None
    return "\n".join(lines[-max_lines:])


# ---------------------------------------------------------------------------
# External commands
# ---------------------------------------------------------------------------


def _run_command(
    argv: list[str],
    *,
    cwd: Path | None = None,
    timeout: float = EXTERNAL_COMMAND_TIMEOUT_SECONDS,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(argv, 127, "", f"{argv[0]} not found: {exc}")
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(argv, 124, "", f"{argv[0]} timed out after {timeout}s")
    except OSError as exc:
        return subprocess.CompletedProcess(argv, 1, "", str(exc))


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
