"""Loopwatch configuration: ``ralph.config.yaml`` merged over built-in defaults."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from loopwatch.constants import (
    CONFIG_FILENAME,
    DEFAULT_ACTIVITY_HISTORY_LIMIT,
    DEFAULT_BACKGROUND_FAILURE_THRESHOLD,
    DEFAULT_BACKGROUND_POLL_INTERVAL_SECONDS,
    DEFAULT_CONFIG_ROOT,
    DEFAULT_ERROR_TAIL_LINES,
    DEFAULT_MAX_E2E_ATTEMPTS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REVIEW_MODE,
    DEFAULT_SCRIPTS_DIR,
    DEFAULT_SPECS_DIR,
    REVIEW_MODES,
)
from loopwatch.models import (
    LoopConfig,
    LoopwatchConfig,
    PathsConfig,
    SupervisorSettings,
    _coerce_float,
    _coerce_positive_int,
)
from loopwatch.utils import _append_log


def _load_config_document(project_root: Path) -> dict[str, Any]:
    config_path = project_root / CONFIG_FILENAME
    if not config_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except Exception as exc:
        _append_log(f"warning: config could not be parsed at {config_path}: {exc}")
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _section(document: dict[str, Any], name: str) -> dict[str, Any]:
    section = document.get(name)
    return section if isinstance(section, dict) else {}


def _relative_dir(value: Any, *, default: str) -> str:
    text = str(value).strip() if value is not None else ""
    return text or default


def _resolve_review_mode(value: Any) -> str:
    candidate = str(value or DEFAULT_REVIEW_MODE).strip().lower()
    if candidate in REVIEW_MODES:
        return candidate
    return DEFAULT_REVIEW_MODE


def _load_paths_config(document: dict[str, Any]) -> PathsConfig:
    paths = _section(document, "paths")
    return PathsConfig(
        root=_relative_dir(paths.get("root"), default=DEFAULT_CONFIG_ROOT),
        specs=_relative_dir(paths.get("specs"), default=DEFAULT_SPECS_DIR),
        scripts=_relative_dir(paths.get("scripts"), default=DEFAULT_SCRIPTS_DIR),
    )


def _load_loop_config(document: dict[str, Any]) -> LoopConfig:
    loop = _section(document, "loop")
    return LoopConfig(
        max_iterations=_coerce_positive_int(loop.get("max_iterations"), default=DEFAULT_MAX_ITERATIONS),
        max_e2e_attempts=_coerce_positive_int(
            loop.get("max_e2e_attempts"), default=DEFAULT_MAX_E2E_ATTEMPTS
        ),
        review_mode=_resolve_review_mode(loop.get("review_mode")),
    )


def _load_supervisor_settings(document: dict[str, Any]) -> SupervisorSettings:
    supervisor = _section(document, "supervisor")
    poll_interval = _coerce_float(
        supervisor.get("poll_interval_seconds"), default=DEFAULT_POLL_INTERVAL_SECONDS
    )
    if poll_interval <= 0:
        poll_interval = DEFAULT_POLL_INTERVAL_SECONDS
    background_interval = _coerce_float(
        supervisor.get("background_poll_interval_seconds"),
        default=DEFAULT_BACKGROUND_POLL_INTERVAL_SECONDS,
    )
    if background_interval <= 0:
        background_interval = DEFAULT_BACKGROUND_POLL_INTERVAL_SECONDS
    return SupervisorSettings(
        poll_interval_seconds=poll_interval,
        background_poll_interval_seconds=background_interval,
        background_failure_threshold=_coerce_positive_int(
            supervisor.get("background_failure_threshold"),
            default=DEFAULT_BACKGROUND_FAILURE_THRESHOLD,
        ),
        activity_history_limit=_coerce_positive_int(
            supervisor.get("activity_history_limit"), default=DEFAULT_ACTIVITY_HISTORY_LIMIT
        ),
        error_tail_lines=_coerce_positive_int(
            supervisor.get("error_tail_lines"), default=DEFAULT_ERROR_TAIL_LINES
        ),
    )


def default_config() -> LoopwatchConfig:
    return load_config_with_defaults(None)


def load_config_with_defaults(project_root: Path | None) -> LoopwatchConfig:
    """Load ``ralph.config.yaml`` from *project_root*, merged over defaults.

    Missing files, invalid YAML, and out-of-range values all fall back to the
    built-in defaults; this never raises.
    """
    document = _load_config_document(project_root) if project_root is not None else {}
    return LoopwatchConfig(
        paths=_load_paths_config(document),
        loop=_load_loop_config(document),
        supervisor=_load_supervisor_settings(document),
    )
