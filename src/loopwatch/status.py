"""Loop status polling: status/token files, process probes, and the task plan."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Callable

from loopwatch.constants import (
    FINAL_STATUS_SUFFIX,
    LOOP_SCRIPT_NAME,
    PHASE_PROMPT_PROBES,
    STATUS_SUFFIX,
    TOKENS_SUFFIX,
)
from loopwatch.models import LoopStatus, TaskCounts, TokenUsage, _coerce_int
from loopwatch.utils import (
    _append_log,
    _compact_log_text,
    _loop_file_path,
    _read_text_if_exists,
    _run_command,
    _validate_feature_name,
)

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess]

_CHECKLIST_ITEM_PATTERN = re.compile(r"^\s*[-*+]\s+\[(?P<mark>[ xX])\]")
_E2E_MARKER_PATTERN = re.compile(r"\bE2E\s*:", re.IGNORECASE)


def loop_process_pattern(feature: str) -> str:
    """Return the pgrep/pkill pattern matching the loop script for *feature*."""
    return f"{LOOP_SCRIPT_NAME}.*{_validate_feature_name(feature)}"


# ---------------------------------------------------------------------------
# Process probe
# ---------------------------------------------------------------------------


class ProcessProbe:
    """Ask ``pgrep``/``pkill`` about processes by command-line pattern.

    A missing or broken ``pgrep`` disables the probe after one warning so the
    poller does not fork a failing command on every tick.
    """

    def __init__(self, runner: CommandRunner | None = None, *, log_dir: Path | None = None) -> None:
        self._runner = runner or (lambda argv: _run_command(argv))
        self.log_dir = log_dir
        self._available: bool | None = None

    @property
    def available(self) -> bool | None:
        return self._available

    def is_running(self, pattern: str) -> bool:
        if self._available is False:
            return False
        result = self._runner(["pgrep", "-f", pattern])
        if result.returncode == 0:
            self._available = True
            return bool(str(result.stdout).strip())
        # pgrep exits 1 when nothing matches.
        if result.returncode == 1:
            self._available = True
            return False
        if self._available is None:
            detail = _compact_log_text(str(result.stderr or result.stdout or f"exit {result.returncode}"))
            _append_log(
                f"warning: process detection unavailable ({detail}); background run status may be inaccurate",
                log_dir=self.log_dir,
            )
            self._available = False
        return False

    def interrupt(self, pattern: str) -> bool:
        result = self._runner(["pkill", "-INT", "-f", pattern])
        return result.returncode == 0


# ---------------------------------------------------------------------------
# Status and token files
# ---------------------------------------------------------------------------


def parse_status_line(text: str) -> tuple[int, int, int]:
    """Parse ``iteration|max_iterations|timestamp``; missing fields become 0."""
    parts = text.strip().split("|")
    values = [_coerce_int(part) for part in parts[:3]]
    while len(values) < 3:
        values.append(0)
    return values[0], values[1], values[2]


def derive_tokens(text: str) -> TokenUsage:
    """Parse a token record in either the 2-field or the 4-field layout."""
    parts = text.strip().split("|")
    if len(parts) >= 4:
        return TokenUsage(
            input=_coerce_int(parts[0]),
            output=_coerce_int(parts[1]),
            cache_create=_coerce_int(parts[2]),
            cache_read=_coerce_int(parts[3]),
        )
    return TokenUsage(
        input=_coerce_int(parts[0]) if parts else 0,
        output=_coerce_int(parts[1]) if len(parts) > 1 else 0,
    )


class StatusPoller:
    def __init__(self, *, tmp_dir: Path | None = None, probe: ProcessProbe | None = None) -> None:
        self.tmp_dir = tmp_dir
        self.probe = probe or ProcessProbe(log_dir=tmp_dir)

    def _path(self, feature: str, suffix: str) -> Path:
        return _loop_file_path(feature, suffix, tmp_dir=self.tmp_dir)

    def detect_phase(self, feature: str, *, running: bool | None = None) -> str:
        # Prompt-file probes are global: they match any loop on the host.
        for prompt_file, label in PHASE_PROMPT_PROBES:
            if self.probe.is_running(prompt_file):
                return label
        if running is None:
            running = self.probe.is_running(loop_process_pattern(feature))
        return "Running" if running else "Idle"

    def read_tokens(self, feature: str) -> TokenUsage:
        text = _read_text_if_exists(self._path(feature, TOKENS_SUFFIX), log_dir=self.tmp_dir)
        if not text or not text.strip():
            return TokenUsage()
        return derive_tokens(text)

    def read_status(self, feature: str) -> LoopStatus:
        _validate_feature_name(feature)
        iteration = max_iterations = updated_at = 0
        status_text = _read_text_if_exists(self._path(feature, STATUS_SUFFIX), log_dir=self.tmp_dir)
        if status_text is None:
            status_text = _read_text_if_exists(
                self._path(feature, FINAL_STATUS_SUFFIX), log_dir=self.tmp_dir
            )
        if status_text and status_text.strip():
            iteration, max_iterations, updated_at = parse_status_line(status_text)

        tokens = self.read_tokens(feature)
        running = self.probe.is_running(loop_process_pattern(feature))
        return LoopStatus(
            running=running,
            phase=self.detect_phase(feature, running=running),
            iteration=iteration,
            max_iterations=max_iterations,
            tokens_input=tokens.input,
            tokens_output=tokens.output,
            cache_create=tokens.cache_create,
            cache_read=tokens.cache_read,
            updated_at=updated_at,
        )


# ---------------------------------------------------------------------------
# Task plan
# ---------------------------------------------------------------------------


def implementation_plan_path(project_root: Path, feature: str, specs_dir: str) -> Path:
    return project_root / specs_dir / f"{_validate_feature_name(feature)}-implementation-plan.md"


def count_plan_items(text: str) -> TaskCounts:
    tasks_done = tasks_pending = e2e_done = e2e_pending = 0
    for line in text.splitlines():
        match = _CHECKLIST_ITEM_PATTERN.match(line)
        if match is None:
            continue
        done = match.group("mark") in {"x", "X"}
        is_e2e = bool(_E2E_MARKER_PATTERN.search(line))
        if is_e2e and done:
            e2e_done += 1
        elif is_e2e:
            e2e_pending += 1
        elif done:
            tasks_done += 1
        else:
            tasks_pending += 1
    return TaskCounts(
        tasks_done=tasks_done,
        tasks_pending=tasks_pending,
        e2e_done=e2e_done,
        e2e_pending=e2e_pending,
    )


def read_task_counts(
    project_root: Path, feature: str, specs_dir: str, *, log_dir: Path | None = None
) -> TaskCounts:
    text = _read_text_if_exists(implementation_plan_path(project_root, feature, specs_dir), log_dir=log_dir)
    if not text:
        return TaskCounts()
    return count_plan_items(text)
