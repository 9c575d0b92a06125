"""Loopwatch data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _coerce_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except Exception:
        return default


class LoopwatchError(RuntimeError):
    """Base class for supervision-layer errors."""


class InvalidInputError(LoopwatchError):
    """Raised when a feature name or reply fails validation."""


class NotFoundError(LoopwatchError):
    """Raised when the loop script or the feature spec document is missing."""


class SpawnError(LoopwatchError):
    """Raised when the loop process cannot be started."""


class ExternalCommandError(LoopwatchError):
    """Raised when git/gh is missing, fails, or returns unparsable output."""


# ---------------------------------------------------------------------------
# Loop telemetry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    cache_create: int = 0
    cache_read: int = 0


@dataclass(frozen=True)
class LoopStatus:
    running: bool = False
    phase: str = "Idle"
    iteration: int = 0
    max_iterations: int = 0
    tokens_input: int = 0
    tokens_output: int = 0
    cache_create: int = 0
    cache_read: int = 0
    updated_at: int = 0

    @property
    def started(self) -> bool:
        return self.running or self.iteration > 0 or self.updated_at > 0


@dataclass(frozen=True)
class TaskCounts:
    tasks_done: int = 0
    tasks_pending: int = 0
    e2e_done: int = 0
    e2e_pending: int = 0

    @property
    def done(self) -> int:
        return self.tasks_done + self.e2e_done

    @property
    def total(self) -> int:
        return self.done + self.tasks_pending + self.e2e_pending


@dataclass(frozen=True)
class ActivityEvent:
    timestamp: int  # epoch milliseconds
    message: str
    status: str  # "in-progress" | "success" | "error"


@dataclass(frozen=True)
class PhaseInfo:
    id: str
    label: str
    status: str  # "success" | "skipped" | "failed"
    duration_ms: int | None = None
    iterations: int | None = None


# ---------------------------------------------------------------------------
# Action mailbox messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionChoice:
    id: str
    label: str


@dataclass(frozen=True)
class ActionRequest:
    id: str
    prompt: str
    choices: tuple[ActionChoice, ...]
    default: str

    def choice_ids(self) -> tuple[str, ...]:
        return tuple(choice.id for choice in self.choices)


@dataclass(frozen=True)
class ActionReply:
    id: str
    choice: str


# ---------------------------------------------------------------------------
# Background tracking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackgroundRun:
    feature_name: str
    backgrounded_at: float
    log_path: str
    last_status: LoopStatus
    completed: bool
    consecutive_failures: int = 0


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileChange:
    path: str
    added: int
    removed: int


@dataclass(frozen=True)
class ChangesSummary:
    available: bool
    total_files_changed: int | None = None
    files: tuple[FileChange, ...] | None = None


@dataclass(frozen=True)
class CommitsSummary:
    available: bool
    from_hash: str | None = None
    to_hash: str | None = None
    # Placeholder; merge detection is not implemented.
    merge_type: str | None = None


@dataclass(frozen=True)
class PrSummary:
    available: bool
    created: bool = False
    number: int | None = None
    url: str | None = None


@dataclass(frozen=True)
class IssueSummary:
    available: bool
    linked: bool = False
    number: int | None = None
    url: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class IterationBreakdown:
    total: int
    implementation: int | None = None
    # Placeholder; resume detection is not implemented.
    resumes: int | None = None


@dataclass(frozen=True)
class TaskSummary:
    completed: int
    total: int


@dataclass(frozen=True)
class RunSummary:
    feature: str
    iterations: int
    max_iterations: int
    tasks_done: int
    tasks_total: int
    tokens_input: int
    tokens_output: int
    exit_code: int
    cache_create: int = 0
    cache_read: int = 0
    branch: str | None = None
    log_path: str | None = None
    error_tail: str | None = None
    total_duration_ms: int | None = None
    iteration_breakdown: IterationBreakdown | None = None
    tasks: TaskSummary | None = None
    phases: tuple[PhaseInfo, ...] = ()
    changes: ChangesSummary = field(default_factory=lambda: ChangesSummary(available=False))
    commits: CommitsSummary = field(default_factory=lambda: CommitsSummary(available=False))
    pr: PrSummary = field(default_factory=lambda: PrSummary(available=False, created=False))
    issue: IssueSummary = field(default_factory=lambda: IssueSummary(available=False, linked=False))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PathsConfig:
    root: str
    specs: str
    scripts: str


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int
    max_e2e_attempts: int
    review_mode: str


@dataclass(frozen=True)
class SupervisorSettings:
    poll_interval_seconds: float
    background_poll_interval_seconds: float
    background_failure_threshold: int
    activity_history_limit: int
    error_tail_lines: int


@dataclass(frozen=True)
class LoopwatchConfig:
    paths: PathsConfig
    loop: LoopConfig
    supervisor: SupervisorSettings
