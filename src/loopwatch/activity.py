"""Activity feed: log-tail classification and phase transition detection.

Log lines pass through an ordered rule list: noise filters first (a match
drops the line), then markdown stripping, then status classifiers (first
match wins, so success outranks error). New noise patterns only need a new
``LogRule`` entry.
"""

from __future__ import annotations

import json
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from loopwatch.constants import (
    DEFAULT_ACTIVITY_HISTORY_LIMIT,
    PHASE_LABELS,
    PHASE_STATUSES,
    PHASE_TERMINAL_STATUSES,
)
from loopwatch.models import ActivityEvent, PhaseInfo
from loopwatch.utils import _append_log, _now_ms, _read_log_text, _read_text_if_exists


@dataclass(frozen=True)
class LogRule:
    name: str
    pattern: re.Pattern[str]

    def matches(self, message: str) -> bool:
        return bool(self.pattern.search(message))


@dataclass(frozen=True)
class StatusRule:
    status: str
    pattern: re.Pattern[str]


def _rule(name: str, pattern: str, flags: int = 0) -> LogRule:
    return LogRule(name=name, pattern=re.compile(pattern, flags))


NOISE_RULES: tuple[LogRule, ...] = (
    _rule("separator", r"^[=\-_*~]{3,}\s*$"),
    _rule("phase_banner", r"^(?:={5,}|-{5,})\s+\S.*(?:={5,}|-{5,})$"),
    _rule(
        "iteration_separator",
        r"^[=\-#>\s]*(?:iteration|attempt)\s+\d+(?:\s*(?:/|of)\s*\d+)?[\s=\-]*$",
        re.IGNORECASE,
    ),
    _rule("heading", r"^#{1,6}\s"),
    _rule("bold_line", r"^\*\*[^*]+\*\*:?\s*$"),
    _rule("table_row", r"^\|.*\|\s*$"),
    _rule("table_rule", r"^\|?\s*:?-{3,}:?\s*\|"),
    _rule("numbered_item", r"^\d+[.)]\s+"),
    _rule(
        "action_echo",
        r"^(?:\[action\]|action (?:request|reply)\b|awaiting (?:action|selection)\b|"
        r"waiting for (?:action|selection|reply)\b|selected(?: option| choice)?:|selection:|"
        r"which option\??$|implementation complete\.\s+what would you like)",
        re.IGNORECASE,
    ),
    _rule(
        "token_usage",
        r"^(?:token usage|tokens?(?: used)?|(?:input|output|total) tokens|"
        r"cache (?:creation|create|read)(?: tokens)?)\s*[:=]",
        re.IGNORECASE,
    ),
    _rule(
        "completion_banner",
        r"^(?:[^\w\s]\s*)*(?:ralph loop|feature loop|loop)\s+(?:complete|completed|finished|done)\b",
        re.IGNORECASE,
    ),
    _rule("loop_header", r"^Ralph Loop:"),
    _rule("loop_config", r"^(?:Spec|Plan|Branch|App dir|Worktree|Resume|Review|Model|Max):"),
    _rule("baseline", r"^(?:Baseline commit|Creating branch):"),
    _rule("json_record", r'^\{"level"'),
    _rule("pending_count", r"^Pending implementation tasks: \d+$"),
    _rule(
        "filler",
        r"^(?:(?:let me|let's|i'll|i will|i'm going to|now i|now let me|i can see|i see|looking at)\b|"
        r"(?:great|perfect|okay|ok|sure|alright|excellent|got it)(?:[,!.]|\s*$))",
        re.IGNORECASE,
    ),
)

STATUS_RULES: tuple[StatusRule, ...] = (
    StatusRule("success", re.compile(r"completed|passed|success|approved", re.IGNORECASE)),
    StatusRule("error", re.compile(r"error|failed|failure", re.IGNORECASE)),
)

_ISO_PREFIX = re.compile(
    r"^(?P<ts>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)\s*"
)
_BRACKETED_PREFIX = re.compile(r"^\[(?P<ts>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}[^\]]*)\]\s*")
_MARKDOWN_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_MARKDOWN_CODE = re.compile(r"`([^`]+)`")
_LEADING_BULLET = re.compile(r"^\s*[-*]\s+")


def _parse_timestamp_ms(text: str) -> int | None:
    candidate = text.strip().replace(" ", "T", 1)
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    return int(parsed.timestamp() * 1000)


def split_timestamp(line: str) -> tuple[int | None, str]:
    """Return ``(epoch_ms or None, message)`` for a raw log line."""
    for pattern in (_BRACKETED_PREFIX, _ISO_PREFIX):
        match = pattern.match(line)
        if match is None:
            continue
        return _parse_timestamp_ms(match.group("ts")), line[match.end():].strip()
    return None, line.strip()


def is_noise(message: str, rules: Iterable[LogRule] = NOISE_RULES) -> bool:
    return any(rule.matches(message) for rule in rules)


def strip_markdown(message: str) -> str:
    stripped = _MARKDOWN_BOLD.sub(r"\1", message)
    stripped = _MARKDOWN_CODE.sub(r"\1", stripped)
    stripped = _LEADING_BULLET.sub("", stripped)
    return stripped.strip()


def infer_status(message: str, rules: Iterable[StatusRule] = STATUS_RULES) -> str:
    for rule in rules:
        if rule.pattern.search(message):
            return rule.status
    return "in-progress"


def classify_line(line: str, *, fallback_ms: int) -> ActivityEvent | None:
    timestamp, message = split_timestamp(line)
    if not message or is_noise(message):
        return None
    message = strip_markdown(message)
    if not message:
        return None
    return ActivityEvent(
        timestamp=timestamp if timestamp is not None else fallback_ms,
        message=message,
        status=infer_status(message),
    )


def _complete_lines(content: str) -> list[str]:
    # A trailing fragment without a newline is still being written.
    lines = content.split("\n")
    return lines[:-1]


def parse_loop_log(
    log_path: Path, since: int = 0, *, log_dir: Path | None = None
) -> tuple[list[ActivityEvent], int]:
    """Return events for complete lines after line *since*, plus the new cursor.

    When the file now has fewer lines than *since* it was truncated or
    rotated, so every line counts as new.
    """
    content = _read_log_text(log_path, log_dir=log_dir)
    if content is None:
        return ([], since)
    try:
        fallback_ms = int(log_path.stat().st_mtime * 1000)
    except OSError:
        fallback_ms = _now_ms()

    lines = _complete_lines(content)
    cursor = since if 0 <= since <= len(lines) else 0
    events: list[ActivityEvent] = []
    for raw_line in lines[cursor:]:
        if not raw_line.strip():
            continue
        event = classify_line(raw_line, fallback_ms=fallback_ms)
        if event is not None:
            events.append(event)
    return (events, len(lines))


class ActivityLogParser:
    """Incremental tail over one loop log with a monotonic line cursor."""

    def __init__(self, log_path: Path, *, log_dir: Path | None = None) -> None:
        self.log_path = log_path
        self.log_dir = log_dir
        self.cursor = 0

    def poll(self) -> list[ActivityEvent]:
        events, self.cursor = parse_loop_log(self.log_path, self.cursor, log_dir=self.log_dir)
        return events


class ActivityFeed:
    """Bounded event history; the oldest events are dropped past *limit*."""

    def __init__(self, limit: int = DEFAULT_ACTIVITY_HISTORY_LIMIT) -> None:
        self._events: deque[ActivityEvent] = deque(maxlen=max(1, limit))

    def extend(self, events: Iterable[ActivityEvent]) -> None:
        self._events.extend(events)

    def events(self) -> list[ActivityEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def phase_label(phase_id: str) -> str:
    return PHASE_LABELS.get(phase_id, phase_id)


def parse_phase_lines(text: str, *, log_dir: Path | None = None) -> list[PhaseInfo]:
    """Parse ``id|status|start_epoch_s|end_epoch_s`` lines into ``PhaseInfo``.

    Repeated ids aggregate their durations and keep the latest status.
    Unknown statuses are recorded as ``failed``.
    """
    order: list[str] = []
    statuses: dict[str, str] = {}
    durations: dict[str, int] = {}
    for raw_line in text.strip().splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split("|")
        if len(parts) < 4 or not parts[0].strip():
            _append_log(f"warning: skipping malformed phase line: {line}", log_dir=log_dir)
            continue
        phase_id, status, start_raw, end_raw = (part.strip() for part in parts[:4])
        if status not in PHASE_STATUSES:
            _append_log(
                f'warning: unknown phase status "{status}" for phase "{phase_id}", treating as failed',
                log_dir=log_dir,
            )
            status = "failed"
        try:
            start, end = int(start_raw), int(end_raw)
        except ValueError:
            start = end = 0
        if phase_id not in statuses:
            order.append(phase_id)
            durations[phase_id] = 0
        statuses[phase_id] = status
        if start > 0 and end > 0:
            durations[phase_id] += (end - start) * 1000
    return [
        PhaseInfo(
            id=phase_id,
            label=phase_label(phase_id),
            status=statuses[phase_id],
            duration_ms=durations[phase_id],
        )
        for phase_id in order
    ]


def phase_descriptor_text(path: Path, *, log_dir: Path | None = None) -> str | None:
    """Return the phases file as a JSON array of ``{id, label, status}``.

    JSON content passes through untouched; the loop's pipe-delimited lines are
    converted. Blank content is returned as-is so the detector treats it as a
    transient write.
    """
    content = _read_text_if_exists(path, log_dir=log_dir)
    if content is None or not content.strip() or content.lstrip().startswith(("[", "{")):
        return content
    phases = parse_phase_lines(content, log_dir=log_dir)
    return json.dumps([{"id": p.id, "label": p.label, "status": p.status} for p in phases])


def _valid_phase_entry(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and isinstance(item.get("id"), str)
        and isinstance(item.get("label"), str)
        and isinstance(item.get("status"), str)
    )


def detect_phase_changes(
    raw: str | None,
    previous: list[PhaseInfo] | None,
    *,
    now_ms: int | None = None,
    log_dir: Path | None = None,
) -> tuple[list[ActivityEvent], list[PhaseInfo] | None]:
    """Diff the phase descriptor *raw* against *previous*.

    Returns ``(events, snapshot)``. Missing, unparsable, or non-array content
    yields no events and hands back *previous* unchanged, since the loop may
    be mid-write.
    """
    if raw is None:
        return ([], previous)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        _append_log(f"debug: phase descriptor is not valid JSON: {exc}", log_dir=log_dir)
        return ([], previous)
    if not isinstance(parsed, list):
        _append_log(
            f"debug: phase descriptor must be an array, got {type(parsed).__name__}", log_dir=log_dir
        )
        return ([], previous)

    current = [
        PhaseInfo(id=item["id"], label=item["label"], status=item["status"])
        for item in parsed
        if _valid_phase_entry(item)
    ]
    known = {phase.id: phase for phase in previous or []}
    timestamp = now_ms if now_ms is not None else _now_ms()
    events: list[ActivityEvent] = []
    for phase in current:
        before = known.get(phase.id)
        if before is None:
            events.append(
                ActivityEvent(timestamp=timestamp, message=f"{phase.label} phase started", status="in-progress")
            )
        elif before.status != phase.status and phase.status in PHASE_TERMINAL_STATUSES:
            succeeded = phase.status == "success"
            events.append(
                ActivityEvent(
                    timestamp=timestamp,
                    message=f"{phase.label} phase {'completed' if succeeded else 'failed'}",
                    status="success" if succeeded else "error",
                )
            )
    return (events, current)
