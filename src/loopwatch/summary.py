"""Run summary: combine final loop state with git and PR metadata."""

from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path
from typing import Any

from loopwatch.activity import parse_phase_lines
from loopwatch.constants import (
    BASELINE_COMMIT_PATTERN,
    BASELINE_SUFFIX,
    IMPLEMENTATION_PHASE_ID,
    PHASES_SUFFIX,
    SHORT_HASH_LENGTH,
    SUMMARY_SUFFIX,
    SUMMARY_TMP_DIR_ENV,
)
from loopwatch.models import (
    ChangesSummary,
    CommitsSummary,
    ExternalCommandError,
    IssueSummary,
    IterationBreakdown,
    PhaseInfo,
    PrSummary,
    RunSummary,
    TaskSummary,
)
from loopwatch import vcs
from loopwatch.utils import (
    _append_log,
    _loop_file_path,
    _loop_tmp_dir,
    _read_text_if_exists,
    _validate_feature_name,
    _write_json_atomic,
)

_NO_BRANCH_MARKERS = {"", "-", "(detached HEAD)"}


def read_phases(path: Path, *, log_dir: Path | None = None) -> list[PhaseInfo]:
    content = _read_text_if_exists(path, log_dir=log_dir)
    if not content or not content.strip():
        return []
    return parse_phase_lines(content, log_dir=log_dir)


def read_baseline_commit(path: Path, *, log_dir: Path | None = None) -> str | None:
    content = _read_text_if_exists(path, log_dir=log_dir)
    if content is None:
        return None
    candidate = content.strip()
    if not BASELINE_COMMIT_PATTERN.fullmatch(candidate):
        _append_log(
            f'warning: baseline file {path} contains invalid content: "{candidate[:20]}"',
            log_dir=log_dir,
        )
        return None
    return candidate[:SHORT_HASH_LENGTH]


def _summarize_git(
    project_root: Path, baseline: str | None, *, log_dir: Path | None = None
) -> tuple[ChangesSummary, CommitsSummary]:
    unavailable = (ChangesSummary(available=False), CommitsSummary(available=False))
    if baseline is None:
        return unavailable
    current = vcs.get_current_commit_hash(project_root, log_dir=log_dir)
    if current is None:
        return unavailable
    stats = vcs.get_diff_stats(project_root, baseline, current, log_dir=log_dir)
    if stats is None:
        return unavailable
    return (
        ChangesSummary(available=True, total_files_changed=len(stats), files=tuple(stats)),
        CommitsSummary(available=True, from_hash=baseline, to_hash=current, merge_type="none"),
    )


def _summarize_pr(
    project_root: Path, branch: str | None, *, log_dir: Path | None = None
) -> tuple[PrSummary, IssueSummary]:
    pr_summary = PrSummary(available=False, created=False)
    issue_summary = IssueSummary(available=False, linked=False)
    if branch is None or branch.strip() in _NO_BRANCH_MARKERS:
        return (pr_summary, issue_summary)
    try:
        pr = vcs.get_pr_for_branch(project_root, branch)
    except (ExternalCommandError, OSError, ValueError) as exc:
        _append_log(f"warning: gh CLI query failed: {exc}", log_dir=log_dir)
        return (pr_summary, issue_summary)
    if pr is None:
        return (PrSummary(available=True, created=False), IssueSummary(available=True, linked=False))

    pr_summary = PrSummary(available=True, created=True, number=pr.number, url=pr.url)
    try:
        issue = vcs.get_linked_issue(project_root, pr, log_dir=log_dir)
    except (ExternalCommandError, OSError, ValueError) as exc:
        _append_log(f"warning: gh linked-issue lookup failed: {exc}", log_dir=log_dir)
        return (pr_summary, issue_summary)
    if issue is None:
        return (pr_summary, IssueSummary(available=True, linked=False))
    return (
        pr_summary,
        IssueSummary(
            available=True,
            linked=True,
            number=issue.number,
            url=issue.url,
            status=issue.state,
        ),
    )


def build_enhanced_run_summary(
    basic: RunSummary,
    project_root: Path,
    feature: str,
    *,
    tmp_dir: Path | None = None,
) -> RunSummary:
    """Return *basic* enriched with phases, git changes, and PR/issue data.

    Each enrichment is independent and best-effort: a missing file or failing
    command leaves that section ``available=False``. Nothing is retried.
    """
    _validate_feature_name(feature)
    phases = read_phases(_loop_file_path(feature, PHASES_SUFFIX, tmp_dir=tmp_dir), log_dir=tmp_dir)
    phases = [
        dataclasses.replace(phase, iterations=basic.iterations)
        if phase.id == IMPLEMENTATION_PHASE_ID
        else phase
        for phase in phases
    ]
    total_ms = sum(phase.duration_ms or 0 for phase in phases)
    implementation = next((p for p in phases if p.id == IMPLEMENTATION_PHASE_ID), None)

    baseline = read_baseline_commit(
        _loop_file_path(feature, BASELINE_SUFFIX, tmp_dir=tmp_dir), log_dir=tmp_dir
    )
    changes, commits = _summarize_git(project_root, baseline, log_dir=tmp_dir)
    pr, issue = _summarize_pr(project_root, basic.branch, log_dir=tmp_dir)

    return dataclasses.replace(
        basic,
        total_duration_ms=total_ms if total_ms > 0 else None,
        iteration_breakdown=IterationBreakdown(
            total=basic.iterations,
            implementation=implementation.iterations if implementation else None,
        ),
        tasks=TaskSummary(completed=basic.tasks_done, total=basic.tasks_total),
        phases=tuple(phases),
        changes=changes,
        commits=commits,
        pr=pr,
        issue=issue,
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _drop_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _drop_none(item) for key, item in value.items() if item is not None}
    if isinstance(value, (list, tuple)):
        return [_drop_none(item) for item in value]
    return value


def summary_payload(summary: RunSummary) -> dict[str, Any]:
    return _drop_none(dataclasses.asdict(summary))


def summary_file_path(feature: str, *, summary_dir: Path | None = None) -> Path:
    if summary_dir is None:
        override = os.environ.get(SUMMARY_TMP_DIR_ENV, "").strip()
        summary_dir = Path(override) if override else _loop_tmp_dir()
    return _loop_file_path(feature, SUMMARY_SUFFIX, tmp_dir=summary_dir)


def write_run_summary_file(
    feature: str, summary: RunSummary, *, summary_dir: Path | None = None
) -> Path:
    path = summary_file_path(feature, summary_dir=summary_dir)
    _write_json_atomic(path, summary_payload(summary))
    _append_log(f"debug: summary written to {path}", log_dir=summary_dir)
    return path


def load_run_summary_file(feature: str, *, summary_dir: Path | None = None) -> dict[str, Any] | None:
    path = summary_file_path(feature, summary_dir=summary_dir)
    raw = _read_text_if_exists(path, log_dir=summary_dir)
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        _append_log(f"warning: summary file {path} is not valid JSON: {exc}", log_dir=summary_dir)
        return None
    return payload if isinstance(payload, dict) else None
