"""Git and hosted-PR (``gh``) adapters used by the run summary.

Every call here is a black-box subprocess with a bounded timeout. Git helpers
return ``None`` on failure; ``gh`` helpers raise ``ExternalCommandError`` so
the summary builder can tell "no PR" apart from "could not ask".
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loopwatch.constants import ISSUE_REFERENCE_PATTERN
from loopwatch.models import ExternalCommandError, FileChange
from loopwatch.utils import _append_log, _compact_log_text, _run_command


@dataclass(frozen=True)
class PrInfo:
    number: int
    url: str
    state: str
    title: str
    body: str = ""


@dataclass(frozen=True)
class IssueInfo:
    number: int
    url: str | None = None
    state: str | None = None
    title: str | None = None


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


def _run_git(project_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    return _run_command(["git", "-C", str(project_root), *args])


def _git_failure_detail(result: subprocess.CompletedProcess[str]) -> str:
    return _compact_log_text((result.stderr or result.stdout or "unknown git error").strip())


def get_git_branch(project_root: Path, *, log_dir: Path | None = None) -> str:
    result = _run_git(project_root, ["branch", "--show-current"])
    if result.returncode != 0:
        _append_log(f"debug: git branch lookup failed: {_git_failure_detail(result)}", log_dir=log_dir)
        return "-"
    return result.stdout.strip() or "(detached HEAD)"


def get_current_commit_hash(project_root: Path, *, log_dir: Path | None = None) -> str | None:
    result = _run_git(project_root, ["rev-parse", "--short", "HEAD"])
    if result.returncode != 0:
        _append_log(f"warning: git rev-parse HEAD failed: {_git_failure_detail(result)}", log_dir=log_dir)
        return None
    return result.stdout.strip() or None


def _parse_numstat_count(value: str) -> int:
    # Binary files report "-" for both counts.
    if value == "-":
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


def get_diff_stats(
    project_root: Path, from_hash: str, to_hash: str, *, log_dir: Path | None = None
) -> list[FileChange] | None:
    result = _run_git(project_root, ["diff", "--numstat", f"{from_hash}..{to_hash}"])
    if result.returncode != 0:
        _append_log(f"warning: git diff --numstat failed: {_git_failure_detail(result)}", log_dir=log_dir)
        return None
    stats: list[FileChange] = []
    for raw_line in result.stdout.strip().splitlines():
        parts = raw_line.split("\t")
        if len(parts) != 3:
            continue
        added, removed, path = parts
        stats.append(
            FileChange(
                path=path,
                added=_parse_numstat_count(added),
                removed=_parse_numstat_count(removed),
            )
        )
    return stats


# ---------------------------------------------------------------------------
# gh
# ---------------------------------------------------------------------------


def _run_gh_json(project_root: Path, args: list[str]) -> Any:
    result = _run_command(["gh", *args], cwd=project_root)
    if result.returncode != 0:
        detail = _compact_log_text((result.stderr or result.stdout or "gh failed").strip())
        raise ExternalCommandError(f"gh {' '.join(args[:2])} failed: {detail}")
    output = result.stdout.strip()
    if not output:
        return None
    try:
        return json.loads(output)
    except json.JSONDecodeError as exc:
        raise ExternalCommandError(f"gh {' '.join(args[:2])} returned invalid JSON: {exc}") from exc


def get_pr_for_branch(project_root: Path, branch: str) -> PrInfo | None:
    """Return the most recent PR whose head is *branch*, or None when none exists."""
    payload = _run_gh_json(
        project_root,
        ["pr", "list", "--head", branch, "--json", "number,url,state,title,body", "--limit", "1"],
    )
    if not isinstance(payload, list) or not payload:
        return None
    entry = payload[0]
    if not isinstance(entry, dict) or not isinstance(entry.get("number"), int):
        raise ExternalCommandError("gh pr list returned an entry without a PR number")
    return PrInfo(
        number=entry["number"],
        url=str(entry.get("url", "")),
        state=str(entry.get("state", "")),
        title=str(entry.get("title", "")),
        body=str(entry.get("body") or ""),
    )


def find_issue_reference(body: str) -> int | None:
    """Return the issue number from the first ``closes/fixes/resolves #N`` in *body*."""
    match = ISSUE_REFERENCE_PATTERN.search(body or "")
    if match is None:
        return None
    return int(match.group(1))


def get_linked_issue(project_root: Path, pr: PrInfo, *, log_dir: Path | None = None) -> IssueInfo | None:
    issue_number = find_issue_reference(pr.body)
    if issue_number is None:
        return None

    try:
        issue = _run_gh_json(
            project_root,
            ["issue", "view", str(issue_number), "--json", "number,url,state,title"],
        )
    except ExternalCommandError as exc:
        # The reference itself is authoritative; details are best-effort.
        _append_log(f"debug: gh issue view #{issue_number} failed: {exc}", log_dir=log_dir)
        return IssueInfo(number=issue_number)
    if not isinstance(issue, dict):
        return IssueInfo(number=issue_number)
    return IssueInfo(
        number=issue_number,
        url=issue.get("url"),
        state=issue.get("state"),
        title=issue.get("title"),
    )
