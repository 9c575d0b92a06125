from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from loopwatch import vcs
from loopwatch.models import (
    ChangesSummary,
    CommitsSummary,
    FileChange,
    IssueSummary,
    PhaseInfo,
    PrSummary,
    RunSummary,
)
from loopwatch.summary import (
    build_enhanced_run_summary,
    load_run_summary_file,
    read_baseline_commit,
    summary_file_path,
    summary_payload,
    write_run_summary_file,
)


class _FakeCommands:
    """Answers git/gh argv by matching the first tokens after the program name."""

    def __init__(self) -> None:
        self.responses: dict[tuple[str, ...], subprocess.CompletedProcess[str]] = {}
        self.calls: list[list[str]] = []

    def set(self, key: tuple[str, ...], returncode: int = 0, stdout: Any = "", stderr: str = "") -> None:
        text = stdout if isinstance(stdout, str) else json.dumps(stdout)
        self.responses[key] = subprocess.CompletedProcess(list(key), returncode, text, stderr)

    def __call__(self, argv: list[str], **_kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        tokens = argv[3:] if argv[0] == "git" else argv[1:]
        key = (argv[0], *tokens[:2])
        if key in self.responses:
            return self.responses[key]
        return subprocess.CompletedProcess(argv, 127, "", f"{argv[0]} not found")


@pytest.fixture
def commands(monkeypatch: pytest.MonkeyPatch) -> _FakeCommands:
    fake = _FakeCommands()
    monkeypatch.setattr(vcs, "_run_command", fake)
    return fake


def _basic(branch: str | None = "feature/demo", **overrides: Any) -> RunSummary:
    values: dict[str, Any] = dict(
        feature="demo",
        iterations=4,
        max_iterations=10,
        tasks_done=3,
        tasks_total=5,
        tokens_input=277,
        tokens_output=2105,
        exit_code=0,
        branch=branch,
    )
    values.update(overrides)
    return RunSummary(**values)


def test_no_files_and_failing_gh_leave_everything_unavailable(tmp_path: Path, commands: _FakeCommands) -> None:
    commands.set(("gh", "pr", "list"), returncode=1, stderr="not logged in")

    summary = build_enhanced_run_summary(_basic(), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.phases == ()
    assert summary.total_duration_ms is None
    assert summary.changes == ChangesSummary(available=False)
    assert summary.commits == CommitsSummary(available=False)
    assert summary.pr == PrSummary(available=False, created=False)
    assert summary.issue == IssueSummary(available=False, linked=False)
    assert summary.iteration_breakdown is not None
    assert summary.iteration_breakdown.total == 4
    assert summary.iteration_breakdown.implementation is None
    assert summary.tasks is not None and (summary.tasks.completed, summary.tasks.total) == (3, 5)


def test_phases_durations_and_implementation_iterations(tmp_path: Path, commands: _FakeCommands) -> None:
    (tmp_path / "ralph-loop-demo.phases").write_text(
        "planning|success|100|130\nimplementation|success|130|430\npr_review|skipped|0|0\n",
        encoding="utf-8",
    )

    summary = build_enhanced_run_summary(_basic(branch=None), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.phases == (
        PhaseInfo(id="planning", label="Planning", status="success", duration_ms=30_000),
        PhaseInfo(id="implementation", label="Implementation", status="success", duration_ms=300_000, iterations=4),
        PhaseInfo(id="pr_review", label="PR & Review", status="skipped", duration_ms=0),
    )
    assert summary.total_duration_ms == 330_000
    assert summary.iteration_breakdown is not None
    assert summary.iteration_breakdown.implementation == 4
    assert commands.calls == []


def test_git_changes_between_baseline_and_head(tmp_path: Path, commands: _FakeCommands) -> None:
    (tmp_path / "ralph-loop-demo.baseline").write_text("0123456789abcdef0123456789abcdef01234567\n", encoding="utf-8")
    commands.set(("git", "rev-parse", "--short"), stdout="fedcba9\n")
    commands.set(("git", "diff", "--numstat"), stdout="10\t2\tsrc/app.py\n-\t-\tassets/logo.png\n")

    summary = build_enhanced_run_summary(_basic(branch="-"), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.commits == CommitsSummary(available=True, from_hash="0123456", to_hash="fedcba9", merge_type="none")
    assert summary.changes == ChangesSummary(
        available=True,
        total_files_changed=2,
        files=(FileChange("src/app.py", 10, 2), FileChange("assets/logo.png", 0, 0)),
    )
    assert ["git", "-C", str(tmp_path), "diff", "--numstat", "0123456..fedcba9"] in commands.calls


def test_git_failure_marks_changes_unavailable(tmp_path: Path, commands: _FakeCommands) -> None:
    (tmp_path / "ralph-loop-demo.baseline").write_text("abc1234", encoding="utf-8")
    commands.set(("git", "rev-parse", "--short"), stdout="fedcba9\n")
    commands.set(("git", "diff", "--numstat"), returncode=128, stderr="bad revision")

    summary = build_enhanced_run_summary(_basic(branch=None), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.changes.available is False
    assert summary.commits.available is False


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        ("abc1234", "abc1234"),
        ("ABCDEF0123456789\n", "ABCDEF0"),
        ("abc12", None),
        ("not-a-hash", None),
        ("abc1234; rm -rf /", None),
    ],
)
def test_read_baseline_commit_validates_content(tmp_path: Path, content: str, expected: str | None) -> None:
    path = tmp_path / "ralph-loop-demo.baseline"
    path.write_text(content, encoding="utf-8")
    assert read_baseline_commit(path, log_dir=tmp_path) == expected


def test_read_baseline_commit_missing_file(tmp_path: Path) -> None:
    assert read_baseline_commit(tmp_path / "missing.baseline") is None


def test_linked_issue_from_closing_keyword(tmp_path: Path, commands: _FakeCommands) -> None:
    commands.set(
        ("gh", "pr", "list"),
        stdout=[
            {
                "number": 42,
                "url": "https://example.test/pr/42",
                "state": "OPEN",
                "title": "Demo",
                "body": "Adds the demo.\n\nCloses #123",
            }
        ],
    )
    commands.set(
        ("gh", "issue", "view"),
        stdout={"number": 123, "url": "https://example.test/issues/123", "state": "OPEN", "title": "Demo"},
    )

    summary = build_enhanced_run_summary(_basic(), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.pr == PrSummary(available=True, created=True, number=42, url="https://example.test/pr/42")
    assert summary.issue == IssueSummary(
        available=True, linked=True, number=123, url="https://example.test/issues/123", status="OPEN"
    )
    pr_list = next(call for call in commands.calls if call[:3] == ["gh", "pr", "list"])
    assert "number,url,state,title,body" in pr_list
    assert not any(call[:3] == ["gh", "pr", "view"] for call in commands.calls)


def test_pr_without_closing_keyword_is_not_linked(tmp_path: Path, commands: _FakeCommands) -> None:
    commands.set(
        ("gh", "pr", "list"),
        stdout=[{"number": 7, "url": "u", "state": "OPEN", "title": "t", "body": "Related to #123 but does not close it"}],
    )

    summary = build_enhanced_run_summary(_basic(), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.pr.created is True
    assert summary.issue == IssueSummary(available=True, linked=False)


def test_issue_view_failure_keeps_issue_number(tmp_path: Path, commands: _FakeCommands) -> None:
    commands.set(
        ("gh", "pr", "list"), stdout=[{"number": 7, "url": "u", "state": "OPEN", "title": "t", "body": "fixes #9"}]
    )
    commands.set(("gh", "issue", "view"), returncode=1, stderr="not found")

    summary = build_enhanced_run_summary(_basic(), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.issue == IssueSummary(available=True, linked=True, number=9)


def test_branch_without_pr(tmp_path: Path, commands: _FakeCommands) -> None:
    commands.set(("gh", "pr", "list"), stdout="[]")

    summary = build_enhanced_run_summary(_basic(), tmp_path, "demo", tmp_dir=tmp_path)

    assert summary.pr == PrSummary(available=True, created=False)
    assert summary.issue == IssueSummary(available=True, linked=False)


@pytest.mark.parametrize("branch", [None, "-", "(detached HEAD)", "  "])
def test_missing_branch_skips_pr_lookup(tmp_path: Path, commands: _FakeCommands, branch: str | None) -> None:
    summary = build_enhanced_run_summary(_basic(branch=branch), tmp_path, "demo", tmp_dir=tmp_path)
    assert summary.pr.available is False
    assert summary.issue.available is False
    assert not any(call[0] == "gh" for call in commands.calls)


def test_find_issue_reference() -> None:
    assert vcs.find_issue_reference("Resolves #5 and fixes #6") == 5
    assert vcs.find_issue_reference("see #5") is None
    assert vcs.find_issue_reference("") is None


def test_summary_payload_drops_missing_values() -> None:
    payload = summary_payload(_basic(branch=None))
    assert "branch" not in payload
    assert "error_tail" not in payload
    assert payload["pr"] == {"available": False, "created": False}
    assert payload["phases"] == []


def test_write_and_load_summary_file(tmp_path: Path) -> None:
    path = write_run_summary_file("demo", _basic(), summary_dir=tmp_path)

    assert path == tmp_path / "ralph-loop-demo.summary.json"
    loaded = load_run_summary_file("demo", summary_dir=tmp_path)
    assert loaded is not None
    assert loaded["feature"] == "demo"
    assert loaded["tokens_input"] == 277


def test_summary_dir_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    override = tmp_path / "summaries"
    monkeypatch.setenv("RALPH_SUMMARY_TMP_DIR", str(override))
    assert summary_file_path("demo") == override / "ralph-loop-demo.summary.json"


def test_load_summary_file_invalid_json(tmp_path: Path) -> None:
    (tmp_path / "ralph-loop-demo.summary.json").write_text("{", encoding="utf-8")
    assert load_run_summary_file("demo", summary_dir=tmp_path) is None


def test_lookup_warnings_go_to_the_loop_directory(tmp_path: Path, commands: _FakeCommands) -> None:
    loop_dir = tmp_path / "loop"
    loop_dir.mkdir()
    (loop_dir / "ralph-loop-demo.baseline").write_text("abc1234", encoding="utf-8")
    commands.set(("gh", "pr", "list"), returncode=1, stderr="not logged in")

    build_enhanced_run_summary(_basic(), tmp_path, "demo", tmp_dir=loop_dir)

    log_text = (loop_dir / "loopwatch.log").read_text(encoding="utf-8")
    assert "git rev-parse HEAD failed" in log_text
    assert "gh CLI query failed" in log_text
    assert not (tmp_path / "loopwatch.log").exists()
