"""Loopwatch constants: loop file conventions, defaults, and patterns."""

from __future__ import annotations

import re

# Every per-feature file the loop script writes lives in one shared directory
# and is named ``ralph-loop-<feature>.<suffix>``.
LOOP_FILE_PREFIX = "ralph-loop"
DEFAULT_LOOP_TMP_DIR = "/tmp"
LOOP_TMP_DIR_ENV = "LOOPWATCH_TMP_DIR"
SUMMARY_TMP_DIR_ENV = "RALPH_SUMMARY_TMP_DIR"
SUPERVISOR_LOG_FILENAME = "loopwatch.log"

STATUS_SUFFIX = "status"
FINAL_STATUS_SUFFIX = "final"
TOKENS_SUFFIX = "tokens"
PHASES_SUFFIX = "phases"
BASELINE_SUFFIX = "baseline"
LOG_SUFFIX = "log"
ACTION_REQUEST_SUFFIX = "action.json"
ACTION_REPLY_SUFFIX = "action.reply.json"
SUMMARY_SUFFIX = "summary.json"

FEATURE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
BASELINE_COMMIT_PATTERN = re.compile(r"^[0-9a-f]{7,40}$", re.IGNORECASE)
SHORT_HASH_LENGTH = 7

LOOP_SCRIPT_NAME = "feature-loop.sh"
CONFIG_FILENAME = "ralph.config.yaml"

DEFAULT_CONFIG_ROOT = ".ralph"
DEFAULT_SPECS_DIR = ".ralph/specs"
DEFAULT_SCRIPTS_DIR = ".ralph/scripts"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_E2E_ATTEMPTS = 5
REVIEW_MODES = ("manual", "auto", "merge")
DEFAULT_REVIEW_MODE = "manual"

DEFAULT_POLL_INTERVAL_SECONDS = 2.5
DEFAULT_BACKGROUND_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_BACKGROUND_FAILURE_THRESHOLD = 3
DEFAULT_ACTIVITY_HISTORY_LIMIT = 200
DEFAULT_ERROR_TAIL_LINES = 12
EXTERNAL_COMMAND_TIMEOUT_SECONDS = 10

# Ordered: the first running prompt file decides the phase label.
PHASE_PROMPT_PROBES: tuple[tuple[str, str], ...] = (
    ("PROMPT_feature.md", "Planning"),
    ("PROMPT_e2e.md", "E2E Testing"),
    ("PROMPT_verify.md", "Verification"),
    ("PROMPT_review_manual.md", "PR Review"),
    ("PROMPT_review_auto.md", "PR Review"),
    ("PROMPT.md", "Implementation"),
)

PHASE_LABELS: dict[str, str] = {
    "planning": "Planning",
    "implementation": "Implementation",
    "e2e_testing": "E2E Testing",
    "verification": "Verification",
    "pr_review": "PR & Review",
}
PHASE_STATUSES = frozenset({"success", "skipped", "failed"})
PHASE_TERMINAL_STATUSES = frozenset({"success", "failed"})
IMPLEMENTATION_PHASE_ID = "implementation"

ISSUE_REFERENCE_PATTERN = re.compile(r"(?:closes|fixes|resolves)\s+#(\d+)", re.IGNORECASE)
