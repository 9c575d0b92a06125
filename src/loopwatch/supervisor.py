"""Loop process supervisor: spawn or attach, poll, and summarize one loop run.

Lifecycle is a small state machine driven by tagged events::

    starting --Spawned--> running --StopRequested--> stopping
    running/stopping --ProcessClosed--> completed
    starting --SpawnFailed--> errored

``dispatch`` is the only place state changes, and it runs under a lock, so a
stop request from another thread is serialized with poll ticks.
"""

from __future__ import annotations

import dataclasses
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Union

from loopwatch.activity import (
    ActivityFeed,
    ActivityLogParser,
    detect_phase_changes,
    phase_descriptor_text,
)
from loopwatch.config import load_config_with_defaults
from loopwatch.constants import LOG_SUFFIX, LOOP_SCRIPT_NAME, PHASES_SUFFIX
from loopwatch.inbox import ActionInbox, FileActionTransport
from loopwatch.models import (
    ActionReply,
    ActionRequest,
    ActivityEvent,
    LoopStatus,
    LoopwatchConfig,
    NotFoundError,
    PhaseInfo,
    RunSummary,
    SpawnError,
    TaskCounts,
)
from loopwatch.status import StatusPoller, loop_process_pattern, read_task_counts
from loopwatch.summary import build_enhanced_run_summary, write_run_summary_file
from loopwatch.utils import (
    _append_log,
    _describe_exc,
    _loop_file_path,
    _tail_lines,
    _validate_feature_name,
)
from loopwatch.vcs import get_git_branch

STARTING = "starting"
RUNNING = "running"
STOPPING = "stopping"
COMPLETED = "completed"
ERRORED = "errored"
TERMINAL_STATES = frozenset({COMPLETED, ERRORED})

FOREGROUND = "foreground"
MONITOR = "monitor"


@dataclass(frozen=True)
class Spawned:
    pid: int | None = None


@dataclass(frozen=True)
class SpawnFailed:
    error: str


@dataclass(frozen=True)
class PollTick:
    pass


@dataclass(frozen=True)
class ProcessClosed:
    code: int | None
    # Filled in by tick() outside the lock; see _collect_completion.
    status: LoopStatus | None = None
    tasks: TaskCounts | None = None
    summary: RunSummary | None = None


@dataclass(frozen=True)
class StopRequested:
    pass


SupervisorEvent = Union[Spawned, SpawnFailed, PollTick, ProcessClosed, StopRequested]


def find_loop_script(project_root: Path, scripts_dir: str) -> Path | None:
    candidates = (
        project_root / scripts_dir / LOOP_SCRIPT_NAME,
        project_root.parent / "ralph" / LOOP_SCRIPT_NAME,
        project_root / LOOP_SCRIPT_NAME,
    )
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def find_spec_file(project_root: Path, feature: str, specs_dir: str) -> Path | None:
    candidates = (
        project_root / specs_dir / f"{feature}.md",
        project_root / ".ralph" / "specs" / f"{feature}.md",
        project_root / "specs" / f"{feature}.md",
    )
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def _normalize_exit_code(code: int | None) -> int:
    if code is None:
        return 1
    # Popen reports death-by-signal as -N; use the shell's 128+N convention.
    if code < 0:
        return 128 + abs(code)
    return code


class LoopProcessSupervisor:
    def __init__(
        self,
        project_root: Path,
        *,
        config: LoopwatchConfig | None = None,
        tmp_dir: Path | None = None,
        summary_dir: Path | None = None,
        poller: StatusPoller | None = None,
        inbox: ActionInbox | None = None,
        popen: Callable[..., Any] = subprocess.Popen,
        on_action: Callable[[ActionRequest], None] | None = None,
        on_activity: Callable[[list[ActivityEvent]], None] | None = None,
        on_complete: Callable[[RunSummary], None] | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.config = config or load_config_with_defaults(self.project_root)
        self.tmp_dir = tmp_dir
        self.summary_dir = summary_dir
        self.poller = poller or StatusPoller(tmp_dir=tmp_dir)
        self.inbox = inbox or ActionInbox(FileActionTransport(tmp_dir))
        self._popen = popen
        self.on_action = on_action
        self.on_activity = on_activity
        self.on_complete = on_complete

        self.state = STARTING
        self.mode: str | None = None
        self.feature: str | None = None
        self.process: Any = None
        self.error: str | None = None
        self.summary: RunSummary | None = None
        self.status = LoopStatus()
        self.tasks = TaskCounts()
        self.phases: list[PhaseInfo] | None = None
        self.pending_action: ActionRequest | None = None
        self.feed = ActivityFeed(self.config.supervisor.activity_history_limit)
        self.backgrounded = False

        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._alive = True
        self._stop_requested = False
        self._exited_code: int | None = None
        self._log_handle: IO[str] | None = None
        self._log_parser: ActivityLogParser | None = None

    # -- paths -------------------------------------------------------------

    @property
    def log_path(self) -> Path:
        assert self.feature is not None
        return _loop_file_path(self.feature, LOG_SUFFIX, tmp_dir=self.tmp_dir)

    @property
    def alive(self) -> bool:
        return self._alive

    def _log(self, message: str) -> None:
        _append_log(message, log_dir=self.tmp_dir)

    # -- entry points ------------------------------------------------------

    def start(self, feature: str) -> None:
        """Spawn the loop for *feature* in foreground mode.

        Raises ``InvalidInputError`` for a bad feature name, ``NotFoundError``
        when the spec document or loop script is missing, and ``SpawnError``
        when the process cannot be started.
        """
        self.feature = _validate_feature_name(feature)
        self.mode = FOREGROUND
        paths = self.config.paths
        loop = self.config.loop

        spec_file = find_spec_file(self.project_root, feature, paths.specs)
        if spec_file is None:
            raise NotFoundError(f'Spec file not found for "{feature}". Create the spec first.')
        script_path = find_loop_script(self.project_root, paths.scripts)
        if script_path is None:
            raise NotFoundError(f"{LOOP_SCRIPT_NAME} script not found. Generate the loop scripts first.")

        log_path = self.log_path
        self._log_parser = ActivityLogParser(log_path, log_dir=self.tmp_dir)

        argv = [
            "bash",
            str(script_path),
            feature,
            str(loop.max_iterations),
            str(loop.max_e2e_attempts),
            "--review-mode",
            loop.review_mode,
        ]
        env = os.environ.copy()
        env["RALPH_CONFIG_ROOT"] = paths.root
        env["RALPH_SPEC_DIR"] = paths.specs
        env["RALPH_SCRIPTS_DIR"] = paths.scripts

        self._log(f"supervisor spawn feature={feature} spec={spec_file} argv={argv} log={log_path}")
        try:
            self.inbox.cleanup_action_files(feature)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_handle = log_path.open("a", encoding="utf-8")
            self.process = self._popen(
                argv,
                cwd=str(script_path.parent),
                stdin=subprocess.DEVNULL,
                stdout=self._log_handle,
                stderr=subprocess.STDOUT,
                env=env,
            )
        except OSError as exc:
            self._close_log_handle()
            self.dispatch(SpawnFailed(error=_describe_exc(exc)))
            raise SpawnError(f"Failed to start feature loop: {exc}") from exc
        self.dispatch(Spawned(pid=getattr(self.process, "pid", None)))

    def attach(self, feature: str) -> None:
        """Monitor files left by a loop that this supervisor did not spawn."""
        self.feature = _validate_feature_name(feature)
        self.mode = MONITOR
        self._log_parser = ActivityLogParser(self.log_path, log_dir=self.tmp_dir)
        self._log(f"supervisor attach feature={feature}")
        self.dispatch(Spawned(pid=None))

    # -- state machine -----------------------------------------------------

    def dispatch(self, event: SupervisorEvent) -> str:
        with self._lock:
            if self.state in TERMINAL_STATES:
                return self.state
            self._transition(event)
            return self.state

    def _transition(self, event: SupervisorEvent) -> None:
        if isinstance(event, Spawned):
            if self.state != STARTING:
                return
            self.state = RUNNING
            if self._stop_requested:
                self._send_interrupt()
                self.state = STOPPING
        elif isinstance(event, SpawnFailed):
            self.error = event.error
            self.state = ERRORED
            self._log(f"supervisor spawn failed feature={self.feature}: {event.error}")
        elif isinstance(event, StopRequested):
            if self.state == RUNNING:
                self.state = STOPPING
        elif isinstance(event, PollTick):
            if self.state in (RUNNING, STOPPING):
                self._poll()
        elif isinstance(event, ProcessClosed):
            if self.state in (RUNNING, STOPPING):
                self._complete(event)

    # -- polling -----------------------------------------------------------

    def _safe(self, label: str, func: Callable[[], Any], default: Any) -> Any:
        try:
            return func()
        except OSError as exc:
            self._log(f"warning: poll {label} failed feature={self.feature}: {_describe_exc(exc)}")
            return default

    def _read_tasks(self, feature: str) -> TaskCounts:
        return read_task_counts(self.project_root, feature, self.config.paths.specs, log_dir=self.tmp_dir)

    def _poll(self) -> None:
        feature = self.feature
        assert feature is not None and self._log_parser is not None
        status = self._safe("status", lambda: self.poller.read_status(feature), self.status)
        tasks = self._safe("tasks", lambda: self._read_tasks(feature), self.tasks)
        log_events = self._safe("log", self._log_parser.poll, [])
        phase_events, phases = self._safe(
            "phases",
            lambda: detect_phase_changes(
                phase_descriptor_text(
                    _loop_file_path(feature, PHASES_SUFFIX, tmp_dir=self.tmp_dir), log_dir=self.tmp_dir
                ),
                self.phases,
                log_dir=self.tmp_dir,
            ),
            ([], self.phases),
        )
        request = self._safe("action", lambda: self.inbox.pending_request(feature), None)

        if self.mode == FOREGROUND and self.process is not None and self.process.poll() is None:
            if not status.running:
                status = dataclasses.replace(
                    status, running=True, phase="Running" if status.phase == "Idle" else status.phase
                )
        self.status = status
        self.tasks = tasks
        self.phases = phases
        new_events = [*log_events, *phase_events]
        if new_events:
            self.feed.extend(new_events)
            if self.on_activity is not None:
                self.on_activity(new_events)
        self._surface_action(request)

        # A monitored loop has no exit code; its disappearance is a clean exit.
        if self.mode == MONITOR and not status.running:
            self._exited_code = 0

    def _surface_action(self, request: ActionRequest | None) -> None:
        if request is None:
            self.pending_action = None
            return
        if self.pending_action is not None and self.pending_action.id == request.id:
            return
        self.pending_action = request
        if self.on_action is not None:
            self.on_action(request)

    def tick(self) -> str:
        """Run one poll cycle, or deliver the close if the loop has exited.

        The summary for a closed run is collected without holding the lock,
        so ``request_stop`` and ``answer_action`` stay responsive while git
        and ``gh`` run.
        """
        with self._lock:
            if self.state in TERMINAL_STATES or not self._alive:
                return self.state
            code = self.process.poll() if self.process is not None else None
            if code is None:
                self.dispatch(PollTick())
                code = self._exited_code
                if code is None or self.state in TERMINAL_STATES:
                    return self.state
            self._close_log_handle()
        return self.dispatch(self._collect_completion(code))

    def run(self) -> RunSummary | None:
        """Tick on the configured cadence until the run ends or is released."""
        interval = self.config.supervisor.poll_interval_seconds
        while self._alive and not self.backgrounded:
            if self.tick() in TERMINAL_STATES:
                break
            if self._wake.wait(interval):
                self._wake.clear()
        return self.summary

    # -- actions -----------------------------------------------------------

    def answer_action(self, choice: str) -> ActionReply | None:
        with self._lock:
            request = self.pending_action
            if request is None or self.feature is None:
                return None
            reply = self.inbox.answer(self.feature, request, choice)
            self.pending_action = None
            return reply

    def cancel_action(self) -> ActionReply | None:
        """Answer the pending request with its stated default."""
        with self._lock:
            request = self.pending_action
            if request is None or self.feature is None:
                return None
            reply = self.inbox.cancel(self.feature, request)
            self.pending_action = None
            return reply

    # -- control -----------------------------------------------------------

    def _send_interrupt(self) -> None:
        if self.process is not None:
            if self.process.poll() is None:
                try:
                    self.process.send_signal(signal.SIGINT)
                except OSError as exc:
                    self._log(f"warning: interrupt failed feature={self.feature}: {_describe_exc(exc)}")
        elif self.mode == MONITOR and self.feature is not None:
            if not self.poller.probe.interrupt(loop_process_pattern(self.feature)):
                self._log(f"warning: no loop process matched for interrupt feature={self.feature}")

    def request_stop(self) -> None:
        """Ask the loop to stop; termination is observed on a later tick."""
        with self._lock:
            if self.state in TERMINAL_STATES or self._stop_requested:
                return
            self._stop_requested = True
            self._log(f"supervisor stop requested feature={self.feature} mode={self.mode}")
            if self.state != STARTING:
                self._send_interrupt()
            self.dispatch(StopRequested())

    def background(self) -> str | None:
        """Stop polling without stopping the loop; return the feature to hand off."""
        with self._lock:
            self.backgrounded = True
            self._alive = False
            self._wake.set()
            self._close_log_handle()
            self._log(f"supervisor backgrounded feature={self.feature}")
            return self.feature

    def close(self) -> None:
        with self._lock:
            self._alive = False
            self._wake.set()
            self._close_log_handle()

    def _close_log_handle(self) -> None:
        if self._log_handle is not None:
            try:
                self._log_handle.close()
            except OSError:
                pass
            self._log_handle = None

    # -- completion --------------------------------------------------------

    def _collect_completion(self, code: int | None) -> ProcessClosed:
        """Read final state, build and persist the summary for exit *code*."""
        feature = self.feature
        assert feature is not None
        exit_code = _normalize_exit_code(code)
        status = self._safe("final status", lambda: self.poller.read_status(feature), self.status)
        tasks = self._safe("final tasks", lambda: self._read_tasks(feature), self.tasks)
        error_tail = None
        if exit_code != 0:
            error_tail = _tail_lines(
                self.log_path, self.config.supervisor.error_tail_lines, log_dir=self.tmp_dir
            )

        basic = RunSummary(
            feature=feature,
            iterations=status.iteration,
            max_iterations=status.max_iterations or self.config.loop.max_iterations,
            tasks_done=tasks.done,
            tasks_total=tasks.total,
            tokens_input=status.tokens_input,
            tokens_output=status.tokens_output,
            cache_create=status.cache_create,
            cache_read=status.cache_read,
            exit_code=exit_code,
            branch=get_git_branch(self.project_root, log_dir=self.tmp_dir),
            log_path=str(self.log_path),
            error_tail=error_tail,
        )
        summary = build_enhanced_run_summary(basic, self.project_root, feature, tmp_dir=self.tmp_dir)
        try:
            write_run_summary_file(feature, summary, summary_dir=self.summary_dir)
        except OSError as exc:
            self._log(f"warning: summary persist failed feature={feature}: {_describe_exc(exc)}")
        return ProcessClosed(code=code, status=status, tasks=tasks, summary=summary)

    def _complete(self, event: ProcessClosed) -> None:
        if event.summary is None:
            self._close_log_handle()
            event = self._collect_completion(event.code)
        assert event.summary is not None and event.status is not None and event.tasks is not None
        self.status = event.status
        self.tasks = event.tasks
        self.summary = event.summary
        self.state = COMPLETED
        self._log(f"supervisor completed feature={self.feature} exit_code={event.summary.exit_code}")
        if self._alive and self.on_complete is not None:
            self.on_complete(event.summary)
