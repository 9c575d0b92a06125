"""Background run registry: keep polling loops whose foreground view is gone."""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from loopwatch.constants import (
    DEFAULT_BACKGROUND_FAILURE_THRESHOLD,
    DEFAULT_BACKGROUND_POLL_INTERVAL_SECONDS,
    LOG_SUFFIX,
)
from loopwatch.models import BackgroundRun, LoopStatus, LoopwatchError
from loopwatch.status import StatusPoller
from loopwatch.utils import _append_log, _describe_exc, _loop_file_path, _validate_feature_name


class PollTimer:
    """Repeating timer on a daemon thread; ``cancel`` stops it before the next tick."""

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            self.callback()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stopped.set()

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()


TimerFactory = Callable[[float, Callable[[], None]], Any]


@dataclass
class _Tracked:
    run: BackgroundRun
    timer: Any = None


class BackgroundRunRegistry:
    def __init__(
        self,
        *,
        status_reader: Callable[[str], LoopStatus] | None = None,
        interval: float = DEFAULT_BACKGROUND_POLL_INTERVAL_SECONDS,
        failure_threshold: int = DEFAULT_BACKGROUND_FAILURE_THRESHOLD,
        timer_factory: TimerFactory = PollTimer,
        tmp_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._read_status = status_reader or StatusPoller(tmp_dir=tmp_dir).read_status
        self.interval = interval
        self.failure_threshold = max(1, failure_threshold)
        self._timer_factory = timer_factory
        self.tmp_dir = tmp_dir
        self._clock = clock
        self._entries: dict[str, _Tracked] = {}
        self._lock = threading.RLock()
        self._closed = False

    def background(self, feature: str) -> BackgroundRun:
        """Track *feature*; a second call for the same name is a no-op.

        Raises ``LoopwatchError`` once the registry has been closed.
        """
        _validate_feature_name(feature)
        with self._lock:
            if self._closed:
                raise LoopwatchError(f"background registry is closed; cannot track {feature}")
            existing = self._entries.get(feature)
            if existing is not None:
                return existing.run

            failures = 0
            try:
                status = self._read_status(feature)
            except Exception as exc:
                _append_log(
                    f"warning: background status read failed feature={feature}: {_describe_exc(exc)}",
                    log_dir=self.tmp_dir,
                )
                status = LoopStatus()
                failures = 1
            completed = failures == 0 and not status.running
            run = BackgroundRun(
                feature_name=feature,
                backgrounded_at=self._clock(),
                log_path=str(_loop_file_path(feature, LOG_SUFFIX, tmp_dir=self.tmp_dir)),
                last_status=status,
                completed=completed,
                consecutive_failures=failures,
            )
            entry = _Tracked(run=run)
            self._entries[feature] = entry
            if not completed:
                entry.timer = self._timer_factory(self.interval, lambda: self._tick(feature))
                entry.timer.start()
            return run

    def _stop_timer(self, entry: _Tracked) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def _tick(self, feature: str) -> None:
        try:
            status: LoopStatus | None = self._read_status(feature)
            error: Exception | None = None
        except Exception as exc:
            status, error = None, exc

        with self._lock:
            entry = self._entries.get(feature)
            # Dismissed or torn down while the read was in flight.
            if entry is None or entry.timer is None:
                return
            if self._closed:
                self._stop_timer(entry)
                return
            run = entry.run
            if status is not None:
                entry.run = dataclasses.replace(
                    run, last_status=status, completed=not status.running, consecutive_failures=0
                )
            else:
                failures = run.consecutive_failures + 1
                _append_log(
                    f"warning: background poll failed feature={feature} "
                    f"failures={failures}: {_describe_exc(error) if error else 'unknown'}",
                    log_dir=self.tmp_dir,
                )
                entry.run = dataclasses.replace(run, consecutive_failures=failures)
                if failures >= self.failure_threshold:
                    _append_log(
                        f"warning: background polling stopped feature={feature} after {failures} failures",
                        log_dir=self.tmp_dir,
                    )
                    entry.run = dataclasses.replace(entry.run, completed=True)
            if entry.run.completed:
                self._stop_timer(entry)

    def dismiss(self, feature: str) -> None:
        with self._lock:
            entry = self._entries.pop(feature, None)
            if entry is not None:
                self._stop_timer(entry)

    def get_run(self, feature: str) -> BackgroundRun | None:
        with self._lock:
            entry = self._entries.get(feature)
            return entry.run if entry is not None else None

    def runs(self) -> list[BackgroundRun]:
        with self._lock:
            return [entry.run for entry in self._entries.values()]

    def is_polling(self, feature: str) -> bool:
        with self._lock:
            entry = self._entries.get(feature)
            return entry is not None and entry.timer is not None

    def close(self) -> None:
        """Cancel every outstanding timer."""
        with self._lock:
            self._closed = True
            for entry in self._entries.values():
                self._stop_timer(entry)
