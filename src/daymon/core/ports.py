# src/daymon/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the scheduling core.

The scheduler, runner and nudge queue depend on Protocols instead of concrete
implementations. This keeps the store, the automation engine and the per-OS
nudge automation swappable, and makes testing easier.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from ..tasks.task_models import (
    ExecutionResult,
    NudgeOptions,
    ProgressUpdate,
    Task,
    TaskRun,
)

ProgressCallback = Callable[[ProgressUpdate], None]


class Clock(Protocol):
    """Wall clock + monotonic clock + sleep, injected so timers are testable."""

    def now(self) -> datetime: ...
    def time(self) -> float: ...
    def monotonic(self) -> float: ...
    def sleep(self, seconds: float) -> Awaitable[None]: ...


class TaskRepo(Protocol):
    # Scheduler API
    def list_active_tasks(self) -> list[Task]: ...
    def get_due_once_tasks(self, *, now_ts: float) -> list[Task]: ...
    def get_task(self, task_id: int) -> Task | None: ...
    def update_task_status(self, task_id: int, new_status: Any) -> None: ...

    # Run lifecycle
    def get_latest_run(self, task_id: int) -> TaskRun | None: ...
    def create_run(self, task_id: int) -> TaskRun: ...
    def complete_run(
            self,
            run_id: int,
            *,
            result: str,
            result_file: str | None = None,
            error_message: str | None = None,
    ) -> None: ...
    def update_run_progress(self, run_id: int, progress: float | None, message: str | None) -> None: ...
    def increment_run_count(self, task_id: int) -> None: ...
    def list_running_runs(self) -> list[TaskRun]: ...
    def fail_run(self, run_id: int, error_message: str) -> None: ...
    def prune_old_runs(self, keep_per_task: int) -> int: ...

    # Settings
    def get_setting(self, key: str) -> str | None: ...


class Executor(Protocol):
    """Runs the external automation engine for one prompt."""

    def run(
            self,
            prompt: str,
            *,
            timeout_seconds: float,
            on_progress: ProgressCallback | None = None,
    ) -> Awaitable[ExecutionResult]: ...


class Nudger(Protocol):
    """
    Per-OS attention ping after a run settles.

    Implementations must never raise: failures (no companion app, automation
    denied) are logged and swallowed.
    """

    def send(self, options: NudgeOptions) -> None: ...
