# src/daymon/tasks/task_runner.py

from __future__ import annotations

"""
Task runner.

Executes one task invocation end to end:
- single-flight per task id (a duplicate trigger while running is dropped,
  and so is one whose latest run row is still `running` in another process)
- creates the run row, runs the automation engine with the task's timeout
- throttles progress writes
- writes a markdown result artifact and terminates the run row exactly once
- hands the outcome to the Notifier (bus event + gated nudge)
"""

import asyncio
import logging
import re
from pathlib import Path

from ..core.clock import SystemClock
from ..core.ports import Clock, Executor, TaskRepo
from ..notifications import Notifier
from .task_models import ExecutionOutcome, ExecutionResult, ProgressUpdate, RunStatus, Task, TaskRun, TaskStatus

logger = logging.getLogger(__name__)

PROGRESS_THROTTLE_SECONDS = 2.0
DEFAULT_TIMEOUT_MINUTES = 30

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class TaskRunner:
    def __init__(
            self,
            repo: TaskRepo,
            executor: Executor,
            *,
            results_dir: str | Path,
            notifier: Notifier | None = None,
            clock: Clock | None = None,
            default_timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
            progress_throttle_seconds: float = PROGRESS_THROTTLE_SECONDS,
    ) -> None:
        self.repo = repo
        self.executor = executor
        self.results_dir = Path(results_dir)
        self.notifier = notifier
        self._clock = clock or SystemClock()
        self.default_timeout_minutes = int(default_timeout_minutes)
        self.progress_throttle_seconds = float(progress_throttle_seconds)

        self._running: set[int] = set()
        self._background: set[asyncio.Task[ExecutionOutcome | None]] = set()

    def is_running(self, task_id: int) -> bool:
        return task_id in self._running

    def has_foreign_run(self, task_id: int) -> bool:
        """True when the store holds a `running` row for a task this runner is not executing."""
        if task_id in self._running:
            return False
        latest = self.repo.get_latest_run(task_id)
        return latest is not None and latest.status == RunStatus.RUNNING

    @property
    def running_task_ids(self) -> frozenset[int]:
        return frozenset(self._running)

    def trigger(self, task_id: int, *, allow_inactive: bool = False) -> asyncio.Task[ExecutionOutcome | None]:
        """Fire-and-forget execute(); errors are logged by the done callback."""
        task = asyncio.get_running_loop().create_task(
            self.execute(task_id, allow_inactive=allow_inactive),
            name=f"task-{task_id}",
        )
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[ExecutionOutcome | None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background execution %s failed", task.get_name(), exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait for every fire-and-forget execution started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def execute(self, task_id: int, *, allow_inactive: bool = False) -> ExecutionOutcome | None:
        """
        Run a task once. Returns None when nothing ran: already running (here or
        in another process), missing, or not active (allow_inactive lets manual
        triggers run paused/completed tasks).
        """
        if task_id in self._running:
            logger.info("Task %s is already running; trigger dropped", task_id)
            return None

        task = self.repo.get_task(task_id)
        if task is None:
            logger.warning("Task %s not found", task_id)
            return None
        if task.status != TaskStatus.ACTIVE and not allow_inactive:
            logger.info("Task %s is %s, not active; skipped", task_id, task.status.value)
            return None
        if self.has_foreign_run(task_id):
            logger.warning("Task %s has a running execution in another process; skipped", task_id)
            return None

        # No await between the membership check and this add.
        self._running.add(task_id)
        try:
            run = self.repo.create_run(task_id)
            logger.info("Task %s (%s) started run=%s", task_id, task.name, run.id)
            outcome = await self._run(task, run)
        finally:
            self._running.discard(task_id)

        if outcome.success:
            logger.info("Task %s (%s) completed in %dms", task_id, task.name, outcome.duration_ms)
        else:
            logger.warning("Task %s (%s) failed: %s", task_id, task.name, outcome.error_message)

        if self.notifier is not None:
            self.notifier.notify(outcome)
        return outcome

    async def _run(self, task: Task, run: TaskRun) -> ExecutionOutcome:
        last_write: float | None = None

        def on_progress(update: ProgressUpdate) -> None:
            nonlocal last_write
            now = self._clock.monotonic()
            if last_write is not None and now - last_write < self.progress_throttle_seconds:
                return
            last_write = now
            try:
                self.repo.update_run_progress(run.id, update.fraction, update.message)
            except Exception:
                logger.warning("Progress write failed run=%s", run.id, exc_info=True)

        timeout_minutes = task.timeout_minutes or self.default_timeout_minutes

        try:
            result = await self.executor.run(
                task.prompt,
                timeout_seconds=timeout_minutes * 60,
                on_progress=on_progress,
            )
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.exception("Executor raised for task %s", task.id)
            self._persist(run, result="", result_file=None, error_message=error)
            return self._outcome(task, run, success=False, output="", duration_ms=0, error_message=error)

        output = result.stdout or result.stderr or "(no output)"
        result_file = self._save_result(task.name, output, result)

        if result.succeeded:
            self._persist(run, result=output, result_file=result_file, error_message=None)
            try:
                self.repo.increment_run_count(task.id)
            except Exception:
                logger.exception("increment_run_count failed task_id=%s", task.id)
            return self._outcome(
                task, run, success=True, output=output, duration_ms=result.duration_ms, result_file=result_file
            )

        if result.timed_out:
            error = f"Timed out after {result.duration_ms}ms"
        else:
            error = f"Exit code {result.exit_code}: {result.stderr or '(no stderr)'}"
        self._persist(run, result=output, result_file=result_file, error_message=error)
        return self._outcome(
            task,
            run,
            success=False,
            output=output,
            duration_ms=result.duration_ms,
            error_message=error,
            result_file=result_file,
        )

    def _persist(self, run: TaskRun, *, result: str, result_file: str | None, error_message: str | None) -> None:
        try:
            self.repo.complete_run(run.id, result=result, result_file=result_file, error_message=error_message)
        except Exception:
            # The next reconciliation's stale-run sweep fails the row instead.
            logger.exception("complete_run failed run=%s", run.id)

    @staticmethod
    def _outcome(
            task: Task,
            run: TaskRun,
            *,
            success: bool,
            output: str,
            duration_ms: int,
            error_message: str | None = None,
            result_file: str | None = None,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            task_id=task.id,
            task_name=task.name,
            run_id=run.id,
            success=success,
            output=output,
            duration_ms=duration_ms,
            nudge_mode=task.nudge_mode,
            error_message=error_message,
            result_file=result_file,
        )

    def _save_result(self, task_name: str, output: str, result: ExecutionResult) -> str | None:
        now = self._clock.now()
        safe_name = _UNSAFE_NAME_CHARS.sub("_", task_name)[:50]
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = self.results_dir / f"{safe_name}-{stamp}.md"

        if result.timed_out:
            status = "Timed Out"
        elif result.exit_code == 0:
            status = "Success"
        else:
            status = f"Failed (exit {result.exit_code})"

        markdown = (
            f"# Task: {task_name}\n\n"
            f"**Date:** {now.strftime('%Y-%m-%d %H:%M:%S')}\n"
            f"**Duration:** {result.duration_ms / 1000:.1f}s\n"
            f"**Status:** {status}\n\n"
            "---\n\n"
            f"{output}\n"
        )
        try:
            self.results_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(markdown, "utf-8")
        except OSError:
            logger.exception("Failed to write result file %s", path)
            return None
        return str(path)
