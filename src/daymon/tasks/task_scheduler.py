# src/daymon/tasks/task_scheduler.py

from __future__ import annotations

"""
Task scheduler.

Keeps the in-memory job set in line with the task table:
- one CronJob per active cron task (asyncio task sleeping until the next occurrence)
- due one-shot tasks are fired once and then marked completed
- stale "running" run rows without an in-flight owner are failed
- old run history is pruned

Reconciliation runs at start, every poll interval, and on demand (POST /sync).
Execution itself belongs to TaskRunner; the scheduler only decides when.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from croniter import croniter

from ..core.clock import SystemClock, Ticker
from ..core.ports import Clock, TaskRepo
from ..errors import InvalidCronExpression
from .task_models import Task, TaskStatus, TriggerType
from .task_runner import TaskRunner

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30.0
KEEP_RUNS_PER_TASK = 100
ORPHANED_RUN_MESSAGE = "Orphaned run: the owning process exited before completion"


def validate_cron_expression(expression: str | None) -> str:
    """Return the normalized expression or raise InvalidCronExpression."""
    expr = " ".join((expression or "").split())
    if not expr:
        raise InvalidCronExpression(expression, "empty")
    if len(expr.split(" ")) != 5:
        raise InvalidCronExpression(expression, "expected 5 fields")
    if not croniter.is_valid(expr):
        raise InvalidCronExpression(expression)
    return expr


class CronJob:
    """Fires `on_fire(task_id)` at every occurrence of a cron expression."""

    def __init__(
            self,
            task_id: int,
            expression: str,
            on_fire: Callable[[int], Any],
            *,
            clock: Clock,
    ) -> None:
        self.task_id = task_id
        self.expression = expression
        self._on_fire = on_fire
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"cron-{self.task_id}")

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    def next_fire_time(self, after: datetime) -> datetime:
        return croniter(self.expression, after).get_next(datetime)

    async def _loop(self) -> None:
        next_at = self.next_fire_time(self._clock.now())
        while True:
            delay = (next_at - self._clock.now()).total_seconds()
            await self._clock.sleep(max(0.0, delay))
            try:
                self._on_fire(self.task_id)
            except Exception:
                logger.exception("Cron job fire failed task_id=%s", self.task_id)
            # Never schedule the same occurrence twice, even after an early wake-up.
            next_at = self.next_fire_time(max(self._clock.now(), next_at))


class CronScheduler:
    def __init__(
            self,
            repo: TaskRepo,
            runner: TaskRunner,
            *,
            poll_interval: float = POLL_INTERVAL_SECONDS,
            keep_runs_per_task: int = KEEP_RUNS_PER_TASK,
            clock: Clock | None = None,
    ) -> None:
        self.repo = repo
        self.runner = runner
        self.keep_runs_per_task = int(keep_runs_per_task)
        self._clock = clock or SystemClock()

        self._jobs: dict[int, CronJob] = {}
        self._pending_once: set[int] = set()
        self._once_tasks: set[asyncio.Task[None]] = set()
        self._invalid_logged: set[tuple[int, str]] = set()
        self._lock = asyncio.Lock()
        self._ticker = Ticker(poll_interval, self.reconcile, clock=self._clock, name="scheduler-poll")
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def job_ids(self) -> list[int]:
        return sorted(self._jobs)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("Scheduler starting (poll every %.0fs)", self._ticker.interval)
        await self.reconcile()
        self._ticker.start()

    def stop(self) -> None:
        """Cancel the poll and all cron jobs. In-flight executions keep going."""
        if not self._running and not self._jobs:
            return
        self._running = False
        self._ticker.stop()
        for job in self._jobs.values():
            job.cancel()
        count = len(self._jobs)
        self._jobs.clear()
        logger.info("Scheduler stopped (%d cron job(s) cancelled)", count)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "jobCount": len(self._jobs),
            "jobs": [{"taskId": task_id} for task_id in sorted(self._jobs)],
        }

    async def reconcile(self) -> None:
        async with self._lock:
            self._sweep_stale_runs()
            self._prune_history()
            self._sync_cron_jobs()
            self._check_due_once()

    async def wait_idle(self) -> None:
        """Wait for every one-shot execution fired so far to settle."""
        while self._once_tasks:
            await asyncio.gather(*list(self._once_tasks), return_exceptions=True)

    def _sweep_stale_runs(self) -> None:
        try:
            runs = self.repo.list_running_runs()
        except Exception:
            logger.exception("list_running_runs failed")
            return

        owned = self.runner.running_task_ids
        for run in runs:
            if run.task_id in owned:
                continue
            try:
                self.repo.fail_run(run.id, ORPHANED_RUN_MESSAGE)
                logger.warning("Failed orphaned run=%s task_id=%s", run.id, run.task_id)
            except Exception:
                logger.exception("fail_run failed run=%s", run.id)

    def _prune_history(self) -> None:
        if self.keep_runs_per_task <= 0:
            return
        try:
            removed = self.repo.prune_old_runs(self.keep_runs_per_task)
        except Exception:
            logger.exception("prune_old_runs failed")
            return
        if removed:
            logger.info("Pruned %d old run(s)", removed)

    def _sync_cron_jobs(self) -> None:
        try:
            tasks = self.repo.list_active_tasks()
        except Exception:
            logger.exception("list_active_tasks failed")
            return

        wanted: dict[int, str] = {}
        for task in tasks:
            if task.trigger_type != TriggerType.CRON:
                continue
            expr = self._valid_expression(task)
            if expr is not None:
                wanted[task.id] = expr

        for task_id in list(self._jobs):
            job = self._jobs[task_id]
            if wanted.get(task_id) != job.expression:
                job.cancel()
                del self._jobs[task_id]
                logger.info("Cron job removed task_id=%s", task_id)

        for task_id, expr in wanted.items():
            if task_id in self._jobs:
                continue
            job = CronJob(task_id, expr, self._fire_cron, clock=self._clock)
            job.start()
            self._jobs[task_id] = job
            logger.info("Cron job scheduled task_id=%s cron=%r", task_id, expr)

    def _valid_expression(self, task: Task) -> str | None:
        try:
            return validate_cron_expression(task.cron_expression)
        except InvalidCronExpression as e:
            key = (task.id, task.cron_expression or "")
            if key not in self._invalid_logged:
                self._invalid_logged.add(key)
                logger.warning("Task %s (%s) skipped: %s", task.id, task.name, e)
            return None

    def _fire_cron(self, task_id: int) -> None:
        logger.info("Cron fire task_id=%s", task_id)
        self.runner.trigger(task_id)

    def _check_due_once(self) -> None:
        try:
            due = self.repo.get_due_once_tasks(now_ts=self._clock.time())
        except Exception:
            logger.exception("get_due_once_tasks failed")
            return

        for task in due:
            if task.id in self._pending_once:
                continue
            self._pending_once.add(task.id)
            logger.info("One-shot due task_id=%s (%s)", task.id, task.name)
            once = asyncio.get_running_loop().create_task(self._run_once(task.id), name=f"once-{task.id}")
            self._once_tasks.add(once)
            once.add_done_callback(self._once_tasks.discard)

    async def _run_once(self, task_id: int) -> None:
        try:
            await self.runner.execute(task_id)
        except Exception:
            logger.exception("One-shot execution failed task_id=%s", task_id)
        finally:
            try:
                self.repo.update_task_status(task_id, TaskStatus.COMPLETED)
            except Exception:
                # Not retried: the task stays active and fires again on a later poll.
                logger.exception("update_task_status(completed) failed task_id=%s", task_id)
            self._pending_once.discard(task_id)
