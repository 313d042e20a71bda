# tests/test_task_scheduler.py

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from daymon.errors import InvalidCronExpression
from daymon.tasks.task_models import ExecutionResult, RunStatus, TaskStatus, TriggerType
from daymon.tasks.task_runner import TaskRunner
from daymon.tasks.task_scheduler import (
    ORPHANED_RUN_MESSAGE,
    CronJob,
    CronScheduler,
    validate_cron_expression,
)

from .fakes import FakeClock, FakeExecutor, FakeTaskRepo, make_task


def _scheduler(repo: FakeTaskRepo, tmp_path: Path, executor=None) -> tuple[CronScheduler, TaskRunner]:
    # Parked clock: cron jobs and the poll ticker never fire on their own.
    clock = FakeClock(auto_advance=False)
    runner = TaskRunner(repo, executor or FakeExecutor(), results_dir=tmp_path, clock=clock)
    return CronScheduler(repo, runner, clock=clock), runner


def test_validate_cron_expression() -> None:
    assert validate_cron_expression("*/5  * * * *") == "*/5 * * * *"
    assert validate_cron_expression("0 9 * * 1-5") == "0 9 * * 1-5"

    for bad in ("", None, "* * * *", "0 0 9 * * 1", "61 * * * *", "every day"):
        with pytest.raises(InvalidCronExpression):
            validate_cron_expression(bad)


@pytest.mark.asyncio
async def test_due_one_shot_completes_after_success(tmp_path: Path) -> None:
    repo = FakeTaskRepo()
    scheduler, _ = _scheduler(repo, tmp_path)
    repo.tasks[1] = make_task(1, trigger_type=TriggerType.ONCE, scheduled_at=scheduler._clock.time() - 60)

    await scheduler.reconcile()
    await scheduler.wait_idle()

    assert repo.tasks[1].status == TaskStatus.COMPLETED
    assert [r.status for r in repo.runs_for(1)] == [RunStatus.COMPLETED]


@pytest.mark.asyncio
async def test_due_one_shot_completes_after_failure(tmp_path: Path) -> None:
    repo = FakeTaskRepo()
    failing = FakeExecutor(ExecutionResult(stdout="", stderr="nope", exit_code=1, duration_ms=5))
    scheduler, _ = _scheduler(repo, tmp_path, failing)
    repo.tasks[1] = make_task(1, trigger_type=TriggerType.ONCE, scheduled_at=scheduler._clock.time() - 60)

    await scheduler.reconcile()
    await scheduler.wait_idle()

    assert repo.tasks[1].status == TaskStatus.COMPLETED
    assert [r.status for r in repo.runs_for(1)] == [RunStatus.FAILED]


@pytest.mark.asyncio
async def test_future_one_shot_is_not_fired(tmp_path: Path) -> None:
    repo = FakeTaskRepo()
    scheduler, _ = _scheduler(repo, tmp_path)
    repo.tasks[1] = make_task(1, trigger_type=TriggerType.ONCE, scheduled_at=scheduler._clock.time() + 600)

    await scheduler.reconcile()
    await scheduler.wait_idle()

    assert repo.tasks[1].status == TaskStatus.ACTIVE
    assert repo.runs == {}


@pytest.mark.asyncio
async def test_pending_one_shot_is_not_fired_twice(tmp_path: Path) -> None:
    repo = FakeTaskRepo()
    gate = asyncio.Event()
    scheduler, _ = _scheduler(repo, tmp_path, FakeExecutor(gate=gate))
    repo.tasks[1] = make_task(1, trigger_type=TriggerType.ONCE, scheduled_at=scheduler._clock.time() - 1)

    await scheduler.reconcile()
    await asyncio.sleep(0)
    await scheduler.reconcile()
    gate.set()
    await scheduler.wait_idle()

    assert len(repo.runs_for(1)) == 1
    assert repo.tasks[1].status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_status_update_leaves_one_shot_active(tmp_path: Path) -> None:
    repo = FakeTaskRepo()
    repo.fail_status_updates = True
    scheduler, _ = _scheduler(repo, tmp_path)
    repo.tasks[1] = make_task(1, trigger_type=TriggerType.ONCE, scheduled_at=scheduler._clock.time() - 1)

    await scheduler.reconcile()
    await scheduler.wait_idle()

    assert repo.tasks[1].status == TaskStatus.ACTIVE
    # Fires again on the next pass.
    await scheduler.reconcile()
    await scheduler.wait_idle()
    assert len(repo.runs_for(1)) == 2


@pytest.mark.asyncio
async def test_stale_sweep_fails_only_unowned_runs(tmp_path: Path) -> None:
    repo = FakeTaskRepo([make_task(1), make_task(2, name="other")])
    gate = asyncio.Event()
    scheduler, runner = _scheduler(repo, tmp_path, FakeExecutor(gate=gate))

    orphan = repo.create_run(2)
    live = asyncio.create_task(runner.execute(1))
    await asyncio.sleep(0)

    await scheduler.reconcile()

    assert repo.runs[orphan.id].status == RunStatus.FAILED
    assert repo.runs[orphan.id].error_message == ORPHANED_RUN_MESSAGE
    [owned] = repo.runs_for(1)
    assert owned.status == RunStatus.RUNNING

    gate.set()
    await live
    assert repo.runs_for(1)[0].status == RunStatus.COMPLETED
    scheduler.stop()


@pytest.mark.asyncio
async def test_cron_jobs_follow_the_task_table(tmp_path: Path) -> None:
    repo = FakeTaskRepo([
        make_task(1, cron_expression="0 9 * * *"),
        make_task(2, cron_expression="*/10 * * * *"),
        make_task(3, trigger_type=TriggerType.MANUAL),
    ])
    scheduler, _ = _scheduler(repo, tmp_path)

    await scheduler.reconcile()
    assert scheduler.status() == {"running": False, "jobCount": 2, "jobs": [{"taskId": 1}, {"taskId": 2}]}
    job_1 = scheduler._jobs[1]

    repo.update_task_status(2, TaskStatus.PAUSED)
    repo.tasks[1].cron_expression = "30 9 * * *"
    await scheduler.reconcile()

    assert scheduler.job_ids == [1]
    assert scheduler._jobs[1] is not job_1
    assert scheduler._jobs[1].expression == "30 9 * * *"
    scheduler.stop()
    assert scheduler.job_ids == []


@pytest.mark.asyncio
async def test_invalid_cron_is_skipped_and_logged_once_per_task(
        tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    repo = FakeTaskRepo([
        make_task(1, cron_expression="not a cron"),
        make_task(2, cron_expression="0 * * * *"),
        make_task(3, name="backup", cron_expression="not a cron"),
    ])
    scheduler, _ = _scheduler(repo, tmp_path)

    with caplog.at_level(logging.WARNING, logger="daymon.tasks.task_scheduler"):
        await scheduler.reconcile()
        await scheduler.reconcile()

    assert scheduler.job_ids == [2]
    skipped = [r.getMessage() for r in caplog.records if "not a cron" in r.getMessage()]
    assert len(skipped) == 2
    assert any("Task 1 " in m for m in skipped) and any("Task 3 " in m for m in skipped)
    scheduler.stop()


@pytest.mark.asyncio
async def test_start_reconciles_immediately_and_stop_is_idempotent(tmp_path: Path) -> None:
    repo = FakeTaskRepo([make_task(1, cron_expression="0 9 * * *")])
    scheduler, _ = _scheduler(repo, tmp_path)

    await scheduler.start()
    assert scheduler.status()["running"] is True
    assert scheduler.job_ids == [1]

    scheduler.stop()
    scheduler.stop()
    assert scheduler.status() == {"running": False, "jobCount": 0, "jobs": []}


@pytest.mark.asyncio
async def test_cron_job_fires_at_each_occurrence() -> None:
    clock = FakeClock(start=1_700_000_000.0, auto_advance=False)
    fired: list[int] = []
    job = CronJob(7, "* * * * *", fired.append, clock=clock)

    job.start()
    await asyncio.sleep(0)
    clock.advance(61)
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    clock.advance(60)
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    job.cancel()

    assert fired == [7, 7]
