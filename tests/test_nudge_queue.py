# tests/test_nudge_queue.py

from __future__ import annotations

from datetime import datetime

import pytest

from daymon.events.bus import EventBus
from daymon.notifications import Notifier, outcome_payload
from daymon.nudge.nudgers import LogNudger, MacOSNudger, build_nudge_message, select_nudger
from daymon.nudge.policy import QUIET_HOURS_ENABLED_KEY
from daymon.nudge.queue import NUDGE_GAP_SECONDS, NudgeQueue
from daymon.tasks.task_models import ExecutionOutcome, NudgeOptions

from .fakes import FakeClock, FakeNudger, FakeTaskRepo


def _options(task_id: int, success: bool = True) -> NudgeOptions:
    return NudgeOptions(task_id=task_id, task_name=f"task {task_id}", success=success, duration_ms=2500)


def _outcome(task_id: int = 1, *, success: bool = True, nudge_mode: str = "always") -> ExecutionOutcome:
    return ExecutionOutcome(
        task_id=task_id,
        task_name="digest",
        run_id=10,
        success=success,
        output="x" * 500,
        duration_ms=1234,
        nudge_mode=nudge_mode,
        error_message=None if success else "Exit code 1: nope",
    )


@pytest.mark.asyncio
async def test_back_to_back_nudges_are_spaced_by_the_gap() -> None:
    clock = FakeClock()
    nudger = FakeNudger(clock)
    queue = NudgeQueue(nudger, clock=clock)

    queue.enqueue(_options(1))
    queue.enqueue(_options(2))
    await queue.drain()

    assert [o.task_id for o in nudger.sent] == [1, 2]
    assert nudger.sent_at[1] - nudger.sent_at[0] >= NUDGE_GAP_SECONDS
    # No trailing wait after the last item.
    assert clock.sleeps == [NUDGE_GAP_SECONDS]
    assert queue.pending == 0 and not queue.draining


@pytest.mark.asyncio
async def test_failing_nudger_does_not_stop_the_queue() -> None:
    clock = FakeClock()

    class FlakyNudger(FakeNudger):
        def send(self, options: NudgeOptions) -> None:
            super().send(options)
            if options.task_id == 1:
                raise RuntimeError("automation denied")

    nudger = FlakyNudger(clock)
    queue = NudgeQueue(nudger, clock=clock)
    queue.enqueue(_options(1))
    queue.enqueue(_options(2))
    await queue.drain()

    assert [o.task_id for o in nudger.sent] == [1, 2]


@pytest.mark.asyncio
async def test_cancel_drops_pending_nudges() -> None:
    clock = FakeClock(auto_advance=False)
    nudger = FakeNudger(clock)
    queue = NudgeQueue(nudger, clock=clock)

    queue.enqueue(_options(1))
    queue.enqueue(_options(2))
    queue.enqueue(_options(3))
    queue.cancel()

    assert queue.pending == 0
    assert not queue.draining


def test_outcome_payload_shapes() -> None:
    ok = outcome_payload(_outcome())
    assert ok == {
        "taskId": 1,
        "taskName": "digest",
        "success": True,
        "durationMs": 1234,
        "nudgeMode": "always",
        "outputPreview": "x" * 200,
    }
    failed = outcome_payload(_outcome(success=False))
    assert failed["errorMessage"] == "Exit code 1: nope"
    assert "outputPreview" not in failed


@pytest.mark.asyncio
async def test_notifier_respects_nudge_mode() -> None:
    clock = FakeClock()
    nudger = FakeNudger(clock)
    repo = FakeTaskRepo()
    bus = EventBus()
    queue = NudgeQueue(nudger, clock=clock)
    notifier = Notifier(bus, repo, queue, clock=clock)

    notifier.notify(_outcome(1, nudge_mode="never"))
    notifier.notify(_outcome(2, nudge_mode="failure_only"))
    notifier.notify(_outcome(3, success=False, nudge_mode="failure_only"))
    notifier.notify(_outcome(4))
    await queue.drain()

    assert [o.task_id for o in nudger.sent] == [3, 4]


@pytest.mark.asyncio
async def test_notifier_suppresses_nudges_in_quiet_hours_but_still_emits() -> None:
    clock = FakeClock(start=datetime(2026, 3, 1, 12, 0).timestamp())
    nudger = FakeNudger(clock)
    repo = FakeTaskRepo()
    repo.settings[QUIET_HOURS_ENABLED_KEY] = "true"
    bus = EventBus()
    sub = bus.subscribe()
    queue = NudgeQueue(nudger, clock=clock)
    notifier = Notifier(bus, repo, queue, clock=clock)

    notifier.notify(_outcome(1))
    await queue.drain()

    assert nudger.sent == []
    assert sub._queue.qsize() == 2  # keepalive + event


def test_build_nudge_message() -> None:
    msg = build_nudge_message(NudgeOptions(5, 'Weekly\n"report"', False, 61_000, "boom"))
    assert msg.startswith('Daymon task "Weekly"report"" (id: 5) failed in 61.0s.')


def test_select_nudger_by_platform() -> None:
    assert isinstance(select_nudger("darwin"), MacOSNudger)
    assert isinstance(select_nudger("linux"), LogNudger)
    assert isinstance(select_nudger("win32"), LogNudger)


def test_macos_nudger_swallows_automation_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def fake_osascript(self, script: str, timeout: float) -> None:
        calls.append(script)
        raise OSError("osascript missing")

    monkeypatch.setattr(MacOSNudger, "_osascript", fake_osascript)

    MacOSNudger().send(_options(1))

    assert len(calls) == 3  # one lookup per known IDE
