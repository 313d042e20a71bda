# src/daymon/notifications.py

"""
Completion/failure fan-out for settled runs.

Every outcome becomes one event on the bus (SSE subscribers, the host process).
A nudge is queued on top of that when the task's nudge mode allows it and the
configured quiet hours are not in effect.
"""

from __future__ import annotations

import logging
from typing import Any

from .core.clock import SystemClock
from .core.ports import Clock, TaskRepo
from .events.bus import EventBus
from .nudge.policy import quiet_hours_active, should_nudge
from .nudge.queue import NudgeQueue
from .tasks.task_models import ExecutionOutcome, NudgeOptions

logger = logging.getLogger(__name__)

EVENT_TASK_COMPLETE = "task:complete"
EVENT_TASK_FAILED = "task:failed"
OUTPUT_PREVIEW_CHARS = 200


def outcome_payload(outcome: ExecutionOutcome) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "taskId": outcome.task_id,
        "taskName": outcome.task_name,
        "success": outcome.success,
        "durationMs": outcome.duration_ms,
        "nudgeMode": outcome.nudge_mode,
    }
    if outcome.success:
        payload["outputPreview"] = outcome.output[:OUTPUT_PREVIEW_CHARS]
    else:
        payload["errorMessage"] = outcome.error_message or "Unknown error"
    return payload


class Notifier:
    def __init__(
            self,
            bus: EventBus,
            repo: TaskRepo,
            nudges: NudgeQueue | None = None,
            *,
            clock: Clock | None = None,
    ) -> None:
        self.bus = bus
        self.repo = repo
        self.nudges = nudges
        self._clock = clock or SystemClock()

    def notify(self, outcome: ExecutionOutcome) -> None:
        """Never raises: notification problems must not affect the run's result."""
        event_type = EVENT_TASK_COMPLETE if outcome.success else EVENT_TASK_FAILED
        try:
            delivered = self.bus.emit(event_type, outcome_payload(outcome))
            logger.debug("%s task_id=%s delivered=%d", event_type, outcome.task_id, delivered)
        except Exception:
            logger.exception("Event emit failed task_id=%s", outcome.task_id)

        self._maybe_nudge(outcome)

    def _maybe_nudge(self, outcome: ExecutionOutcome) -> None:
        if self.nudges is None:
            return
        try:
            if not should_nudge(outcome.nudge_mode, outcome.success):
                return
            if quiet_hours_active(self.repo, self._clock.now()):
                logger.info("Nudge suppressed by quiet hours task_id=%s", outcome.task_id)
                return
            self.nudges.enqueue(
                NudgeOptions(
                    task_id=outcome.task_id,
                    task_name=outcome.task_name,
                    success=outcome.success,
                    duration_ms=outcome.duration_ms,
                    error_message=outcome.error_message,
                )
            )
        except Exception:
            logger.exception("Nudge enqueue failed task_id=%s", outcome.task_id)
