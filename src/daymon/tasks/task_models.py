# src/daymon/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TaskStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.ACTIVE
        try:
            return cls(raw)
        except ValueError:
            return cls.PAUSED


class TriggerType(StrEnum):
    CRON = "cron"
    ONCE = "once"
    MANUAL = "manual"

    @classmethod
    def from_db(cls, raw: str | None) -> TriggerType:
        if not raw:
            return cls.CRON
        try:
            return cls(raw)
        except ValueError:
            return cls.MANUAL


class RunStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NudgeMode(StrEnum):
    """
    Per-task nudge policy.

    Stored as free text: unknown values are kept as-is and treated like ALWAYS
    by the policy (see nudge.policy.should_nudge).
    """

    ALWAYS = "always"
    FAILURE_ONLY = "failure_only"
    NEVER = "never"


@dataclass(slots=True)
class Task:
    id: int
    name: str
    prompt: str
    trigger_type: TriggerType
    status: TaskStatus
    created_at: float
    updated_at: float

    description: str | None = None
    cron_expression: str | None = None
    scheduled_at: float | None = None
    max_runs: int | None = None
    run_count: int = 0
    error_count: int = 0
    last_run: float | None = None
    last_result: str | None = None
    nudge_mode: str = NudgeMode.ALWAYS.value
    timeout_minutes: int | None = None


@dataclass(slots=True)
class TaskRun:
    id: int
    task_id: int
    started_at: float
    status: RunStatus

    finished_at: float | None = None
    result: str | None = None
    result_file: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None
    progress: float | None = None
    progress_message: str | None = None


@dataclass(slots=True, frozen=True)
class ProgressUpdate:
    # 0.0..1.0 when estimable, None = indeterminate
    fraction: float | None
    message: str


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """What the automation subprocess produced."""

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    """What TaskRunner reports for one settled run."""

    task_id: int
    task_name: str
    run_id: int
    success: bool
    output: str
    duration_ms: int
    nudge_mode: str = NudgeMode.ALWAYS.value
    error_message: str | None = None
    result_file: str | None = None


@dataclass(slots=True, frozen=True)
class NudgeOptions:
    task_id: int
    task_name: str
    success: bool
    duration_ms: int
    error_message: str | None = None
