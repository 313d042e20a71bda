# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from daymon.config import Settings
from daymon.tasks.task_store import TaskStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Settings pointing every path into tmp_path.

    Built directly rather than through Settings.from_env() so the developer's
    DAYMON_* environment cannot leak into tests.
    """
    data_dir = tmp_path / "data"
    return Settings(
        app_name="daymon",
        log_level="DEBUG",
        data_dir=data_dir,
        db_path=data_dir / "daymon.sqlite3",
        results_dir=data_dir / "results",
        log_dir=data_dir / "logs",
        sidecar_port=0,
        health_interval_seconds=30.0,
        poll_interval_seconds=30.0,
        default_timeout_minutes=30,
        executor_command="claude",
        keep_runs_per_task=100,
        nudge_enabled=True,
        nudge_gap_seconds=3.0,
    )


@pytest.fixture()
def store(tmp_path: Path) -> TaskStore:
    """Real SQLite store: its queries are part of what we want to test."""
    return TaskStore(tmp_path / "tasks.sqlite3")
