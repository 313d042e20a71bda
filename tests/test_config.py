# tests/test_config.py

from __future__ import annotations

from pathlib import Path

import pytest

from daymon.config import Settings


def test_defaults_live_under_data_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("DB_PATH", "RESULTS_DIR", "LOG_DIR", "POLL_INTERVAL_SECONDS", "NUDGE_ENABLED"):
        monkeypatch.delenv(f"DAYMON_{name}", raising=False)
    monkeypatch.setenv("DAYMON_DATA_DIR", str(tmp_path))

    s = Settings.from_env()

    assert s.data_dir == tmp_path
    assert s.db_path == tmp_path / "daymon.sqlite3"
    assert s.results_dir == tmp_path / "results"
    assert s.log_dir == tmp_path / "logs"
    assert s.poll_interval_seconds == 30.0
    assert s.nudge_enabled is True


def test_bad_values_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DAYMON_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("DAYMON_KEEP_RUNS_PER_TASK", "lots")
    monkeypatch.setenv("DAYMON_SIDECAR_PORT", "-5")
    monkeypatch.setenv("DAYMON_NUDGE_ENABLED", "off")

    s = Settings.from_env()

    assert s.keep_runs_per_task == 100
    assert s.sidecar_port == 0
    assert s.nudge_enabled is False


def test_worker_env_shares_paths(settings: Settings) -> None:
    env = settings.worker_env()

    assert env["DAYMON_DATA_DIR"] == str(settings.data_dir)
    assert env["DAYMON_DB_PATH"] == str(settings.db_path)
    assert env["DAYMON_RESULTS_DIR"] == str(settings.results_dir)
    assert all(key.startswith("DAYMON_") for key in env)
