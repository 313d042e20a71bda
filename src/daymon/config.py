# src/daymon/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole process (host or worker).
- Nothing is required at import time; every value has a local default.
- The host passes the same DAYMON_* variables to the worker it spawns.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "DAYMON"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv_if_available() -> None:
    """Load .env locally if python-dotenv is installed. Safe no-op otherwise."""
    try:
        from dotenv import load_dotenv  # type: ignore
    except Exception:
        return
    load_dotenv(override=False)


_load_dotenv_if_available()


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths ----
    data_dir: Path
    db_path: Path
    results_dir: Path
    log_dir: Path

    # ---- Worker process ----
    sidecar_port: int
    health_interval_seconds: float

    # ---- Scheduling / execution ----
    poll_interval_seconds: float
    default_timeout_minutes: int
    executor_command: str
    keep_runs_per_task: int

    # ---- Nudges ----
    nudge_enabled: bool
    nudge_gap_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "daymon") or "daymon"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path("~/.daymon").expanduser())
        db_path = _env_path(_k("DB_PATH"), data_dir / "daymon.sqlite3")
        results_dir = _env_path(_k("RESULTS_DIR"), data_dir / "results")
        log_dir = _env_path(_k("LOG_DIR"), data_dir / "logs")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            results_dir=results_dir,
            log_dir=log_dir,
            sidecar_port=max(0, _env_int(_k("SIDECAR_PORT"), 0)),
            health_interval_seconds=max(1.0, _env_float(_k("HEALTH_INTERVAL_SECONDS"), 30.0)),
            poll_interval_seconds=max(1.0, _env_float(_k("POLL_INTERVAL_SECONDS"), 30.0)),
            default_timeout_minutes=max(1, _env_int(_k("DEFAULT_TIMEOUT_MINUTES"), 30)),
            executor_command=_env(_k("EXECUTOR_COMMAND"), "claude") or "claude",
            keep_runs_per_task=max(1, _env_int(_k("KEEP_RUNS_PER_TASK"), 100)),
            nudge_enabled=_env_bool(_k("NUDGE_ENABLED"), True),
            nudge_gap_seconds=max(0.0, _env_float(_k("NUDGE_GAP_SECONDS"), 3.0)),
        )

    def worker_env(self) -> dict[str, str]:
        """DAYMON_* variables a spawned worker needs to share this process's paths."""
        return {
            _k("DATA_DIR"): str(self.data_dir),
            _k("DB_PATH"): str(self.db_path),
            _k("RESULTS_DIR"): str(self.results_dir),
            _k("LOG_DIR"): str(self.log_dir),
            _k("SIDECAR_PORT"): str(self.sidecar_port),
            _k("LOG_LEVEL"): self.log_level,
        }


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
