# src/daymon/tasks/task_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from .task_models import NudgeMode, RunStatus, Task, TaskRun, TaskStatus, TriggerType

logger = logging.getLogger(__name__)


class TaskStore:
    """
    SQLite store for tasks, task runs and key/value settings.

    The schema is intentionally simple and migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own short-lived SQLite connection
    """

    def __init__(self, db_path: str | Path = "daymon.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except Exception:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT,
                    prompt TEXT NOT NULL,
                    trigger_type TEXT NOT NULL DEFAULT 'cron',
                    cron_expression TEXT,
                    scheduled_at REAL,
                    status TEXT NOT NULL DEFAULT 'active',
                    last_run REAL,
                    last_result TEXT,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                    started_at REAL NOT NULL,
                    finished_at REAL,
                    status TEXT NOT NULL DEFAULT 'running',
                    result TEXT,
                    result_file TEXT,
                    error_message TEXT,
                    duration_ms INTEGER
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at REAL NOT NULL DEFAULT 0
                )
                """
            )

            # Migrations (safe): add missing columns.
            def add_col(table: str, name: str, decl: str) -> None:
                cur.execute(f"PRAGMA table_info({table})")
                cols = {row["name"] for row in cur.fetchall()}
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s.%s", table, name)

            add_col("tasks", "max_runs", "INTEGER")
            add_col("tasks", "run_count", "INTEGER NOT NULL DEFAULT 0")
            add_col("tasks", "nudge_mode", "TEXT NOT NULL DEFAULT 'always'")
            add_col("tasks", "timeout_minutes", "INTEGER")
            add_col("task_runs", "progress", "REAL")
            add_col("task_runs", "progress_message", "TEXT")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(trigger_type, status, scheduled_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_task_runs_task_id ON task_runs(task_id, started_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_task_runs_status ON task_runs(status)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            name=str(row["name"] or ""),
            description=row["description"],
            prompt=str(row["prompt"] or ""),
            trigger_type=TriggerType.from_db(row["trigger_type"]),
            cron_expression=row["cron_expression"],
            scheduled_at=float(row["scheduled_at"]) if row["scheduled_at"] is not None else None,
            status=TaskStatus.from_db(row["status"]),
            max_runs=int(row["max_runs"]) if row["max_runs"] is not None else None,
            run_count=int(row["run_count"] or 0),
            error_count=int(row["error_count"] or 0),
            last_run=float(row["last_run"]) if row["last_run"] is not None else None,
            last_result=row["last_result"],
            nudge_mode=str(row["nudge_mode"] or NudgeMode.ALWAYS.value),
            timeout_minutes=int(row["timeout_minutes"]) if row["timeout_minutes"] is not None else None,
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> TaskRun:
        return TaskRun(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            started_at=float(row["started_at"] or 0.0),
            finished_at=float(row["finished_at"]) if row["finished_at"] is not None else None,
            status=RunStatus(row["status"]),
            result=row["result"],
            result_file=row["result_file"],
            error_message=row["error_message"],
            duration_ms=int(row["duration_ms"]) if row["duration_ms"] is not None else None,
            progress=float(row["progress"]) if row["progress"] is not None else None,
            progress_message=row["progress_message"],
        )

    # ---- tasks ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)
        finally:
            conn.close()

    def add_task(
        self,
        *,
        name: str,
        prompt: str,
        trigger_type: TriggerType = TriggerType.CRON,
        cron_expression: str | None = None,
        scheduled_at: float | None = None,
        description: str | None = None,
        status: TaskStatus = TaskStatus.ACTIVE,
        max_runs: int | None = None,
        nudge_mode: str = NudgeMode.ALWAYS.value,
        timeout_minutes: int | None = None,
    ) -> int:
        if not name or not name.strip():
            raise ValueError("name is required")
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")
        if trigger_type == TriggerType.CRON and not (cron_expression or "").strip():
            raise ValueError("cron tasks require cron_expression")
        if trigger_type == TriggerType.ONCE and scheduled_at is None:
            raise ValueError("once tasks require scheduled_at")

        now = time.time()
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                INSERT INTO tasks(
                    name, description, prompt, trigger_type, cron_expression,
                    scheduled_at, status, max_runs, nudge_mode, timeout_minutes,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name.strip(),
                    description,
                    prompt,
                    TriggerType(trigger_type).value,
                    (cron_expression or "").strip() or None,
                    scheduled_at,
                    TaskStatus(status).value,
                    max_runs,
                    nudge_mode,
                    timeout_minutes,
                    now,
                    now,
                ),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for tasks insert")
            task_id = int(rowid)
            logger.debug("Task added id=%s name=%s trigger=%s", task_id, name, trigger_type)
            return task_id
        finally:
            conn.close()

    def get_task(self, task_id: int) -> Task | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        conn = self._get_conn()
        try:
            if status is None:
                rows = conn.execute("SELECT * FROM tasks ORDER BY created_at DESC, id DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE status = ? ORDER BY created_at DESC, id DESC",
                    (TaskStatus(status).value,),
                ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def list_active_tasks(self) -> list[Task]:
        return self.list_tasks(TaskStatus.ACTIVE)

    def get_due_once_tasks(self, *, now_ts: float) -> list[Task]:
        """Active one-shot tasks whose scheduled_at has passed, oldest first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE trigger_type = 'once'
                  AND status = 'active'
                  AND scheduled_at IS NOT NULL
                  AND scheduled_at <= ?
                ORDER BY scheduled_at ASC, id ASC
                """,
                (float(now_ts),),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def update_task_status(self, task_id: int, new_status: TaskStatus) -> None:
        self.update_task_fields(task_id, status=new_status)

    def update_task_fields(
        self,
        task_id: int,
        *,
        status: TaskStatus | None = None,
        name: str | None = None,
        prompt: str | None = None,
        cron_expression: str | None = None,
        scheduled_at: float | None = None,
        nudge_mode: str | None = None,
        max_runs: int | None = None,
        timeout_minutes: int | None = None,
    ) -> None:
        fields: list[str] = []
        params: list[Any] = []

        if status is not None:
            fields.append("status = ?")
            params.append(TaskStatus(status).value)
        if name is not None:
            fields.append("name = ?")
            params.append(name)
        if prompt is not None:
            fields.append("prompt = ?")
            params.append(prompt)
        if cron_expression is not None:
            fields.append("cron_expression = ?")
            params.append(cron_expression)
        if scheduled_at is not None:
            fields.append("scheduled_at = ?")
            params.append(float(scheduled_at))
        if nudge_mode is not None:
            fields.append("nudge_mode = ?")
            params.append(nudge_mode)
        if max_runs is not None:
            fields.append("max_runs = ?")
            params.append(int(max_runs))
        if timeout_minutes is not None:
            fields.append("timeout_minutes = ?")
            params.append(int(timeout_minutes))

        if not fields:
            return

        fields.append("updated_at = ?")
        params.append(time.time())
        params.append(int(task_id))

        sql = f"UPDATE tasks SET {', '.join(fields)} WHERE id = ?"

        conn = self._get_conn()
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    def increment_run_count(self, task_id: int) -> None:
        """
        Count one successful run; auto-complete the task once max_runs is reached.
        max_runs NULL means unlimited.
        """
        now = time.time()
        conn = self._get_conn()
        try:
            conn.execute(
                """
                UPDATE tasks
                SET run_count = run_count + 1,
                    status = CASE
                        WHEN max_runs IS NOT NULL AND run_count + 1 >= max_runs THEN 'completed'
                        ELSE status
                    END,
                    updated_at = ?
                WHERE id = ?
                """,
                (now, int(task_id)),
            )
            conn.commit()
        finally:
            conn.close()

    # ---- task runs ----

    def create_run(self, task_id: int) -> TaskRun:
        now = time.time()
        conn = self._get_conn()
        try:
            cur = conn.execute(
                "INSERT INTO task_runs(task_id, started_at, status) VALUES (?, ?, 'running')",
                (int(task_id), now),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for task_runs insert")
            return TaskRun(id=int(rowid), task_id=int(task_id), started_at=now, status=RunStatus.RUNNING)
        finally:
            conn.close()

    def get_run(self, run_id: int) -> TaskRun | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM task_runs WHERE id = ?", (int(run_id),)).fetchone()
            return self._row_to_run(row) if row else None
        finally:
            conn.close()

    def get_latest_run(self, task_id: int) -> TaskRun | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM task_runs WHERE task_id = ? ORDER BY started_at DESC, id DESC LIMIT 1",
                (int(task_id),),
            ).fetchone()
            return self._row_to_run(row) if row else None
        finally:
            conn.close()

    def list_runs(self, task_id: int, limit: int = 20) -> list[TaskRun]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM task_runs WHERE task_id = ? ORDER BY started_at DESC, id DESC LIMIT ?",
                (int(task_id), int(limit)),
            ).fetchall()
            return [self._row_to_run(r) for r in rows]
        finally:
            conn.close()

    def list_running_runs(self) -> list[TaskRun]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM task_runs WHERE status = 'running' ORDER BY started_at DESC, id DESC"
            ).fetchall()
            return [self._row_to_run(r) for r in rows]
        finally:
            conn.close()

    def complete_run(
        self,
        run_id: int,
        *,
        result: str,
        result_file: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """
        Terminate a run (failed when error_message is set, completed otherwise)
        and mirror the outcome onto its task (last_run, last_result, error_count).
        """
        now = time.time()
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT task_id, started_at FROM task_runs WHERE id = ?", (int(run_id),)
            ).fetchone()
            if row is None:
                logger.warning("complete_run: run %s not found", run_id)
                return

            status = RunStatus.FAILED if error_message else RunStatus.COMPLETED
            duration_ms = max(0, int((now - float(row["started_at"])) * 1000))

            conn.execute(
                """
                UPDATE task_runs
                SET finished_at = ?, status = ?, result = ?, result_file = ?,
                    error_message = ?, duration_ms = ?
                WHERE id = ?
                """,
                (now, status.value, result, result_file, error_message, duration_ms, int(run_id)),
            )
            conn.execute(
                """
                UPDATE tasks
                SET last_run = ?,
                    last_result = ?,
                    error_count = CASE WHEN ? THEN error_count + 1 ELSE 0 END,
                    updated_at = ?
                WHERE id = ?
                """,
                (now, result, 1 if error_message else 0, now, int(row["task_id"])),
            )
            conn.commit()
        finally:
            conn.close()

    def update_run_progress(self, run_id: int, progress: float | None, message: str | None) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "UPDATE task_runs SET progress = ?, progress_message = ? WHERE id = ?",
                (progress, message, int(run_id)),
            )
            conn.commit()
        finally:
            conn.close()

    def fail_run(self, run_id: int, error_message: str) -> None:
        """Force a still-running run to failed. Rows already terminated are left alone."""
        now = time.time()
        conn = self._get_conn()
        try:
            conn.execute(
                """
                UPDATE task_runs
                SET status = 'failed', finished_at = ?, error_message = ?,
                    duration_ms = CAST((? - started_at) * 1000 AS INTEGER)
                WHERE id = ? AND status = 'running'
                """,
                (now, error_message, now, int(run_id)),
            )
            conn.commit()
        finally:
            conn.close()

    def fail_all_running_runs(self, error_message: str) -> int:
        """Startup sweep: every running row belongs to a process that no longer exists."""
        now = time.time()
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE task_runs
                SET status = 'failed', finished_at = ?, error_message = ?,
                    duration_ms = CAST((? - started_at) * 1000 AS INTEGER)
                WHERE status = 'running'
                """,
                (now, error_message, now),
            )
            conn.commit()
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    def prune_old_runs(self, keep_per_task: int) -> int:
        """Delete finished runs beyond the newest `keep_per_task` of each task."""
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                DELETE FROM task_runs
                WHERE status != 'running'
                  AND id NOT IN (
                    SELECT r.id
                    FROM task_runs r
                    WHERE r.task_id = task_runs.task_id
                    ORDER BY r.started_at DESC, r.id DESC
                    LIMIT ?
                  )
                """,
                (int(keep_per_task),),
            )
            conn.commit()
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    # ---- settings ----

    def get_setting(self, key: str) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set_setting(self, key: str, value: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO settings(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, time.time()),
            )
            conn.commit()
        finally:
            conn.close()
