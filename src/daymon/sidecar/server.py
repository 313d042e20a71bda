# src/daymon/sidecar/server.py

from __future__ import annotations

"""
Worker process ("sidecar").

Hosts the scheduler, the runner, the event bus and the nudge queue behind a
loopback HTTP/SSE API:

    GET  /health            liveness + scheduler status
    POST /sync              immediate reconciliation
    POST /tasks/{id}/run    ad-hoc execution (202, runs in the background)
    POST /notify            relay an event from another process onto the bus
    GET  /events            SSE stream of task:complete / task:failed
    POST /shutdown          graceful exit

Run with `python -m daymon.sidecar.server` (or the `daymon-worker` script).
The host finds the listening port through the handshake files.
"""

import asyncio
import logging
import os
import re
import socket
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import Settings, get_settings
from ..core.clock import SystemClock
from ..core.ports import Clock, Executor, Nudger
from ..events.bus import EventBus
from ..logging_setup import setup_logging
from ..notifications import EVENT_TASK_COMPLETE, EVENT_TASK_FAILED, Notifier
from ..nudge.nudgers import select_nudger
from ..nudge.queue import NudgeQueue
from ..tasks.executor import ClaudeCodeExecutor
from ..tasks.task_runner import TaskRunner
from ..tasks.task_scheduler import CronScheduler
from ..tasks.task_store import TaskStore
from .handshake import HandshakeFiles

logger = logging.getLogger(__name__)

HOST = "127.0.0.1"
FORCE_EXIT_SECONDS = 3.0
STARTUP_SWEEP_MESSAGE = "Worker restarted before the run completed"
RELAYED_EVENTS = frozenset({EVENT_TASK_COMPLETE, EVENT_TASK_FAILED})

_TASK_ID_RE = re.compile(r"\d+")


class Worker:
    """Owns every long-lived component of the worker process."""

    def __init__(
            self,
            settings: Settings,
            *,
            store: TaskStore | None = None,
            executor: Executor | None = None,
            nudger: Nudger | None = None,
            clock: Clock | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self.store = store or TaskStore(settings.db_path)
        self.bus = EventBus()

        self.nudges: NudgeQueue | None = None
        if settings.nudge_enabled:
            self.nudges = NudgeQueue(
                nudger or select_nudger(app_name=settings.app_name.capitalize()),
                gap_seconds=settings.nudge_gap_seconds,
                clock=self.clock,
            )

        self.notifier = Notifier(self.bus, self.store, self.nudges, clock=self.clock)
        self.runner = TaskRunner(
            self.store,
            executor or ClaudeCodeExecutor(settings.executor_command),
            results_dir=settings.results_dir,
            notifier=self.notifier,
            clock=self.clock,
            default_timeout_minutes=settings.default_timeout_minutes,
        )
        self.scheduler = CronScheduler(
            self.store,
            self.runner,
            poll_interval=settings.poll_interval_seconds,
            keep_runs_per_task=settings.keep_runs_per_task,
            clock=self.clock,
        )

        self.started_at = self.clock.monotonic()
        self.shutdown_requested = asyncio.Event()

    @property
    def uptime(self) -> float:
        return round(self.clock.monotonic() - self.started_at, 3)

    async def start(self) -> None:
        # No execution survives a worker restart.
        try:
            swept = self.store.fail_all_running_runs(STARTUP_SWEEP_MESSAGE)
            if swept:
                logger.warning("Startup sweep failed %d stale run(s)", swept)
        except Exception:
            logger.exception("Startup sweep failed")
        await self.scheduler.start()

    async def stop(self) -> None:
        self.scheduler.stop()
        if self.nudges is not None:
            self.nudges.cancel()
        self.bus.close_all()
        logger.info("Worker stopped")

    def request_shutdown(self) -> None:
        self.shutdown_requested.set()

    def health(self) -> dict[str, Any]:
        return {
            "ok": True,
            "uptime": self.uptime,
            "pid": os.getpid(),
            "version": __version__,
            "scheduler": self.scheduler.status(),
        }


def _not_found() -> JSONResponse:
    return JSONResponse({"error": "Not found"}, status_code=404)


def create_app(worker: Worker) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await worker.start()
        try:
            yield
        finally:
            await worker.stop()

    app = FastAPI(title="daymon worker", version=__version__, lifespan=lifespan, docs_url=None, redoc_url=None)
    app.state.worker = worker

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _not_found()
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return worker.health()

    @app.post("/sync")
    async def sync() -> dict[str, Any]:
        await worker.scheduler.reconcile()
        return {"ok": True}

    @app.post("/tasks/{task_id}/run")
    async def run_task(task_id: str) -> JSONResponse:
        if not _TASK_ID_RE.fullmatch(task_id):
            return _not_found()
        tid = int(task_id)

        task = worker.store.get_task(tid)
        if task is None:
            return JSONResponse({"ok": False, "error": "Task not found"}, status_code=404)
        if worker.runner.is_running(tid) or worker.runner.has_foreign_run(tid):
            return JSONResponse({"ok": False, "error": "Task is already running"}, status_code=409)

        # Manual runs execute paused/completed tasks too, without touching their status.
        worker.runner.trigger(tid, allow_inactive=True)
        logger.info("Manual run requested task_id=%s (%s)", tid, task.name)
        return JSONResponse(
            {"ok": True, "taskId": tid, "message": "Task execution started"},
            status_code=202,
        )

    @app.post("/notify")
    async def notify(request: Request) -> JSONResponse:
        try:
            data = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        if isinstance(data, dict) and data.get("event") in RELAYED_EVENTS:
            worker.bus.emit(data["event"], data)
        return JSONResponse({"ok": True})

    @app.get("/events")
    async def events() -> StreamingResponse:
        sub = worker.bus.subscribe()

        async def stream() -> AsyncIterator[str]:
            try:
                async for frame in sub.frames():
                    yield frame
            finally:
                worker.bus.unsubscribe(sub)

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/shutdown")
    async def shutdown() -> dict[str, Any]:
        logger.info("Shutdown requested over HTTP")
        worker.request_shutdown()
        return {"ok": True, "message": "Shutting down"}

    return app


def _bind(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((HOST, port))
    sock.listen(128)
    sock.setblocking(False)
    return sock


async def serve(settings: Settings, worker: Worker | None = None) -> None:
    worker = worker or Worker(settings)
    app = create_app(worker)

    sock = _bind(settings.sidecar_port)
    port = sock.getsockname()[1]
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            log_config=None,
            access_log=False,
            lifespan="on",
            timeout_graceful_shutdown=int(FORCE_EXIT_SECONDS),
        )
    )
    handshake = HandshakeFiles(settings.data_dir)
    force_exit: threading.Timer | None = None

    async def announce_and_wait() -> None:
        nonlocal force_exit
        while not server.started:
            await asyncio.sleep(0.05)
        handshake.write(port)
        logger.info("Worker listening on http://%s:%d (pid=%d)", HOST, port, os.getpid())

        await worker.shutdown_requested.wait()
        # Open SSE streams would otherwise hold the graceful shutdown.
        worker.bus.close_all()
        server.should_exit = True
        force_exit = threading.Timer(FORCE_EXIT_SECONDS * 2, os._exit, args=(0,))
        force_exit.daemon = True
        force_exit.start()

    watcher = asyncio.create_task(announce_and_wait(), name="worker-announce")
    try:
        await server.serve(sockets=[sock])
    finally:
        watcher.cancel()
        if force_exit is not None:
            force_exit.cancel()
        if handshake.read_pid() == os.getpid():
            handshake.remove()
        sock.close()


def main() -> None:
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    log_file = setup_logging(log_dir=settings.log_dir, log_name="sidecar.log", console_level=level)
    logger.info("Worker starting (log=%s db=%s)", log_file, settings.db_path)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
