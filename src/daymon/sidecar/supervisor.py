# src/daymon/sidecar/supervisor.py

from __future__ import annotations

"""
Host-side supervision of the detached worker process.

Lifecycle:
    NOT_LAUNCHED -> LAUNCHING -> READY -> RESTARTING -> LAUNCHING -> ...
    any phase -> SHUTTING_DOWN -> STOPPED

- launch(): reuse a live worker found through the handshake files, or spawn
  one detached and wait for its port file
- health: GET /health every interval; after N consecutive failures the worker
  is considered dead: its recorded pid is terminated (SIGTERM, then SIGKILL
  after a grace period) and a fresh worker is launched once
- events: GET /events is streamed and task:complete / task:failed frames are
  handed to `on_event`; the stream reconnects after a fixed delay, forever
- request(): thin JSON proxy to the worker; None on any failure
"""

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import httpx

from ..config import Settings
from ..core.clock import SystemClock, Ticker
from ..core.ports import Clock
from ..notifications import EVENT_TASK_COMPLETE, EVENT_TASK_FAILED
from ..tasks.task_models import NudgeMode
from .handshake import WORKER_MODULE, HandshakeFiles, is_worker_process
from .sse import SSEFrame, SSEParser

logger = logging.getLogger(__name__)

HOST = "127.0.0.1"
REQUEST_TIMEOUT_SECONDS = 10.0
HEALTH_TIMEOUT_SECONDS = 5.0
HEALTH_INTERVAL_SECONDS = 30.0
MAX_HEALTH_FAILURES = 3
PORT_WAIT_SECONDS = 8.0
PORT_POLL_SECONDS = 0.2
SSE_RECONNECT_SECONDS = 2.0
RETIRE_GRACE_SECONDS = 5.0
WORKER_STDIO_LOG = "sidecar.stdio.log"

EventCallback = Callable[[str, dict[str, Any]], None]
SpawnFn = Callable[[], int | None]
KillFn = Callable[[int, int], None]
WorkerCheckFn = Callable[[int], bool]

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class SidecarPhase(StrEnum):
    NOT_LAUNCHED = "not_launched"
    LAUNCHING = "launching"
    READY = "ready"
    RESTARTING = "restarting"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def should_show_notification(nudge_mode: str | None, success: bool) -> bool:
    """Host-side display rule: 'always', or 'failure_only' when the run failed."""
    mode = nudge_mode or NudgeMode.ALWAYS
    return mode == NudgeMode.ALWAYS or (mode == NudgeMode.FAILURE_ONLY and not success)


class SidecarSupervisor:
    def __init__(
            self,
            settings: Settings,
            *,
            on_event: EventCallback | None = None,
            clock: Clock | None = None,
            transport: httpx.AsyncBaseTransport | None = None,
            spawn: SpawnFn | None = None,
            kill: KillFn | None = None,
            is_worker: WorkerCheckFn | None = None,
            health_interval: float | None = None,
            max_health_failures: int = MAX_HEALTH_FAILURES,
            port_wait_seconds: float = PORT_WAIT_SECONDS,
            port_poll_seconds: float = PORT_POLL_SECONDS,
            reconnect_seconds: float = SSE_RECONNECT_SECONDS,
            retire_grace_seconds: float = RETIRE_GRACE_SECONDS,
    ) -> None:
        self.settings = settings
        self.handshake = HandshakeFiles(settings.data_dir)
        self.on_event = on_event
        self._clock = clock or SystemClock()
        self._transport = transport
        self._spawn = spawn or self._spawn_worker
        self._kill = kill or os.kill
        self._is_worker = is_worker or is_worker_process
        self.max_health_failures = int(max_health_failures)
        self.port_wait_seconds = float(port_wait_seconds)
        self.port_poll_seconds = float(port_poll_seconds)
        self.reconnect_seconds = float(reconnect_seconds)
        self.retire_grace_seconds = float(retire_grace_seconds)

        self.port: int | None = None
        self.consecutive_failures = 0
        self.phase = SidecarPhase.NOT_LAUNCHED
        self.restart_count = 0

        self._client: httpx.AsyncClient | None = None
        self._child: subprocess.Popen[bytes] | None = None
        self._sse_task: asyncio.Task[None] | None = None
        self._health = Ticker(
            health_interval if health_interval is not None else settings.health_interval_seconds,
            self.check_health,
            clock=self._clock,
            name="sidecar-health",
        )

    @property
    def ready(self) -> bool:
        return self.port is not None

    def _url(self, path: str) -> str:
        return f"http://{HOST}:{self.port}{path}"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT_SECONDS)
        return self._client

    # ---- launch ----

    async def launch(self) -> bool:
        """Reuse or start a worker. Returns True once it is READY."""
        return await self._launch(reuse=True)

    async def _launch(self, *, reuse: bool) -> bool:
        if self.phase in (SidecarPhase.SHUTTING_DOWN, SidecarPhase.STOPPED):
            return False
        self.phase = SidecarPhase.LAUNCHING

        if reuse:
            port = self.handshake.read_live_port()
            if port is not None:
                logger.info("Worker already running (pid=%s port=%d)", self.handshake.read_pid(), port)
                self._on_ready(port)
                return True

        # A leftover port file would be mistaken for the new worker's.
        self.handshake.remove_port()
        try:
            pid = self._spawn()
        except OSError:
            logger.exception("Failed to spawn worker")
            self.phase = SidecarPhase.NOT_LAUNCHED
            return False
        logger.info("Worker spawned (pid=%s)", pid)

        port = await self._wait_for_port()
        if port is None:
            logger.error("Worker failed to start: no port file after %.1fs", self.port_wait_seconds)
            self.phase = SidecarPhase.NOT_LAUNCHED
            return False

        logger.info("Worker ready on port %d", port)
        self._on_ready(port)
        return True

    async def _wait_for_port(self) -> int | None:
        started = self._clock.monotonic()
        while True:
            port = self.handshake.read_port()
            if port is not None and port > 0:
                return port
            if self._clock.monotonic() - started >= self.port_wait_seconds:
                return None
            await self._clock.sleep(self.port_poll_seconds)

    def _on_ready(self, port: int) -> None:
        self.port = port
        self.consecutive_failures = 0
        self.phase = SidecarPhase.READY
        self._health.start()
        if self._sse_task is None or self._sse_task.done():
            self._sse_task = asyncio.get_running_loop().create_task(self._sse_loop(), name="sidecar-sse")

    def _spawn_worker(self) -> int:
        log_dir = self.settings.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, **self.settings.worker_env()}

        kwargs: dict[str, Any] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
            )
        else:
            kwargs["start_new_session"] = True

        with open(log_dir / WORKER_STDIO_LOG, "ab") as log:
            self._child = subprocess.Popen(
                [sys.executable, "-m", WORKER_MODULE],
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=log,
                env=env,
                **kwargs,
            )
        return self._child.pid

    # ---- requests ----

    async def request(self, method: str, path: str, body: Any = None) -> Any | None:
        """Parsed JSON (or raw text) from the worker; None when it cannot be reached."""
        if self.port is None:
            return None
        try:
            resp = await self.client.request(method, self._url(path), json=body)
        except httpx.HTTPError as e:
            logger.warning("Worker request failed (%s %s): %r", method, path, e)
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    # ---- health ----

    async def check_health(self) -> None:
        if self.port is None:
            return
        try:
            resp = await self.client.get(self._url("/health"), timeout=HEALTH_TIMEOUT_SECONDS)
            data = resp.json()
            ok = resp.status_code == 200 and isinstance(data, dict) and data.get("ok") is True
        except (httpx.HTTPError, ValueError):
            ok = False

        if ok:
            self.consecutive_failures = 0
            return

        self.consecutive_failures += 1
        logger.warning(
            "Worker health check failed (%d/%d)", self.consecutive_failures, self.max_health_failures
        )
        if self.consecutive_failures >= self.max_health_failures:
            await self._restart()

    async def _restart(self) -> None:
        logger.warning("Worker appears dead, restarting")
        self.phase = SidecarPhase.RESTARTING
        self.restart_count += 1
        self.port = None
        self.consecutive_failures = 0
        # An unreachable worker can still be alive and scheduling against the same database.
        await self._retire_worker(self.handshake.read_pid())
        self.handshake.remove()
        await self._launch(reuse=False)

    async def _retire_worker(self, pid: int | None) -> None:
        """SIGTERM a previous worker, SIGKILL it if it outlives the grace period."""
        if pid is None or pid <= 0 or not self._is_worker(pid):
            return
        logger.info("Retiring unresponsive worker pid=%s", pid)
        self._signal(pid, signal.SIGTERM)
        started = self._clock.monotonic()
        while self._is_worker(pid):
            if self._clock.monotonic() - started >= self.retire_grace_seconds:
                logger.warning("Worker pid=%s ignored SIGTERM, sending SIGKILL", pid)
                self._signal(pid, _SIGKILL)
                return
            await self._clock.sleep(self.port_poll_seconds)

    # ---- events ----

    async def _sse_loop(self) -> None:
        parser = SSEParser()
        while True:
            if self.port is not None:
                parser.reset()
                try:
                    async with self.client.stream(
                            "GET",
                            self._url("/events"),
                            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS, read=None),
                    ) as resp:
                        async for chunk in resp.aiter_text():
                            for frame in parser.feed(chunk):
                                self._dispatch(frame)
                except httpx.HTTPError as e:
                    logger.debug("Event stream dropped: %r", e)
            await self._clock.sleep(self.reconnect_seconds)

    def _dispatch(self, frame: SSEFrame) -> None:
        if frame.event not in (EVENT_TASK_COMPLETE, EVENT_TASK_FAILED):
            return
        try:
            data = json.loads(frame.data)
        except ValueError:
            logger.debug("Malformed event payload ignored: %r", frame.data[:200])
            return
        if not isinstance(data, dict) or self.on_event is None:
            return
        try:
            self.on_event(frame.event, data)
        except Exception:
            logger.exception("on_event handler failed for %s", frame.event)

    # ---- shutdown ----

    def _stop_background(self) -> None:
        self._health.stop()
        task, self._sse_task = self._sse_task, None
        if task is not None and not task.done():
            task.cancel()

    def _terminate_recorded_pid(self) -> None:
        pid = self.handshake.read_pid()
        if pid is None or pid <= 0:
            return
        self._signal(pid, signal.SIGTERM)

    def _signal(self, pid: int, sig: int) -> None:
        try:
            self._kill(pid, sig)
            logger.info("Sent signal %s to worker pid=%s", sig, pid)
        except (ProcessLookupError, PermissionError):
            logger.debug("Worker pid=%s already gone", pid)

    async def shutdown(self) -> None:
        self.phase = SidecarPhase.SHUTTING_DOWN
        self._stop_background()

        if self.port is not None:
            await self.request("POST", "/shutdown")
            # The HTTP request may have been ignored by a hung worker.
            self._terminate_recorded_pid()

        self.port = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.phase = SidecarPhase.STOPPED
        logger.info("Worker supervision stopped")

    def shutdown_sync(self) -> None:
        """No network: signal the recorded pid and drop state (interpreter exit paths)."""
        self.phase = SidecarPhase.SHUTTING_DOWN
        self._stop_background()
        self._terminate_recorded_pid()
        self.port = None
        self.phase = SidecarPhase.STOPPED
