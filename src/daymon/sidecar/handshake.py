# src/daymon/sidecar/handshake.py

"""
Port/pid handshake between the host and the detached worker.

The worker writes `sidecar.port` and `sidecar.pid` (ASCII integers) into the
data directory once its HTTP server is listening, and removes them on exit.
The host reads them to find a worker, or to reuse one left from a previous run.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)

PORT_FILE = "sidecar.port"
PID_FILE = "sidecar.pid"
WORKER_MODULE = "daymon.sidecar.server"
WORKER_SCRIPT = "daymon-worker"


@dataclass(frozen=True, slots=True)
class HandshakeFiles:
    data_dir: Path

    @property
    def port_file(self) -> Path:
        return self.data_dir / PORT_FILE

    @property
    def pid_file(self) -> Path:
        return self.data_dir / PID_FILE

    def write(self, port: int, pid: int | None = None) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.port_file.write_text(str(int(port)), "ascii")
        self.pid_file.write_text(str(int(pid if pid is not None else os.getpid())), "ascii")

    def read_port(self) -> int | None:
        return _read_int(self.port_file)

    def read_pid(self) -> int | None:
        return _read_int(self.pid_file)

    def remove(self) -> None:
        for path in (self.port_file, self.pid_file):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove %s", path, exc_info=True)

    def remove_port(self) -> None:
        try:
            self.port_file.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove %s", self.port_file, exc_info=True)

    def read_live_port(self) -> int | None:
        """Port of a worker that is still alive, or None (stale files are ignored)."""
        port = self.read_port()
        pid = self.read_pid()
        if port is None or port <= 0 or pid is None:
            return None
        if not pid_alive(pid):
            logger.info("Stale handshake files: pid %s is gone", pid)
            return None
        return port


def _read_int(path: Path) -> int | None:
    try:
        raw = path.read_text("ascii").strip()
    except (OSError, UnicodeDecodeError):
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        # AccessDenied still means the pid exists.
        return psutil.pid_exists(pid)


def is_worker_process(pid: int) -> bool:
    """True when `pid` is a live daymon worker, not an unrelated process that reused the pid."""
    if not pid_alive(pid):
        return False
    try:
        cmdline = psutil.Process(pid).cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False
    return any(WORKER_MODULE in part or part.endswith(WORKER_SCRIPT) for part in cmdline)
