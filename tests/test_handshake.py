# tests/test_handshake.py

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import psutil

from daymon.sidecar.handshake import WORKER_MODULE, HandshakeFiles, is_worker_process, pid_alive


def _dead_pid() -> int:
    pid = 4_000_000
    while psutil.pid_exists(pid):
        pid += 1
    return pid


def test_write_read_remove(tmp_path: Path) -> None:
    files = HandshakeFiles(tmp_path / "data")

    files.write(51234)

    assert files.port_file.read_text("ascii") == "51234"
    assert files.read_port() == 51234
    assert files.read_pid() == os.getpid()
    assert files.read_live_port() == 51234

    files.remove()
    assert files.read_port() is None and files.read_pid() is None
    files.remove()


def test_stale_pid_is_not_reused(tmp_path: Path) -> None:
    files = HandshakeFiles(tmp_path)
    files.write(51234, pid=_dead_pid())

    assert files.read_live_port() is None


def test_garbage_and_zero_port(tmp_path: Path) -> None:
    files = HandshakeFiles(tmp_path)
    files.port_file.write_text("not-a-port", "ascii")
    files.pid_file.write_text(str(os.getpid()), "ascii")
    assert files.read_live_port() is None

    files.port_file.write_text("0", "ascii")
    assert files.read_live_port() is None


def test_pid_alive() -> None:
    assert pid_alive(os.getpid())
    assert not pid_alive(0)
    assert not pid_alive(_dead_pid())


def test_is_worker_process_checks_the_command_line() -> None:
    assert not is_worker_process(os.getpid())
    assert not is_worker_process(_dead_pid())

    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)", WORKER_MODULE])
    try:
        assert is_worker_process(proc.pid)
    finally:
        proc.kill()
        proc.wait()
    assert not is_worker_process(proc.pid)
