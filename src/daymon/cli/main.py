# src/daymon/cli/main.py

"""
Host entrypoint.

Without a command: initializes logging, launches (or reuses) the worker process,
keeps it healthy and logs task notifications until SIGINT/SIGTERM.

One-shot commands talk to an already running worker:
    daymon-host status | sync | run TASK_ID | stop
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any

from ..config import Settings, get_settings
from ..logging_setup import setup_logging
from ..notifications import EVENT_TASK_COMPLETE
from ..sidecar.supervisor import SidecarSupervisor, should_show_notification

logger = logging.getLogger(__name__)


def handle_event(event_type: str, data: dict[str, Any]) -> None:
    success = event_type == EVENT_TASK_COMPLETE
    if not should_show_notification(data.get("nudgeMode"), success):
        return
    name = data.get("taskName") or f"task {data.get('taskId')}"
    if success:
        logger.info("Task completed: %s\n%s", name, data.get("outputPreview") or "")
    else:
        logger.warning("Task failed: %s: %s", name, data.get("errorMessage") or "Unknown error")


async def run_host(settings: Settings) -> None:
    supervisor = SidecarSupervisor(settings, on_event=handle_event)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass

    try:
        if not await supervisor.launch():
            logger.error("Worker did not start; health checks are not running")
        logger.info("Host running. Press Ctrl+C to stop.")
        await stop.wait()
        logger.info("Signal received, shutting down...")
    finally:
        await supervisor.shutdown()


async def run_command(settings: Settings, command: str, task_id: int | None = None) -> int:
    supervisor = SidecarSupervisor(settings)
    port = supervisor.handshake.read_live_port()
    if port is None:
        print("No running worker found.", file=sys.stderr)
        return 1
    supervisor.port = port

    try:
        if command == "status":
            result = await supervisor.request("GET", "/health")
        elif command == "sync":
            result = await supervisor.request("POST", "/sync")
        elif command == "run":
            result = await supervisor.request("POST", f"/tasks/{task_id}/run")
        else:
            result = await supervisor.request("POST", "/shutdown")
    finally:
        await supervisor.client.aclose()

    if result is None:
        print("Worker did not answer.", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2) if isinstance(result, (dict, list)) else result)
    if isinstance(result, dict) and result.get("ok") is False:
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="daymon-host", description="Supervise the daymon worker.")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("status", help="print worker health and scheduler status")
    sub.add_parser("sync", help="reconcile the scheduler with the task table now")
    run = sub.add_parser("run", help="start a task immediately")
    run.add_argument("task_id", type=int)
    sub.add_parser("stop", help="ask the worker to shut down")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    setup_logging(log_dir=settings.log_dir, console_level=level)

    if args.command:
        sys.exit(asyncio.run(run_command(settings, args.command, getattr(args, "task_id", None))))

    logger.info("Starting %s host...", settings.app_name)
    try:
        asyncio.run(run_host(settings))
    except KeyboardInterrupt:
        pass
    logger.info("Bye.")


if __name__ == "__main__":
    main()
