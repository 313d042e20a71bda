# src/daymon/tasks/executor.py

from __future__ import annotations

"""
Automation engine executor.

Runs the engine CLI (`claude -p <prompt> --output-format stream-json`) as a
subprocess and turns its stream into an ExecutionResult plus progress updates.

Timeout policy: SIGTERM at the boundary, SIGKILL if the process is still alive
after the grace period. A timed-out process is never left running.
"""

import asyncio
import json
import logging
import os
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..core.ports import ProgressCallback
from .task_models import ExecutionResult, ProgressUpdate

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 5.0
STREAM_LIMIT_BYTES = 16 * 1024 * 1024


@dataclass(slots=True, frozen=True)
class ParsedProgress:
    fraction: float | None
    message: str
    is_tool_use: bool


def parse_stream_event(event: dict[str, Any], tool_call_count: int) -> ParsedProgress | None:
    """Map one stream-json event to a progress update (None = not interesting)."""
    etype = event.get("type")

    if etype == "content_block_start":
        block = event.get("content_block") or {}
        if isinstance(block, dict) and block.get("type") == "tool_use":
            tool = block.get("name") or "tool"
            return ParsedProgress(None, f"Step {tool_call_count + 1}: Using {tool}...", True)

    if etype == "assistant":
        message = event.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        for block in content or []:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                tool = block.get("name") or "tool"
                return ParsedProgress(None, f"Step {tool_call_count + 1}: Using {tool}...", True)

    if etype == "result":
        return ParsedProgress(1.0, "Completed", False)

    return None


class ClaudeCodeExecutor:
    """Executor port implementation backed by an asyncio subprocess."""

    def __init__(
            self,
            command: str = "claude",
            *,
            extra_args: Sequence[str] = (),
            kill_grace_seconds: float = KILL_GRACE_SECONDS,
            env: dict[str, str] | None = None,
    ) -> None:
        self.command = command
        self.extra_args = list(extra_args)
        self.kill_grace_seconds = float(kill_grace_seconds)
        self._env = env

    def build_args(self, prompt: str) -> list[str]:
        return [self.command, "-p", prompt, "--output-format", "stream-json", "--verbose", *self.extra_args]

    async def run(
            self,
            prompt: str,
            *,
            timeout_seconds: float,
            on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(prompt),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env if self._env is not None else dict(os.environ),
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError:
            return ExecutionResult(
                stdout="",
                stderr=f"{self.command} CLI not found on PATH",
                exit_code=1,
                duration_ms=elapsed_ms(),
            )
        except OSError as e:
            return ExecutionResult(
                stdout="",
                stderr=f"Failed to spawn {self.command}: {e}",
                exit_code=1,
                duration_ms=elapsed_ms(),
            )

        stdout_lines: list[str] = []
        stderr_chunks: list[bytes] = []
        state = {"result_text": "", "tool_calls": 0}

        async def pump_stdout() -> None:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace")
                stdout_lines.append(line)
                text = line.strip()
                if not text:
                    continue
                try:
                    event = json.loads(text)
                except ValueError:
                    continue
                if not isinstance(event, dict):
                    continue
                if event.get("type") == "result" and event.get("result"):
                    state["result_text"] = str(event["result"])
                if on_progress is None:
                    continue
                parsed = parse_stream_event(event, int(state["tool_calls"]))
                if parsed is None:
                    continue
                if parsed.is_tool_use:
                    state["tool_calls"] = int(state["tool_calls"]) + 1
                try:
                    on_progress(ProgressUpdate(fraction=parsed.fraction, message=parsed.message))
                except Exception:
                    logger.exception("progress callback failed")

        async def pump_stderr() -> None:
            assert proc.stderr is not None
            stderr_chunks.append(await proc.stderr.read())

        readers = asyncio.gather(pump_stdout(), pump_stderr())

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Executor timed out after %.0fs (pid=%s); terminating", timeout_seconds, proc.pid)
            await self._terminate(proc)

        try:
            await asyncio.wait_for(readers, timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            # A grandchild may still hold the pipes open.
            readers.cancel()
            logger.warning("Executor output pipes still open after exit (pid=%s)", proc.pid)

        result_text = str(state["result_text"])
        stdout = result_text.strip() if result_text else "".join(stdout_lines).strip()
        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
        code = proc.returncode

        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=1 if code is None else int(code),
            duration_ms=elapsed_ms(),
            timed_out=timed_out,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
            return
        except asyncio.TimeoutError:
            logger.warning("pid=%s ignored SIGTERM for %.0fs; sending SIGKILL", proc.pid, self.kill_grace_seconds)
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
