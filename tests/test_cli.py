# tests/test_cli.py

from __future__ import annotations

import logging

import pytest

from daymon.cli.main import build_parser, handle_event, run_command
from daymon.config import Settings


def test_handle_event_respects_nudge_mode(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="daymon.cli.main"):
        handle_event("task:complete", {"taskName": "quiet", "nudgeMode": "failure_only"})
        handle_event("task:failed", {"taskName": "loud", "nudgeMode": "failure_only", "errorMessage": "boom"})
        handle_event("task:complete", {"taskName": "digest", "outputPreview": "3 new mails"})

    messages = [r.getMessage() for r in caplog.records]
    assert not any("quiet" in m for m in messages)
    assert any("Task failed: loud: boom" in m for m in messages)
    assert any("Task completed: digest" in m for m in messages)


def test_parser_commands() -> None:
    parser = build_parser()
    assert parser.parse_args([]).command is None
    args = parser.parse_args(["run", "12"])
    assert args.command == "run" and args.task_id == 12


@pytest.mark.asyncio
async def test_command_without_worker_fails(settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    assert await run_command(settings, "status") == 1
    assert "No running worker" in capsys.readouterr().err
