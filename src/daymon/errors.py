# src/daymon/errors.py

from __future__ import annotations


class DaymonError(Exception):
    """Base error for daymon."""


class InvalidCronExpression(DaymonError):
    """A task's cron expression cannot be scheduled."""

    def __init__(self, expression: str | None, reason: str = "") -> None:
        self.expression = expression
        self.reason = reason
        msg = f"Invalid cron expression: {expression!r}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)
