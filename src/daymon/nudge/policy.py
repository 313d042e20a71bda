# src/daymon/nudge/policy.py

from __future__ import annotations

import logging
from datetime import datetime, time as dtime

from ..core.ports import TaskRepo
from ..tasks.task_models import NudgeMode

logger = logging.getLogger(__name__)

QUIET_HOURS_ENABLED_KEY = "auto_nudge_quiet_hours"
QUIET_HOURS_FROM_KEY = "auto_nudge_quiet_from"
QUIET_HOURS_UNTIL_KEY = "auto_nudge_quiet_until"

DEFAULT_QUIET_FROM = "08:00"
DEFAULT_QUIET_UNTIL = "22:00"


def should_nudge(mode: str | None, success: bool) -> bool:
    """
    Per-task nudge decision. Does not look at quiet hours.

    Unknown modes notify, the same as "always".
    """
    if mode == NudgeMode.NEVER:
        return False
    if mode == NudgeMode.FAILURE_ONLY:
        return not success
    return True


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.strip().split(":", 1)
    h, m = int(hours), int(minutes)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"not a HH:MM time: {hhmm!r}")
    return h * 60 + m


def is_in_quiet_hours(now: datetime | dtime, quiet_from: str, quiet_until: str) -> bool:
    """
    True when `now` falls inside the quiet window.

    from <= until: same-day window [from, until)
    from >  until: window spans midnight (now >= from or now < until)
    """
    current = now.hour * 60 + now.minute
    start = _minutes(quiet_from)
    end = _minutes(quiet_until)
    if start <= end:
        return start <= current < end
    return current >= start or current < end


def quiet_hours_active(repo: TaskRepo, now: datetime) -> bool:
    """
    Quiet hours as configured in the settings table.

    Disabled unless explicitly enabled. Any failure (store unavailable, bad
    HH:MM value) counts as "not quiet" so the nudge still goes out.
    """
    try:
        if repo.get_setting(QUIET_HOURS_ENABLED_KEY) != "true":
            return False
        quiet_from = repo.get_setting(QUIET_HOURS_FROM_KEY) or DEFAULT_QUIET_FROM
        quiet_until = repo.get_setting(QUIET_HOURS_UNTIL_KEY) or DEFAULT_QUIET_UNTIL
        return is_in_quiet_hours(now, quiet_from, quiet_until)
    except Exception:
        logger.warning("Quiet hours check failed; treating as not quiet", exc_info=True)
        return False
