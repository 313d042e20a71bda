# tests/test_nudge_policy.py

from __future__ import annotations

from datetime import datetime, time

import pytest

from daymon.nudge.policy import (
    QUIET_HOURS_ENABLED_KEY,
    QUIET_HOURS_FROM_KEY,
    QUIET_HOURS_UNTIL_KEY,
    is_in_quiet_hours,
    quiet_hours_active,
    should_nudge,
)

from .fakes import FakeTaskRepo


@pytest.mark.parametrize(
    ("mode", "success", "expected"),
    [
        ("always", True, True),
        ("always", False, True),
        ("failure_only", True, False),
        ("failure_only", False, True),
        ("never", True, False),
        ("never", False, False),
        ("something-else", True, True),
        (None, False, True),
    ],
)
def test_should_nudge_truth_table(mode, success, expected) -> None:
    assert should_nudge(mode, success) is expected


def test_same_day_window_is_half_open() -> None:
    assert is_in_quiet_hours(time(0, 0), "00:00", "23:59")
    assert is_in_quiet_hours(time(12, 30), "00:00", "23:59")
    assert is_in_quiet_hours(time(23, 58), "00:00", "23:59")
    assert not is_in_quiet_hours(time(23, 59), "00:00", "23:59")


def test_window_across_midnight() -> None:
    assert is_in_quiet_hours(time(23, 0), "22:00", "08:00")
    assert is_in_quiet_hours(time(7, 0), "22:00", "08:00")
    assert not is_in_quiet_hours(time(12, 0), "22:00", "08:00")
    assert not is_in_quiet_hours(time(8, 0), "22:00", "08:00")


def test_malformed_bounds_raise() -> None:
    with pytest.raises(ValueError):
        is_in_quiet_hours(time(1, 0), "25:00", "08:00")


def test_quiet_hours_disabled_unless_enabled() -> None:
    repo = FakeTaskRepo()
    noon = datetime(2026, 3, 1, 12, 0)
    assert quiet_hours_active(repo, noon) is False

    repo.settings[QUIET_HOURS_ENABLED_KEY] = "true"
    # Defaults 08:00-22:00
    assert quiet_hours_active(repo, noon) is True
    assert quiet_hours_active(repo, datetime(2026, 3, 1, 23, 0)) is False

    repo.settings[QUIET_HOURS_FROM_KEY] = "22:00"
    repo.settings[QUIET_HOURS_UNTIL_KEY] = "08:00"
    assert quiet_hours_active(repo, noon) is False
    assert quiet_hours_active(repo, datetime(2026, 3, 1, 23, 0)) is True


def test_quiet_hours_fail_open() -> None:
    repo = FakeTaskRepo()
    repo.settings[QUIET_HOURS_ENABLED_KEY] = "true"
    repo.settings[QUIET_HOURS_FROM_KEY] = "late"
    assert quiet_hours_active(repo, datetime(2026, 3, 1, 12, 0)) is False

    class BrokenRepo:
        def get_setting(self, key):
            raise RuntimeError("store unavailable")

    assert quiet_hours_active(BrokenRepo(), datetime(2026, 3, 1, 12, 0)) is False
