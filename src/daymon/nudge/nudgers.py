# src/daymon/nudge/nudgers.py

from __future__ import annotations

import logging
import re
import subprocess
import sys

from ..core.ports import Nudger
from ..tasks.task_models import NudgeOptions

logger = logging.getLogger(__name__)

# IDEs that may host the companion chat, by macOS bundle identifier.
IDE_BUNDLE_IDS = (
    "com.todesktop.230313mzl4w4u92",  # Cursor
    "com.microsoft.VSCode",
    "com.microsoft.VSCodeInsiders",
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def build_nudge_message(options: NudgeOptions, *, app_name: str = "Daymon") -> str:
    status = "completed successfully" if options.success else "failed"
    duration = f"{options.duration_ms / 1000:.1f}"
    safe_name = _CONTROL_CHARS.sub("", options.task_name)
    message = f'{app_name} task "{safe_name}" (id: {options.task_id}) {status} in {duration}s.'
    return message + " Show me the results using daymon_task_history."


def _applescript_string(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class LogNudger:
    """Fallback for platforms without window automation: log and move on."""

    def send(self, options: NudgeOptions) -> None:
        logger.info(
            "Nudge: task %s (%s) %s",
            options.task_id,
            options.task_name,
            "succeeded" if options.success else f"failed: {options.error_message or 'unknown error'}",
        )


class MacOSNudger:
    """
    Focus a running IDE and type a status line into its chat input via osascript.

    Never raises: a missing IDE or denied automation permission is logged.
    """

    def __init__(self, *, app_name: str = "Daymon", timeout_seconds: float = 10.0) -> None:
        self.app_name = app_name
        self.timeout_seconds = timeout_seconds

    def _osascript(self, script: str, timeout: float) -> None:
        subprocess.run(
            ["osascript", "-e", script],
            check=True,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

    def find_ide_bundle(self) -> str | None:
        for bundle_id in IDE_BUNDLE_IDS:
            try:
                self._osascript(
                    'tell application "System Events" to get first application process '
                    f'whose bundle identifier is "{bundle_id}"',
                    timeout=3.0,
                )
                return bundle_id
            except (subprocess.SubprocessError, OSError):
                continue
        return None

    def send(self, options: NudgeOptions) -> None:
        try:
            bundle_id = self.find_ide_bundle()
            if bundle_id is None:
                logger.warning("Nudge skipped: no supported IDE is running")
                return

            escaped = _applescript_string(build_nudge_message(options, app_name=self.app_name))
            script = (
                f'tell application id "{bundle_id}" to activate\n'
                "delay 0.3\n"
                'tell application "System Events"\n'
                '  keystroke "l" using command down\n'
                "  delay 0.3\n"
                f'  keystroke "{escaped}"\n'
                "  keystroke return\n"
                "end tell"
            )
            logger.info("Sending nudge for task %s to %s", options.task_id, bundle_id)
            self._osascript(script, timeout=self.timeout_seconds)
            logger.info("Nudge sent for task %s", options.task_id)
        except Exception as e:
            logger.warning("Nudge failed for task %s: %r", options.task_id, e)


def select_nudger(platform: str | None = None, *, app_name: str = "Daymon") -> Nudger:
    """Pick the Nudger for this OS once, at startup."""
    platform = platform or sys.platform
    if platform == "darwin":
        return MacOSNudger(app_name=app_name)
    return LogNudger()
