"""Detached process launch.

Used by the on-device backend to start a model via its CLI. The launched
process outlives the call; the caller polls for the effect instead of
waiting on the process.
"""

from __future__ import annotations

import subprocess
import sys
from typing import Protocol

from shellgate.utils.logging import get_logger

log = get_logger(__name__)


class ProcessLauncher(Protocol):
    def launch(self, args: list[str]) -> int:
        """Startet ``args`` losgelöst und gibt die PID zurück."""
        ...


class DetachedProcessLauncher:
    """Starts processes in their own session with all stdio discarded."""

    def launch(self, args: list[str]) -> int:
        kwargs: dict = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
        }
        if sys.platform == "win32":
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
            )
        else:
            kwargs["start_new_session"] = True

        proc = subprocess.Popen(args, **kwargs)  # noqa: S603
        log.info("process_launched_detached", args=args, pid=proc.pid)
        return proc.pid
