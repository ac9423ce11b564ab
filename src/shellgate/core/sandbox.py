"""Prozess-Runner: bounded execution of interpreter processes.

Runs a command with:
  - hard wall-clock timeout (process group is killed on expiry)
  - output cap with an explicit truncation marker
  - a reduced environment (only whitelisted variables are passed through)

The session executor builds on this; it never spawns processes itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from shellgate.utils.logging import get_logger

log = get_logger(__name__)

MAX_OUTPUT_BYTES = 1_000_000
TRUNCATION_MARKER = "\n... [output truncated]"


@dataclass
class ProcessResult:
    """Ergebnis einer Prozess-Ausführung."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False
    truncated: bool = False
    duration_ms: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None


def _decode(data: bytes) -> str:
    if not data:
        return ""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


def truncate_output(text: str, limit: int = MAX_OUTPUT_BYTES) -> tuple[str, bool]:
    """Kürzt ``text`` auf ``limit`` Zeichen und hängt den Marker an."""
    if len(text) <= limit:
        return text, False
    return text[:limit] + TRUNCATION_MARKER, True


def build_env(passthrough: list[str], extra: dict[str, str] | None = None) -> dict[str, str]:
    """Minimal environment: whitelisted host variables plus ``extra``."""
    env = {key: os.environ[key] for key in passthrough if key in os.environ}
    env.setdefault("PATH", "/usr/local/bin:/usr/bin:/bin")
    if extra:
        env.update(extra)
    return env


def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        if sys.platform != "win32":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()


async def run_process(
    args: list[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
) -> ProcessResult:
    """Runs ``args`` and waits at most ``timeout`` seconds.

    Never raises for process-level problems; a missing binary or OS error is
    reported through ``ProcessResult.error``.
    """
    start = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=str(cwd) if cwd else None,
            env=env,
            start_new_session=sys.platform != "win32",
        )
    except FileNotFoundError:
        log.error("process_binary_not_found", binary=args[0] if args else "")
        return ProcessResult(
            exit_code=-1,
            error=f"Executable not found: {args[0] if args else ''}",
            duration_ms=elapsed_ms(),
        )
    except OSError as exc:
        return ProcessResult(exit_code=-1, error=f"Process error: {exc}", duration_ms=elapsed_ms())

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        _kill(proc)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        log.warning("process_timeout", binary=args[0], timeout_s=timeout)
        return ProcessResult(
            exit_code=-1,
            timed_out=True,
            error=f"Execution timed out after {timeout:g}s",
            duration_ms=elapsed_ms(),
        )
    except asyncio.CancelledError:
        _kill(proc)
        raise

    stdout, truncated = truncate_output(_decode(stdout_bytes), max_output_bytes)
    stderr, _ = truncate_output(_decode(stderr_bytes), max_output_bytes)

    log.debug(
        "process_done",
        binary=args[0],
        exit_code=proc.returncode,
        stdout_len=len(stdout),
        stderr_len=len(stderr),
    )

    return ProcessResult(
        stdout=stdout,
        stderr=stderr,
        exit_code=proc.returncode or 0,
        truncated=truncated,
        duration_ms=elapsed_ms(),
    )
