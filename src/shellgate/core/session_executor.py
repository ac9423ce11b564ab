"""Sandboxed Session Executor.

Runs validated Nushell scripts inside per-conversation sessions.

  - Every script is revalidated here; a caller's verdict is never trusted.
  - Sessions live in an arena keyed by conversation id: created lazily,
    reused for later scripts of the same conversation, destroyed on
    explicit termination or idle expiry.
  - Hard wall-clock timeout per script; output is capped with a marker.

The actual runtime is a ``SessionBackend``: a local ``nu`` process, a remote
session pool, or a mock. Tests substitute their own backend.
"""

from __future__ import annotations

import asyncio
import math
import shutil
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from shellgate.core.errors import ScriptExecutionError, ScriptValidationError
from shellgate.core.sandbox import (
    MAX_OUTPUT_BYTES,
    ProcessResult,
    build_env,
    run_process,
    truncate_output,
)
from shellgate.models import ExecutionRequest, ExecutionResult, new_id
from shellgate.security.script_gate import (
    infer_output_format,
    parse_structured_output,
    validate_or_raise,
)
from shellgate.utils.logging import get_logger

if TYPE_CHECKING:
    from shellgate.config import ShellgateConfig
    from shellgate.security.script_gate import ScriptValidator

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
SESSION_ID_PREFIX = "sg"


# ============================================================================
# Sessions
# ============================================================================


@dataclass
class Session:
    """One execution session. ``key`` is the conversation id it belongs to."""

    key: str
    id: str = field(default_factory=lambda: new_id(SESSION_ID_PREFIX))
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    executions: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class SessionArena:
    """Sessions indexed by key with explicit create/reuse/destroy."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def get_or_create(self, key: str) -> tuple[Session, bool]:
        session = self._sessions.get(key)
        if session is not None:
            return session, False
        now = self._clock()
        session = Session(key=key, created_at=now, last_used=now)
        self._sessions[key] = session
        return session, True

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def remove(self, key: str) -> Session | None:
        return self._sessions.pop(key, None)

    def idle(self, max_idle_seconds: float) -> list[Session]:
        """Sessions ohne Nutzung seit ``max_idle_seconds`` (und ohne laufendes Skript)."""
        now = self._clock()
        return [
            s for s in self._sessions.values()
            if now - s.last_used > max_idle_seconds and not s.lock.locked()
        ]

    def touch(self, session: Session) -> None:
        session.last_used = self._clock()

    def keys(self) -> list[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)


# ============================================================================
# Backends
# ============================================================================


class SessionBackend(ABC):
    """Runtime that actually executes a script for a session."""

    name: str = "backend"

    async def open(self, session: Session) -> None:  # noqa: B027
        """Hook beim Anlegen einer Session."""

    async def close(self, session: Session) -> None:  # noqa: B027
        """Hook beim Beenden einer Session."""

    @abstractmethod
    async def run(
        self,
        session: Session,
        script: str,
        *,
        timeout: float,
        env: dict[str, str],
    ) -> ProcessResult:
        """Executes ``script``. Raises ScriptExecutionError on transport failure."""
        ...

    @abstractmethod
    async def health_check(self) -> bool: ...

    async def aclose(self) -> None:  # noqa: B027
        """Gibt Backend-Ressourcen frei."""


class MockBackend(SessionBackend):
    """Returns canned output without running anything.

    Args:
        responder: Maps a script to its stdout. Default echoes the script.
    """

    name = "mock"

    def __init__(self, responder: Callable[[str], str] | None = None) -> None:
        self._responder = responder or (lambda script: f"[Mock Executor] Would execute:\n{script}")
        self.calls: list[tuple[str, str]] = []
        self.closed_sessions: list[str] = []

    async def run(
        self,
        session: Session,
        script: str,
        *,
        timeout: float,
        env: dict[str, str],
    ) -> ProcessResult:
        self.calls.append((session.key, script))
        return ProcessResult(stdout=self._responder(script))

    async def close(self, session: Session) -> None:
        self.closed_sessions.append(session.key)

    async def health_check(self) -> bool:
        return True


class LocalNushellBackend(SessionBackend):
    """Runs ``nu -c <script>`` on the host, one workspace directory per session.

    Session state that survives between scripts is the workspace directory.
    No isolation beyond timeout, environment whitelist and working directory:
    development use only.
    """

    name = "local"

    def __init__(
        self,
        workspace_dir: Path,
        *,
        nu_path: str = "nu",
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ) -> None:
        self._workspace_dir = workspace_dir
        self._nu_path = nu_path
        self._max_output_bytes = max_output_bytes

    def session_dir(self, session: Session) -> Path:
        return self._workspace_dir / session.id

    async def open(self, session: Session) -> None:
        self.session_dir(session).mkdir(parents=True, exist_ok=True)

    async def close(self, session: Session) -> None:
        shutil.rmtree(self.session_dir(session), ignore_errors=True)

    async def run(
        self,
        session: Session,
        script: str,
        *,
        timeout: float,
        env: dict[str, str],
    ) -> ProcessResult:
        return await run_process(
            [self._nu_path, "--no-config-file", "-c", script],
            cwd=self.session_dir(session),
            env=env,
            timeout=timeout,
            max_output_bytes=self._max_output_bytes,
        )

    async def health_check(self) -> bool:
        result = await run_process([self._nu_path, "--version"], timeout=5.0)
        return result.success


class RemoteSessionPoolBackend(SessionBackend):
    """Dynamic sessions in a remote session pool (HTTP API).

    ``POST {endpoint}/code/execute`` with ``X-Session-Id`` runs a script,
    ``GET {endpoint}/sessions`` is the health probe and
    ``DELETE {endpoint}/sessions/{id}`` tears a session down.
    """

    name = "session"

    def __init__(
        self,
        endpoint: str,
        *,
        auth_token: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._auth_token = auth_token
        self._client = client

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self._auth_token:
                headers["Authorization"] = f"Bearer {self._auth_token}"
            self._client = httpx.AsyncClient(
                base_url=self._endpoint,
                headers=headers,
                timeout=httpx.Timeout(connect=10.0, read=120.0, write=30.0, pool=10.0),
                trust_env=False,
            )
        return self._client

    async def run(
        self,
        session: Session,
        script: str,
        *,
        timeout: float,
        env: dict[str, str],
    ) -> ProcessResult:
        client = await self._ensure_client()
        payload: dict[str, Any] = {
            "properties": {
                "codeInputType": "inline",
                "executionType": "synchronous",
                "code": script,
                "timeoutInSeconds": max(1, math.ceil(timeout)),
            },
        }
        start = time.monotonic()
        try:
            resp = await client.post(
                "/code/execute",
                json=payload,
                headers={"X-Session-Id": session.id},
                timeout=timeout + 5.0,
            )
        except httpx.TimeoutException:
            return ProcessResult(
                exit_code=-1,
                timed_out=True,
                error=f"Execution timed out after {timeout:g}s",
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except httpx.HTTPError as exc:
            raise ScriptExecutionError(
                f"Session pool unreachable: {exc}",
                details={"endpoint": self._endpoint},
            ) from exc

        duration_ms = int((time.monotonic() - start) * 1000)
        if resp.status_code != 200:
            log.error("session_pool_http_error", status=resp.status_code, body=resp.text[:500])
            return ProcessResult(
                exit_code=resp.status_code,
                error=f"Execution failed: {resp.status_code} - {resp.text[:500]}",
                duration_ms=duration_ms,
            )

        props = resp.json().get("properties") or {}
        stdout = props.get("stdout") or props.get("executionResult") or ""
        stderr = props.get("stderr") or ""
        return ProcessResult(
            stdout=str(stdout),
            stderr=stderr,
            exit_code=1 if stderr.strip() else 0,
            duration_ms=duration_ms,
        )

    async def close(self, session: Session) -> None:
        client = await self._ensure_client()
        try:
            await client.delete(f"/sessions/{session.id}", timeout=5.0)
            log.info("remote_session_terminated", session_id=session.id)
        except httpx.HTTPError as exc:
            log.warning("remote_session_terminate_failed", session_id=session.id, error=str(exc))

    async def health_check(self) -> bool:
        try:
            client = await self._ensure_client()
            resp = await client.get("/sessions", timeout=5.0)
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            log.warning("session_pool_health_failed", error=str(exc))
            return False

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ============================================================================
# Executor
# ============================================================================


class SessionExecutor:
    """Validates, then runs scripts in per-conversation sessions.

    Args:
        backend: Runtime that executes scripts.
        validator: Safety gate used for revalidation.
        default_timeout: Timeout when the request carries none.
        max_output_bytes: Output cap (characters of stdout).
        idle_seconds: Sessions unused this long are terminated.
        env: Environment passed to every script.
        clock: Monotonic clock for idle tracking.
    """

    def __init__(
        self,
        backend: SessionBackend,
        validator: ScriptValidator,
        *,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        idle_seconds: float = 1800.0,
        env: dict[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._validator = validator
        self._default_timeout = default_timeout
        self._max_output_bytes = max_output_bytes
        self._idle_seconds = idle_seconds
        self._env = env or {}
        self._arena = SessionArena(clock)
        self._arena_lock = asyncio.Lock()

    @property
    def backend(self) -> SessionBackend:
        return self._backend

    @property
    def arena(self) -> SessionArena:
        return self._arena

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Executes one script. Never raises for script-level failures."""
        start = time.monotonic()
        key = request.session_id or new_id(SESSION_ID_PREFIX)

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            validation = validate_or_raise(self._validator, request.script)
        except ScriptValidationError as exc:
            log.warning(
                "execution_refused_invalid", session_key=key, errors=exc.outcome.errors
            )
            return ExecutionResult(
                success=False,
                error=exc.message,
                duration_ms=elapsed_ms(),
                session_id=key,
                validation=exc.outcome,
            )

        await self.expire_idle_sessions()
        session = await self._acquire_session(key)
        timeout = request.timeout_seconds or self._default_timeout
        script = validation.script or request.script

        async with session.lock:
            self._arena.touch(session)
            log.info(
                "script_exec_start",
                session_key=key,
                backend=self._backend.name,
                timeout_s=timeout,
                script_preview=script[:80],
            )
            try:
                proc = await asyncio.wait_for(
                    self._backend.run(
                        session,
                        script,
                        timeout=timeout,
                        env={**self._env, **request.env},
                    ),
                    timeout=timeout,
                )
            except TimeoutError:
                proc = ProcessResult(
                    exit_code=-1,
                    timed_out=True,
                    error=f"Execution timed out after {timeout:g}s",
                )
            except ScriptExecutionError as exc:
                log.error("script_exec_backend_error", session_key=key, error=exc.message)
                proc = ProcessResult(exit_code=-1, error=exc.message)
            session.executions += 1
            self._arena.touch(session)

        output, truncated = truncate_output(proc.stdout, self._max_output_bytes)
        success = proc.success
        error = proc.error
        if not success and error is None:
            error = proc.stderr.strip() or f"Exit code {proc.exit_code}"

        hint = infer_output_format(script)
        result = ExecutionResult(
            success=success,
            output=output,
            data=parse_structured_output(output) if success and not truncated else None,
            error=error,
            duration_ms=elapsed_ms(),
            session_id=key,
            validation=validation,
            timed_out=proc.timed_out,
            truncated=truncated or proc.truncated,
            output_format=hint.format,
            output_columns=list(hint.columns),
        )
        log.info(
            "script_exec_done",
            session_key=key,
            success=result.success,
            timed_out=result.timed_out,
            duration_ms=result.duration_ms,
            output_len=len(output),
        )
        return result

    async def _acquire_session(self, key: str) -> Session:
        async with self._arena_lock:
            session, created = self._arena.get_or_create(key)
            if created:
                try:
                    await self._backend.open(session)
                except Exception:
                    self._arena.remove(key)
                    raise
                log.info("session_created", session_key=key, session_id=session.id)
        return session

    async def terminate_session(self, session_id: str) -> None:
        """Tears down the session for ``session_id``. Idempotent."""
        async with self._arena_lock:
            session = self._arena.remove(session_id)
        if session is None:
            return
        async with session.lock:
            await self._backend.close(session)
        log.info("session_terminated", session_key=session_id, executions=session.executions)

    async def expire_idle_sessions(self) -> list[str]:
        expired = [s.key for s in self._arena.idle(self._idle_seconds)]
        for key in expired:
            await self.terminate_session(key)
        if expired:
            log.info("sessions_expired", count=len(expired))
        return expired

    async def health_check(self) -> bool:
        """Prüft ob die Laufzeit erreichbar ist, ohne eine Session anzulegen."""
        try:
            return await self._backend.health_check()
        except Exception as exc:
            log.warning("executor_health_failed", error=str(exc))
            return False

    async def close(self) -> None:
        for key in self._arena.keys():
            await self.terminate_session(key)
        await self._backend.aclose()


def create_session_executor(
    config: ShellgateConfig,
    validator: ScriptValidator,
    *,
    backend: SessionBackend | None = None,
    auth_token: str = "",
) -> SessionExecutor:
    """Erstellt den konfigurierten Executor. ``backend`` überschreibt die Konfiguration."""
    cfg = config.executor
    if backend is None:
        match cfg.type:
            case "local":
                log.warning("local_executor_no_isolation", workspace=str(config.workspace_dir))
                backend = LocalNushellBackend(
                    config.workspace_dir,
                    nu_path=cfg.nu_path,
                    max_output_bytes=cfg.max_output_bytes,
                )
            case "session":
                backend = RemoteSessionPoolBackend(
                    cfg.session_pool_endpoint, auth_token=auth_token
                )
            case _:
                backend = MockBackend()

    return SessionExecutor(
        backend,
        validator,
        default_timeout=cfg.default_timeout_seconds,
        max_output_bytes=cfg.max_output_bytes,
        idle_seconds=cfg.session_idle_seconds,
        env=build_env(cfg.env_passthrough) if cfg.type == "local" else {},
    )
