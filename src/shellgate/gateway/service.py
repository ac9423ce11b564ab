"""Gateway Service: the operations exposed to transports.

Wires config → safety gate → executor → providers → store → orchestrator,
and translates internal exceptions into ``ErrorResponse`` objects that are
safe to hand to end users (category, fixed message, retry hint).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

from shellgate.config import ShellgateConfig
from shellgate.core.circuit_breaker import BreakerRegistry, CircuitBreakerOptions
from shellgate.core.errors import (
    CircuitOpenError,
    ConfigError,
    ConversationBusyError,
    ConversationNotFoundError,
    ProviderError,
    ScriptExecutionError,
    ScriptValidationError,
    ShellgateError,
)
from shellgate.core.orchestrator import TurnOrchestrator
from shellgate.core.providers import ProviderRegistry, create_provider_registry
from shellgate.core.session_executor import (
    SessionBackend,
    SessionExecutor,
    create_session_executor,
)
from shellgate.gateway.conversation_store import (
    ConversationStore,
    create_conversation_store,
)
from shellgate.healthcheck import health_report
from shellgate.models import CircuitBreakerStats, ExecutionResult, TurnResult
from shellgate.security.audit import AuditSink, LogAuditSink
from shellgate.security.script_gate import DEFAULT_PATTERNS, ScriptSafetyGate
from shellgate.security.secrets import EnvSecretResolver, SecretResolver
from shellgate.utils.logging import get_logger

log = get_logger(__name__)

SESSION_POOL_TOKEN_SECRET = "session-pool-token"

ErrorCategory = Literal[
    "validation",
    "execution",
    "provider",
    "circuit_open",
    "configuration",
    "conflict",
    "not_found",
    "internal",
]


# ============================================================================
# Fehler-Übersetzung
# ============================================================================


class ErrorResponse(BaseModel, frozen=True):
    """Transport-facing error. Never carries stack traces or raw backend text."""

    category: ErrorCategory
    message: str
    error_code: str = "INTERNAL_ERROR"
    retry_after_seconds: float | None = None


def error_response(exc: BaseException) -> ErrorResponse:
    """Maps an exception to its transport representation.

    Order matters: CircuitOpenError is a ProviderError, UnknownProviderError
    a ConfigError.
    """
    match exc:
        case ScriptValidationError():
            return ErrorResponse(
                category="validation",
                message="The script was rejected by the safety check.",
                error_code=exc.error_code,
            )
        case ScriptExecutionError():
            return ErrorResponse(
                category="execution",
                message="The script could not be executed.",
                error_code=exc.error_code,
            )
        case CircuitOpenError():
            return ErrorResponse(
                category="circuit_open",
                message="The model provider is temporarily unavailable. Please retry later.",
                error_code=exc.error_code,
                retry_after_seconds=exc.retry_after,
            )
        case ProviderError():
            return ErrorResponse(
                category="provider",
                message="The model provider failed to answer.",
                error_code=exc.error_code,
                retry_after_seconds=exc.retry_after,
            )
        case ConfigError():
            return ErrorResponse(
                category="configuration",
                message="The service is misconfigured.",
                error_code=exc.error_code,
            )
        case ConversationBusyError():
            return ErrorResponse(
                category="conflict",
                message="A message for this conversation is still being processed.",
                error_code=exc.error_code,
            )
        case ConversationNotFoundError():
            return ErrorResponse(
                category="not_found",
                message="Conversation not found.",
                error_code=exc.error_code,
            )
        case ShellgateError():
            return ErrorResponse(
                category="internal",
                message="Internal error.",
                error_code=exc.error_code,
            )
        case _:
            return ErrorResponse(category="internal", message="Internal error.")


# ============================================================================
# Service
# ============================================================================


class GatewayService:
    """Facade over the orchestrator plus read-only status operations."""

    def __init__(
        self,
        config: ShellgateConfig,
        *,
        orchestrator: TurnOrchestrator,
        providers: ProviderRegistry,
        executor: SessionExecutor,
        conversations: ConversationStore,
    ) -> None:
        self._config = config
        self._orchestrator = orchestrator
        self._providers = providers
        self._executor = executor
        self._conversations = conversations

    @property
    def orchestrator(self) -> TurnOrchestrator:
        return self._orchestrator

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    @property
    def executor(self) -> SessionExecutor:
        return self._executor

    async def process_turn(
        self,
        conversation_id: str | None,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> TurnResult | ErrorResponse:
        """Processes one turn. Failures come back as ErrorResponse, never raised."""
        try:
            return await self._orchestrator.process_turn(conversation_id, message, metadata)
        except ShellgateError as exc:
            log.warning(
                "turn_failed",
                conversation_id=conversation_id,
                error_code=exc.error_code,
                error=exc.message,
            )
            return error_response(exc)
        except Exception as exc:
            log.exception("turn_internal_error", conversation_id=conversation_id, error=str(exc))
            return error_response(exc)

    async def start_conversation(
        self, message: str, metadata: dict[str, Any] | None = None
    ) -> TurnResult | ErrorResponse:
        return await self.process_turn(None, message, metadata)

    async def run_script(
        self,
        script: str,
        input: Any = None,
        timeout: float | None = None,
    ) -> ExecutionResult | ErrorResponse:
        try:
            return await self._orchestrator.run_script(script, input, timeout)
        except ShellgateError as exc:
            log.warning("run_script_failed", error_code=exc.error_code, error=exc.message)
            return error_response(exc)
        except Exception as exc:
            log.exception("run_script_internal_error", error=str(exc))
            return error_response(exc)

    async def terminate_conversation(self, conversation_id: str) -> bool:
        """Ends the conversation's session and deletes its history."""
        await self._executor.terminate_session(conversation_id)
        self._orchestrator.forget(conversation_id)
        deleted = await self._conversations.delete(conversation_id)
        log.info("conversation_terminated", conversation_id=conversation_id, deleted=deleted)
        return deleted

    # Status (read-only)

    def breaker_stats(self) -> dict[str, CircuitBreakerStats]:
        return self._providers.breakers.all_stats()

    def provider_names(self) -> list[str]:
        return self._providers.list_providers()

    async def provider_health(self) -> dict[str, bool]:
        return await self._providers.health_check()

    async def status(self) -> dict[str, Any]:
        return health_report(
            primary_provider=self._config.primary_provider,
            providers=await self.provider_health(),
            breakers=list(self.breaker_stats().values()),
            executor_healthy=await self._executor.health_check(),
        )

    async def close(self) -> None:
        await self._executor.close()
        await self._providers.close()
        close_store = getattr(self._conversations, "close", None)
        if close_store is not None:
            close_store()
        log.info("service_closed")


async def create_service(
    config: ShellgateConfig,
    *,
    secrets: SecretResolver | None = None,
    audit: AuditSink | None = None,
    backend: SessionBackend | None = None,
    providers: ProviderRegistry | None = None,
    conversations: ConversationStore | None = None,
) -> GatewayService:
    """Builds the complete service from configuration.

    Raises:
        ConfigError: The primary provider could not be initialized.
    """
    secrets = secrets or EnvSecretResolver()
    audit = audit or LogAuditSink()

    patterns = DEFAULT_PATTERNS
    if config.safety.extra_blocked_patterns:
        patterns = patterns.with_extra_blocked(config.safety.extra_blocked_patterns)
    validator = ScriptSafetyGate(
        patterns,
        max_script_bytes=config.safety.max_script_bytes,
        max_pipeline_depth=config.safety.max_pipeline_depth,
    )

    auth_token = ""
    if config.executor.type == "session" and backend is None:
        auth_token = await secrets.resolve(SESSION_POOL_TOKEN_SECRET) or ""
    executor = create_session_executor(config, validator, backend=backend, auth_token=auth_token)

    if providers is None:
        breakers = BreakerRegistry(CircuitBreakerOptions.from_config(config.breaker))
        providers = await create_provider_registry(
            config, secrets=secrets, breakers=breakers, audit=audit
        )

    if conversations is None:
        conversations = create_conversation_store(config.store.backend, config.sqlite_path)

    orchestrator = TurnOrchestrator(
        providers,
        conversations,
        executor,
        validator,
        config=config.agent,
        audit=audit,
    )
    log.info(
        "service_ready",
        primary_model=config.agent.primary_model,
        providers=providers.list_providers(),
        executor=config.executor.type,
        store=config.store.backend,
    )
    return GatewayService(
        config,
        orchestrator=orchestrator,
        providers=providers,
        executor=executor,
        conversations=conversations,
    )
