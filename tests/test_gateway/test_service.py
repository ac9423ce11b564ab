"""Tests für den Gateway Service: Fehler-Übersetzung, Verdrahtung, Status."""

from __future__ import annotations

import pytest

from shellgate.config import ShellgateConfig
from shellgate.core.errors import (
    CircuitOpenError,
    CircuitTimeoutError,
    ConfigError,
    ConversationBusyError,
    ConversationNotFoundError,
    ProviderError,
    ScriptExecutionError,
    ScriptValidationError,
    ShellgateError,
    UnknownProviderError,
)
from shellgate.core.llm_backend import ChatOptions, ChatResult, LLMBackendError, MockLLMBackend
from shellgate.core.providers import ProviderRegistry
from shellgate.core.session_executor import MockBackend
from shellgate.gateway.conversation_store import SqliteConversationStore
from shellgate.gateway.service import (
    SESSION_POOL_TOKEN_SECRET,
    ErrorResponse,
    GatewayService,
    create_service,
    error_response,
)
from shellgate.models import ExecutionResult, SafetyLevel, TurnResult, ValidationOutcome
from shellgate.security.audit import InMemoryAuditSink


class StaticSecrets:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._values = values or {}
        self.requested: list[str] = []

    async def resolve(self, name: str) -> str | None:
        self.requested.append(name)
        return self._values.get(name)


class BrokenLLM(MockLLMBackend):
    async def chat(self, model: str, options: ChatOptions) -> ChatResult:
        raise LLMBackendError("HTTP 500 secret-internal-detail", status_code=500)


async def _service(config: ShellgateConfig, **kwargs) -> GatewayService:
    kwargs.setdefault("backend", MockBackend(responder=lambda script: "Hello, World!"))
    return await create_service(
        config, secrets=StaticSecrets(), audit=InMemoryAuditSink(), **kwargs
    )


class TestErrorMapping:
    def test_validation(self) -> None:
        outcome = ValidationOutcome(
            valid=False, errors=["Recursive force delete"], safety_level=SafetyLevel.DANGEROUS
        )
        response = error_response(ScriptValidationError(outcome))
        assert response.category == "validation"
        assert response.error_code == "SCRIPT_INVALID"

    def test_circuit_open_before_provider(self) -> None:
        response = error_response(CircuitOpenError("llm:azure", retry_after=12.5))
        assert response.category == "circuit_open"
        assert response.retry_after_seconds == 12.5

    def test_timeout_is_provider(self) -> None:
        response = error_response(CircuitTimeoutError("llm:azure", 60))
        assert response.category == "provider"
        assert response.error_code == "CIRCUIT_TIMEOUT"

    @pytest.mark.parametrize(
        ("exc", "category"),
        [
            (ScriptExecutionError("pool down"), "execution"),
            (ProviderError("HTTP 500", retry_after=3.0), "provider"),
            (ConfigError("kaputt"), "configuration"),
            (UnknownProviderError("Provider x not found"), "configuration"),
            (ConversationBusyError("conv-1"), "conflict"),
            (ConversationNotFoundError("conv-1"), "not_found"),
            (ShellgateError("irgendwas"), "internal"),
            (RuntimeError("boom"), "internal"),
        ],
    )
    def test_categories(self, exc: BaseException, category: str) -> None:
        assert error_response(exc).category == category

    def test_message_hides_internals(self) -> None:
        response = error_response(ProviderError("HTTP 500: stack trace with api-key=abc"))
        assert "api-key" not in response.message
        assert "stack" not in response.message


class TestService:
    @pytest.mark.asyncio
    async def test_turn_with_mock_stack(self, config: ShellgateConfig) -> None:
        service = await _service(config)
        result = await service.process_turn(None, "please list files")

        assert isinstance(result, TurnResult)
        assert result.nushell_executions
        assert result.nushell_executions[0].result.success
        assert result.nushell_executions[0].result.output == "Hello, World!"
        await service.close()

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_error_response(self, config: ShellgateConfig) -> None:
        service = await _service(config)
        result = await service.process_turn("conv-nope", "Hallo")
        assert isinstance(result, ErrorResponse)
        assert result.category == "not_found"

    @pytest.mark.asyncio
    async def test_provider_failure_is_error_response(self, config: ShellgateConfig) -> None:
        providers = ProviderRegistry({"mock": BrokenLLM()}, "mock/mock-model")
        service = await _service(config, providers=providers)

        result = await service.start_conversation("Hallo")

        assert isinstance(result, ErrorResponse)
        assert result.category == "provider"
        assert "secret-internal-detail" not in result.message

    @pytest.mark.asyncio
    async def test_run_script(self, config: ShellgateConfig) -> None:
        service = await _service(config)
        result = await service.run_script("ph-file read test.txt")
        assert isinstance(result, ExecutionResult)
        assert result.success
        assert result.output == "Hello, World!"

    @pytest.mark.asyncio
    async def test_extra_blocked_patterns_applied(self, config: ShellgateConfig) -> None:
        config.safety.extra_blocked_patterns = [r"ph-azure\s+delete"]
        service = await _service(config)
        result = await service.run_script("ph-azure delete my-vm")
        assert isinstance(result, ExecutionResult)
        assert not result.success
        assert not result.validation.valid

    @pytest.mark.asyncio
    async def test_terminate_conversation(self, config: ShellgateConfig) -> None:
        backend = MockBackend()
        service = await _service(config, backend=backend)
        result = await service.process_turn(None, "please list files")
        assert isinstance(result, TurnResult)

        assert await service.terminate_conversation(result.conversation_id) is True
        assert backend.closed_sessions == [result.conversation_id]
        assert await service.orchestrator.conversations.get(result.conversation_id) is None
        assert await service.terminate_conversation(result.conversation_id) is False

    @pytest.mark.asyncio
    async def test_status_healthy(self, config: ShellgateConfig) -> None:
        service = await _service(config)
        status = await service.status()
        assert status["status"] == "healthy"
        assert status["providers"] == {"mock": True}
        assert [b["name"] for b in status["breakers"]] == ["llm:mock"]
        assert service.provider_names() == ["mock"]
        assert "llm:mock" in service.breaker_stats()

    @pytest.mark.asyncio
    async def test_sqlite_store_from_config(self, config: ShellgateConfig) -> None:
        config.store.backend = "sqlite"
        service = await _service(config)
        assert isinstance(service.orchestrator.conversations, SqliteConversationStore)
        await service.process_turn(None, "Hallo")
        await service.close()
        assert config.sqlite_path.exists()

    @pytest.mark.asyncio
    async def test_missing_primary_is_config_error(self, config: ShellgateConfig) -> None:
        config.agent.primary_model = "azure/gpt-4o"
        with pytest.raises(ConfigError):
            await _service(config)

    @pytest.mark.asyncio
    async def test_session_pool_token_from_secret(self, config: ShellgateConfig) -> None:
        config.executor.type = "session"
        config.executor.session_pool_endpoint = "https://pool.example"
        secrets = StaticSecrets({SESSION_POOL_TOKEN_SECRET: "tok"})
        service = await create_service(config, secrets=secrets, audit=InMemoryAuditSink())
        assert SESSION_POOL_TOKEN_SECRET in secrets.requested
        assert service.executor.backend.name == "session"
        await service.close()
