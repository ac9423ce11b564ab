"""Tests für den Turn Orchestrator: Blöcke, Provider-Fehler, Busy-Policy, direkte Ausführung."""

from __future__ import annotations

import asyncio

import pytest

from shellgate.config import AgentConfig
from shellgate.core.errors import (
    ConversationBusyError,
    ConversationNotFoundError,
    ProviderError,
)
from shellgate.core.llm_backend import ChatOptions, ChatResult, LLMBackendError, MockLLMBackend
from shellgate.core.orchestrator import (
    TurnOrchestrator,
    build_system_prompt,
    extract_script_blocks,
    format_execution_result,
    inject_input,
)
from shellgate.core.providers import ProviderRegistry
from shellgate.core.session_executor import MockBackend, SessionExecutor
from shellgate.gateway.conversation_store import InMemoryConversationStore
from shellgate.models import ExecutionResult, MessageRole, ValidationOutcome
from shellgate.security.audit import AuditKind, InMemoryAuditSink
from shellgate.security.script_gate import ScriptSafetyGate

TWO_BLOCKS = (
    "Ich lese die Datei.\n\n"
    "```nushell\nph-file read test.txt\n```\n\n"
    "Und räume auf.\n\n"
    "```nushell\nrm -rf /\n```\n"
)


class RecordingLLM(MockLLMBackend):
    """Merkt sich alle Chat-Optionen."""

    def __init__(self, responder=None, latency_seconds: float = 0.0) -> None:
        super().__init__(responder=responder, latency_seconds=latency_seconds)
        self.requests: list[ChatOptions] = []

    async def chat(self, model: str, options: ChatOptions) -> ChatResult:
        self.requests.append(options)
        return await super().chat(model, options)


class BrokenLLM(MockLLMBackend):
    async def chat(self, model: str, options: ChatOptions) -> ChatResult:
        raise LLMBackendError("HTTP 500", status_code=500)


def _build(
    gate: ScriptSafetyGate,
    llm: MockLLMBackend,
    *,
    config: AgentConfig | None = None,
    audit: InMemoryAuditSink | None = None,
) -> tuple[TurnOrchestrator, MockBackend]:
    backend = MockBackend(responder=lambda script: "Hello, World!")
    orchestrator = TurnOrchestrator(
        ProviderRegistry({"mock": llm}, "mock/mock-model"),
        InMemoryConversationStore(),
        SessionExecutor(backend, gate),
        gate,
        config=config,
        audit=audit,
    )
    return orchestrator, backend


class TestHelpers:
    def test_extract_blocks(self) -> None:
        content = "a\n```nushell\nls\n```\nb\n```nu\n  date now  \n```\n```python\nx = 1\n```"
        assert extract_script_blocks(content) == ["ls", "date now"]

    def test_no_blocks(self) -> None:
        assert extract_script_blocks("Nur Text, kein Code.") == []

    def test_system_prompt_additions(self) -> None:
        prompt = build_system_prompt("Antworte kurz.")
        assert prompt.endswith("## Additional Instructions\n\nAntworte kurz.")
        assert "ph-file" in prompt
        assert "Additional Instructions" not in build_system_prompt("   ")

    def test_inject_input(self) -> None:
        script = inject_input("$input.name", {"name": "x"})
        assert script == "let input = (r#'{\"name\": \"x\"}'# | from json)\n$input.name"

    def test_inject_input_grows_raw_string_delimiter(self) -> None:
        script = inject_input("$input", "it'#s")
        assert script.startswith("let input = (r##'\"it'#s\"'## | from json)")

    def test_format_execution_result(self) -> None:
        validation = ValidationOutcome(valid=True)
        data = ExecutionResult(
            success=True, output="[1]", data=[1], session_id="s", validation=validation
        )
        empty = ExecutionResult(success=True, session_id="s", validation=validation)
        failed = ExecutionResult(
            success=False, output="teil", error="kaputt", session_id="s", validation=validation
        )

        assert format_execution_result(data) == "[\n  1\n]"
        assert format_execution_result(empty) == "(No output)"
        assert format_execution_result(failed) == "Error: kaputt\n\nOutput:\nteil"


class TestTurns:
    @pytest.mark.asyncio
    async def test_safe_and_dangerous_block(self, gate: ScriptSafetyGate) -> None:
        audit = InMemoryAuditSink()
        orchestrator, backend = _build(gate, MockLLMBackend(responder=lambda _: TWO_BLOCKS), audit=audit)

        result = await orchestrator.process_turn(None, "Lies test.txt und räum auf")

        assert result.response == TWO_BLOCKS
        assert result.model == "mock-model"
        first, second = result.nushell_executions
        assert first.script == "ph-file read test.txt"
        assert first.result.success
        assert "Hello, World!" in first.result.output
        assert second.script == "rm -rf /"
        assert not second.result.success
        assert second.result.error.startswith("Script validation failed")
        assert second.result.session_id == result.conversation_id

        # Nur der sichere Block erreicht das Backend
        assert backend.calls == [(result.conversation_id, "ph-file read test.txt")]
        assert [e.kind for e in audit.events] == [AuditKind.SCRIPT_EXECUTION] * 2

    @pytest.mark.asyncio
    async def test_history_is_appended(self, gate: ScriptSafetyGate) -> None:
        orchestrator, _ = _build(gate, MockLLMBackend(responder=lambda _: "Antwort"))
        result = await orchestrator.process_turn(None, "Hallo")

        conversation = await orchestrator.conversations.get(result.conversation_id)
        assert [m.role for m in conversation.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert conversation.messages[0].content == "Hallo"
        assert conversation.messages[1].content == "Antwort"
        assert conversation.messages[1].tokens == result.usage.completion_tokens

    @pytest.mark.asyncio
    async def test_script_results_follow_assistant_message(self, gate: ScriptSafetyGate) -> None:
        llm = RecordingLLM(responder=lambda _: TWO_BLOCKS)
        orchestrator, _ = _build(gate, llm)
        result = await orchestrator.process_turn(None, "Lies test.txt")

        conversation = await orchestrator.conversations.get(result.conversation_id)
        assert [m.role for m in conversation.messages] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.USER,
            MessageRole.USER,
        ]
        ok, rejected = conversation.messages[2:]
        assert ok.content.startswith("[Nushell Result]\n")
        assert "Hello, World!" in ok.content
        assert rejected.content.startswith("[Nushell Result]\nError: Script validation failed")

        # Der nächste Turn sieht die Ergebnisse im Kontext
        await orchestrator.process_turn(result.conversation_id, "Und jetzt?")
        sent = [m.content for m in llm.requests[-1].messages[1:]]
        assert sent[2] == ok.content
        assert sent[-1] == "Und jetzt?"
        assert len(llm.requests) == 2

    @pytest.mark.asyncio
    async def test_request_contains_system_prompt_and_history(
        self, gate: ScriptSafetyGate
    ) -> None:
        llm = RecordingLLM(responder=lambda _: "ok")
        config = AgentConfig(temperature=0.1, system_prompt_additions="Sei knapp.")
        orchestrator, _ = _build(gate, llm, config=config)

        first = await orchestrator.process_turn(None, "eins")
        await orchestrator.process_turn(first.conversation_id, "zwei")

        options = llm.requests[-1]
        assert options.temperature == 0.1
        assert options.messages[0].role == MessageRole.SYSTEM
        assert options.messages[0].content == orchestrator.get_system_prompt()
        assert "Sei knapp." in options.messages[0].content
        assert [m.content for m in options.messages[1:]] == ["eins", "ok", "zwei"]

    @pytest.mark.asyncio
    async def test_oversized_message_is_sent_alone(self, gate: ScriptSafetyGate) -> None:
        llm = RecordingLLM(responder=lambda _: "ok")
        orchestrator, _ = _build(gate, llm)
        huge = "x" * 100_000

        await orchestrator.process_turn(None, huge)

        messages = llm.requests[-1].messages
        assert len(messages) == 2
        assert messages[1].content == huge

    @pytest.mark.asyncio
    async def test_blocks_are_capped(self, gate: ScriptSafetyGate) -> None:
        content = "\n".join(f"```nushell\necho {i}\n```" for i in range(5))
        orchestrator, backend = _build(
            gate,
            MockLLMBackend(responder=lambda _: content),
            config=AgentConfig(max_blocks_per_turn=2),
        )
        result = await orchestrator.process_turn(None, "los")
        assert [e.script for e in result.nushell_executions] == ["echo 0", "echo 1"]
        assert len(backend.calls) == 2

    @pytest.mark.asyncio
    async def test_no_blocks_no_execution(self, gate: ScriptSafetyGate) -> None:
        orchestrator, backend = _build(gate, MockLLMBackend(responder=lambda _: "Nur Text."))
        result = await orchestrator.process_turn(None, "Hallo")
        assert result.nushell_executions == []
        assert backend.calls == []


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_conversation(self, gate: ScriptSafetyGate) -> None:
        orchestrator, _ = _build(gate, MockLLMBackend())
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.process_turn("conv-does-not-exist", "Hallo")

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, gate: ScriptSafetyGate) -> None:
        orchestrator, backend = _build(gate, BrokenLLM())
        conversation = await orchestrator.conversations.create()

        with pytest.raises(ProviderError):
            await orchestrator.process_turn(conversation.id, "Hallo")

        stored = await orchestrator.conversations.get(conversation.id)
        assert [m.role for m in stored.messages] == [MessageRole.USER]
        assert backend.calls == []
        assert not orchestrator.is_busy(conversation.id)

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failed_result(self, gate: ScriptSafetyGate) -> None:
        orchestrator, backend = _build(
            gate, MockLLMBackend(responder=lambda _: "```nushell\nls\n```")
        )

        async def explode(request):
            raise RuntimeError("kaputt")

        orchestrator._executor.execute = explode  # type: ignore[method-assign]
        result = await orchestrator.process_turn(None, "ls")
        execution = result.nushell_executions[0]
        assert not execution.result.success
        assert "kaputt" in execution.result.error


class TestBusyPolicy:
    @pytest.mark.asyncio
    async def test_reject_while_turn_running(self, gate: ScriptSafetyGate) -> None:
        orchestrator, _ = _build(
            gate,
            MockLLMBackend(responder=lambda _: "ok", latency_seconds=0.2),
            config=AgentConfig(busy_policy="reject"),
        )
        conversation = await orchestrator.conversations.create()

        running = asyncio.create_task(orchestrator.process_turn(conversation.id, "eins"))
        await asyncio.sleep(0.05)
        assert orchestrator.is_busy(conversation.id)

        with pytest.raises(ConversationBusyError):
            await orchestrator.process_turn(conversation.id, "zwei")

        await running
        assert not orchestrator.is_busy(conversation.id)

    @pytest.mark.asyncio
    async def test_queue_serializes_turns(self, gate: ScriptSafetyGate) -> None:
        orchestrator, _ = _build(
            gate, MockLLMBackend(responder=lambda text: f"re: {text}", latency_seconds=0.02)
        )
        conversation = await orchestrator.conversations.create()

        await asyncio.gather(
            orchestrator.process_turn(conversation.id, "eins"),
            orchestrator.process_turn(conversation.id, "zwei"),
        )

        stored = await orchestrator.conversations.get(conversation.id)
        assert [m.content for m in stored.messages] == ["eins", "re: eins", "zwei", "re: zwei"]

    @pytest.mark.asyncio
    async def test_forget_drops_idle_lock(self, gate: ScriptSafetyGate) -> None:
        orchestrator, _ = _build(gate, MockLLMBackend(responder=lambda _: "ok"))
        result = await orchestrator.process_turn(None, "Hallo")
        orchestrator.forget(result.conversation_id)
        assert result.conversation_id not in orchestrator._turn_locks


class TestRunScript:
    @pytest.mark.asyncio
    async def test_input_and_throwaway_session(self, gate: ScriptSafetyGate) -> None:
        audit = InMemoryAuditSink()
        orchestrator, backend = _build(gate, MockLLMBackend(), audit=audit)

        result = await orchestrator.run_script("$input.name", input={"name": "x"}, timeout=5)

        assert result.success
        assert result.session_id.startswith("direct-")
        (session_key, script), = backend.calls
        assert session_key == result.session_id
        assert script.startswith("let input = (r#'{\"name\": \"x\"}'# | from json)\n")
        assert backend.closed_sessions == [result.session_id]
        assert len(orchestrator._executor.arena) == 0
        assert audit.events[0].kind == AuditKind.SCRIPT_EXECUTION

    @pytest.mark.asyncio
    async def test_without_input_script_is_unchanged(self, gate: ScriptSafetyGate) -> None:
        orchestrator, backend = _build(gate, MockLLMBackend())
        await orchestrator.run_script("date now")
        assert backend.calls[0][1] == "date now"

    @pytest.mark.asyncio
    async def test_dangerous_script_is_rejected(self, gate: ScriptSafetyGate) -> None:
        orchestrator, backend = _build(gate, MockLLMBackend())
        result = await orchestrator.run_script("sudo rm -rf /")
        assert not result.success
        assert not result.validation.valid
        assert backend.calls == []
