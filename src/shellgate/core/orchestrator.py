"""Turn Orchestrator: one user message → one model call → executed script blocks.

Ablauf pro Turn:
  1. User-Nachricht an die Konversation anhängen
  2. System-Prompt + getrimmte Historie an den primären Provider
  3. ```nushell Blöcke aus der Antwort extrahieren
  4. Jeden Block validieren und (falls gültig) in der Session ausführen
  5. Assistant-Antwort und je Block ein "[Nushell Result]" anhängen
  6. TurnResult zurückgeben

Script failures are recorded in the TurnResult. Provider failures (including
an open circuit) abort the turn and propagate to the caller.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from typing import TYPE_CHECKING, Any

from shellgate.config import AgentConfig
from shellgate.core.errors import ConversationBusyError, ConversationNotFoundError
from shellgate.core.llm_backend import ChatOptions
from shellgate.models import (
    ChatMessage,
    ExecutionRequest,
    ExecutionResult,
    MessageRole,
    ScriptExecution,
    TurnResult,
    estimate_tokens,
    new_id,
)
from shellgate.security.audit import AuditEvent, AuditKind, AuditSink
from shellgate.security.commands import generate_command_reference
from shellgate.utils.logging import bind_context, clear_context, get_logger

if TYPE_CHECKING:
    from shellgate.core.providers import ProviderRegistry
    from shellgate.core.session_executor import SessionExecutor
    from shellgate.gateway.conversation_store import ConversationStore
    from shellgate.security.script_gate import ScriptValidator

log = get_logger(__name__)

_BLOCK_RE = re.compile(r"```(?:nushell|nu)\n([\s\S]*?)```")
RESULT_PREFIX = "[Nushell Result]"

_PROMPT_TEMPLATE = """\
You are Shellgate, an assistant that completes tasks by running Nushell scripts.

## Capabilities

You can execute Nushell scripts to:
- Work with files and directories
- Process structured data (JSON, CSV, tables)
- Make web requests
- Store and recall information

{reference}

## Usage

When you need to perform an action, write the script in a fenced code block:

```nushell
ls | where size > 1mb | sort-by size
```

Every block is checked before it runs. Blocks with blocked commands are not executed.

## Guidelines

1. Prefer Nushell over text answers when an action reaches the user's goal
2. Chain pipelines to process data
3. Use structured output (tables, JSON) for data
4. Explain results in natural language
5. Use the agent commands (ph-*) for files, web, memory and cloud resources

## Safety

- You cannot modify system files or the environment
- Network access is sandboxed
- Dangerous commands are blocked"""


def build_system_prompt(additions: str = "") -> str:
    prompt = _PROMPT_TEMPLATE.format(reference=generate_command_reference())
    if additions.strip():
        prompt = f"{prompt}\n\n## Additional Instructions\n\n{additions.strip()}"
    return prompt


def extract_script_blocks(content: str) -> list[str]:
    """All fenced ``nushell``/``nu`` blocks in order of appearance."""
    return [m.group(1).strip() for m in _BLOCK_RE.finditer(content)]


def format_execution_result(result: ExecutionResult) -> str:
    """Text form of a script result as the model sees it in the history."""
    if result.success:
        if result.data is not None:
            return json.dumps(result.data, ensure_ascii=False, indent=2, default=str)
        return result.output or "(No output)"
    return f"Error: {result.error or 'Unknown error'}\n\nOutput:\n{result.output}"


def _nu_raw_string(text: str) -> str:
    """Nushell raw string literal ``r#'...'#`` with enough hashes to enclose ``text``."""
    hashes = "#"
    while f"'{hashes}" in text:
        hashes += "#"
    return f"r{hashes}'{text}'{hashes}"


def inject_input(script: str, value: Any) -> str:
    """Stellt ``$input`` als geparsten JSON-Wert vor das Script."""
    payload = json.dumps(value, ensure_ascii=False, default=str)
    return f"let input = ({_nu_raw_string(payload)} | from json)\n{script}"


class TurnOrchestrator:
    """Drives conversation turns.

    Turns on the same conversation are serialized. With ``busy_policy="queue"``
    a second message waits for the running turn; with ``"reject"`` it fails
    immediately with ConversationBusyError.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        conversations: ConversationStore,
        executor: SessionExecutor,
        validator: ScriptValidator,
        *,
        config: AgentConfig | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self._providers = providers
        self._conversations = conversations
        self._executor = executor
        self._validator = validator
        self._config = config or AgentConfig()
        self._audit = audit
        self._system_prompt = build_system_prompt(self._config.system_prompt_additions)
        self._turn_locks: dict[str, asyncio.Lock] = {}

    @property
    def conversations(self) -> ConversationStore:
        return self._conversations

    def get_system_prompt(self) -> str:
        return self._system_prompt

    def is_busy(self, conversation_id: str) -> bool:
        lock = self._turn_locks.get(conversation_id)
        return lock is not None and lock.locked()

    def forget(self, conversation_id: str) -> None:
        """Vergisst den Turn-Lock einer beendeten Konversation."""
        lock = self._turn_locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._turn_locks[conversation_id]

    # ========================================================================
    # Turns
    # ========================================================================

    async def start_conversation(
        self, message: str, metadata: dict[str, Any] | None = None
    ) -> TurnResult:
        conversation = await self._conversations.create(metadata)
        log.info("conversation_started", conversation_id=conversation.id)
        return await self.process_turn(conversation.id, message)

    async def process_turn(
        self,
        conversation_id: str | None,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> TurnResult:
        """Processes one user message.

        Args:
            conversation_id: Existing conversation, or None to start a new one.
            message: The user's message.
            metadata: Stored on the conversation when a new one is created.

        Raises:
            ConversationNotFoundError: ``conversation_id`` is unknown.
            ConversationBusyError: A turn is running and the policy is ``reject``.
            ProviderError: The model call failed or the circuit is open.
        """
        if conversation_id is None:
            return await self.start_conversation(message, metadata)

        if await self._conversations.get(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)

        lock = self._turn_locks.setdefault(conversation_id, asyncio.Lock())
        if self._config.busy_policy == "reject" and lock.locked():
            log.warning("turn_rejected_busy", conversation_id=conversation_id)
            raise ConversationBusyError(conversation_id)

        async with lock:
            bind_context(conversation_id=conversation_id)
            try:
                return await self._run_turn(conversation_id, message)
            finally:
                clear_context()

    async def _run_turn(self, conversation_id: str, message: str) -> TurnResult:
        start = time.monotonic()
        await self._conversations.add_message(
            conversation_id, MessageRole.USER, message, tokens=estimate_tokens(message)
        )

        budget = max(0, self._config.max_context_tokens - estimate_tokens(self._system_prompt))
        history = await self._conversations.get_messages_for_context(conversation_id, budget)
        if not history:
            # Nachricht allein sprengt das Budget -- trotzdem mitschicken
            history = [ChatMessage(role=MessageRole.USER, content=message)]

        options = ChatOptions(
            messages=[ChatMessage(role=MessageRole.SYSTEM, content=self._system_prompt), *history],
            temperature=self._config.temperature,
            reasoning=self._config.enable_reasoning,
            reasoning_effort=self._config.reasoning_effort,
        )
        log.info("turn_provider_call", model=self._providers.primary_model, messages=len(history))
        result = await self._providers.chat(options)

        blocks = extract_script_blocks(result.content)
        if len(blocks) > self._config.max_blocks_per_turn:
            log.warning(
                "turn_blocks_capped",
                found=len(blocks),
                limit=self._config.max_blocks_per_turn,
            )
            blocks = blocks[: self._config.max_blocks_per_turn]

        executions: list[ScriptExecution] = []
        for script in blocks:
            outcome = await self._run_block(conversation_id, script)
            executions.append(ScriptExecution(script=script, result=outcome))

        await self._conversations.add_message(
            conversation_id,
            MessageRole.ASSISTANT,
            result.content,
            tokens=result.usage.completion_tokens,
        )
        for execution in executions:
            text = f"{RESULT_PREFIX}\n{format_execution_result(execution.result)}"
            await self._conversations.add_message(
                conversation_id, MessageRole.USER, text, tokens=estimate_tokens(text)
            )

        log.info(
            "turn_done",
            blocks=len(executions),
            failed=sum(1 for e in executions if not e.result.success),
            total_tokens=result.usage.total_tokens,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return TurnResult(
            conversation_id=conversation_id,
            response=result.content,
            reasoning=result.reasoning,
            nushell_executions=executions,
            usage=result.usage,
            model=result.model or self._providers.primary_model,
        )

    async def _run_block(self, conversation_id: str, script: str) -> ExecutionResult:
        validation = self._validator.validate(script)
        if not validation.valid:
            log.warning("block_rejected", errors=validation.errors)
            result = ExecutionResult(
                success=False,
                error=f"Script validation failed: {', '.join(validation.errors)}",
                session_id=conversation_id,
                validation=validation,
            )
        else:
            try:
                result = await self._executor.execute(
                    ExecutionRequest(script=script, session_id=conversation_id)
                )
            except Exception as exc:
                log.exception("block_execution_error", error=str(exc))
                result = ExecutionResult(
                    success=False,
                    error=f"Execution failed: {exc}",
                    session_id=conversation_id,
                    validation=validation,
                )
        self._record(conversation_id, result)
        return result

    def _record(self, conversation_id: str, result: ExecutionResult) -> None:
        if self._audit is None:
            return
        self._audit.record(
            AuditEvent(
                kind=AuditKind.SCRIPT_EXECUTION,
                target=result.session_id,
                success=result.success,
                duration_ms=result.duration_ms,
                error=result.error,
                conversation_id=conversation_id,
            )
        )

    # ========================================================================
    # Direkte Ausführung
    # ========================================================================

    async def run_script(
        self,
        script: str,
        input: Any = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Runs a script outside any conversation in a throwaway session.

        ``input`` is made available to the script as ``$input``.
        """
        full_script = inject_input(script, input) if input is not None else script
        session_id = new_id("direct")
        log.info("direct_script", session_id=session_id, script_len=len(script))
        try:
            result = await self._executor.execute(
                ExecutionRequest(
                    script=full_script,
                    session_id=session_id,
                    timeout_seconds=timeout,
                )
            )
        finally:
            await self._executor.terminate_session(session_id)
        self._record(session_id, result)
        return result
