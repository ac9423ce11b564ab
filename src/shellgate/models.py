"""
Shellgate · Central data models.

All Pydantic models shared between the breaker, providers, safety gate,
session executor and orchestrator.

Design principles:
  - Immutable (frozen) for everything that is produced once and returned
    (messages, validation outcomes, execution results, turn results)
  - Mutable only where the owner appends (Conversation)
  - JSON-serializable (for logging, audit and transport)
"""

from __future__ import annotations

import secrets
import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

# ============================================================================
# Hilfsfunktionen
# ============================================================================


def _utc_now() -> datetime:
    """Aktuelle Zeit in UTC. Einheitlich im gesamten System."""
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Neue ID der Form ``<prefix>-<millis>-<random>``.

    Beispiel: ``conv-1718000000000-k3j9x2a1b``
    """
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def estimate_tokens(text: str) -> int:
    """Grobe Token-Schätzung: vier Zeichen pro Token, aufgerundet."""
    return (len(text) + 3) // 4


# ============================================================================
# Enums
# ============================================================================


class MessageRole(StrEnum):
    """Role of a message in the chat history."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class SafetyLevel(StrEnum):
    """Safety classification of a script.

    SAFE:      No findings.
    CAUTION:   Warnings only, script may run.
    DANGEROUS: Blocked construct found, script never runs.
    """

    SAFE = "safe"
    CAUTION = "caution"
    DANGEROUS = "dangerous"


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class OutputFormat(StrEnum):
    """Hint for how a UI should render script output."""

    TABLE = "table"
    LIST = "list"
    JSON = "json"
    UNKNOWN = "unknown"


# ============================================================================
# Nachrichten und Konversationen
# ============================================================================


class ChatMessage(BaseModel, frozen=True):
    """Message as sent to a model provider."""

    role: MessageRole
    content: str


class ConversationMessage(BaseModel, frozen=True):
    """A single message stored in a conversation.

    Immutable -- once appended, never modified.
    """

    id: str = Field(default_factory=lambda: new_id("msg"))
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=_utc_now)
    tokens: int = 0

    def to_chat(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class Conversation(BaseModel):
    """Ordered message history plus running token total.

    Only the conversation store mutates this, and only by appending.
    """

    id: str = Field(default_factory=lambda: new_id("conv"))
    messages: list[ConversationMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    total_tokens: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Modelle und Kosten
# ============================================================================


class ModelCost(BaseModel, frozen=True):
    """USD per one million tokens."""

    input: float = Field(default=0.0, ge=0.0)
    output: float = Field(default=0.0, ge=0.0)


class ModelSpec(BaseModel, frozen=True):
    """Description of a model offered by a provider."""

    id: str
    name: str = ""
    reasoning: bool = False
    context_window: int = Field(default=8192, ge=1)
    max_tokens: int = Field(default=2048, ge=1)
    input: list[str] = Field(default_factory=lambda: ["text"])
    cost: ModelCost = Field(default_factory=ModelCost)


def calculate_cost(spec: ModelSpec, prompt_tokens: int, completion_tokens: int) -> float:
    """Geschätzte Kosten eines Aufrufs in USD."""
    input_cost = (prompt_tokens / 1_000_000) * spec.cost.input
    output_cost = (completion_tokens / 1_000_000) * spec.cost.output
    return input_cost + output_cost


class TokenUsage(BaseModel, frozen=True):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float | None = None


# ============================================================================
# Validierung und Ausführung
# ============================================================================


class ValidationOutcome(BaseModel, frozen=True):
    """Verdict of the script safety gate.

    ``detected_commands`` is informational only and never changes the verdict.
    ``script`` holds the normalized script when valid.
    """

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    safety_level: SafetyLevel = SafetyLevel.SAFE
    detected_commands: list[str] = Field(default_factory=list)
    script: str | None = None

    @model_validator(mode="after")
    def _check_consistency(self) -> ValidationOutcome:
        if self.safety_level == SafetyLevel.DANGEROUS and self.valid:
            raise ValueError("dangerous scripts cannot be valid")
        if self.valid and self.errors:
            raise ValueError("valid outcome must not carry errors")
        if not self.valid and not self.errors:
            raise ValueError("invalid outcome needs at least one error")
        return self


class ExecutionRequest(BaseModel, frozen=True):
    script: str
    session_id: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    env: dict[str, str] = Field(default_factory=dict)


class ExecutionResult(BaseModel, frozen=True):
    """Result of a single script execution. Never mutated after return."""

    success: bool
    output: str = ""
    data: Any = None  # geparstes JSON, falls stdout JSON war
    error: str | None = None
    duration_ms: int = 0
    session_id: str
    validation: ValidationOutcome
    timed_out: bool = False
    truncated: bool = False
    # Darstellungshinweis für UIs, aus dem Script abgeleitet
    output_format: OutputFormat = OutputFormat.UNKNOWN
    output_columns: list[str] = Field(default_factory=list)


class ScriptExecution(BaseModel, frozen=True):
    """One script block of a turn together with its result."""

    script: str
    result: ExecutionResult


class TurnResult(BaseModel, frozen=True):
    conversation_id: str
    response: str
    reasoning: str | None = None
    nushell_executions: list[ScriptExecution] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""


# ============================================================================
# Circuit Breaker
# ============================================================================


class CircuitBreakerStats(BaseModel, frozen=True):
    """Snapshot of a breaker. Timestamps are monotonic seconds."""

    name: str
    state: BreakerState
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    next_attempt_time: float | None = None
    total_calls: int = 0
    total_failures: int = 0
    total_rejections: int = 0
