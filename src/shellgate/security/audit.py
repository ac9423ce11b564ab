"""Audit sink: per-call records of provider calls and script executions.

The core only emits events; where they are stored is up to the sink.
Credential values are masked before any event leaves the process.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, Field

from shellgate.utils.logging import get_logger

log = get_logger(__name__)

# Standard-Patterns für Credential-Maskierung
_CREDENTIAL_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(sk-[a-zA-Z0-9]{4})[a-zA-Z0-9]{16,}"),
    re.compile(r"(password\s*[:=]\s*)\S+", re.IGNORECASE),
    re.compile(r"(secret\s*[:=]\s*)\S+", re.IGNORECASE),
    re.compile(r"(api[_-]key\s*[:=]\s*)\S+", re.IGNORECASE),
    re.compile(r"(Bearer\s+)[a-zA-Z0-9._\-]{8,}"),
    re.compile(r"(ghp_)[a-zA-Z0-9]{30,}"),
    re.compile(r"(AccountKey=)[^;\s]+"),
]


def mask_credentials(text: str) -> str:
    """Maskiert Credentials in einem Text.

    z.B. 'Bearer eyJhbGciOi...' → 'Bearer ***'
    """
    if not text:
        return text
    result = text
    for pattern in _CREDENTIAL_PATTERNS:
        result = pattern.sub(lambda m: m.group(1) + "***", result)
    return result


class AuditKind(StrEnum):
    PROVIDER_CALL = "provider_call"
    SCRIPT_EXECUTION = "script_execution"


class AuditEvent(BaseModel, frozen=True):
    kind: AuditKind
    target: str  # "provider/model" oder Session-ID
    success: bool
    duration_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    error: str | None = None
    conversation_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LogAuditSink:
    """Writes audit events as structured log lines on the ``shellgate.audit`` logger."""

    def __init__(self) -> None:
        self._log = get_logger("shellgate.audit")

    def record(self, event: AuditEvent) -> None:
        self._log.info(
            "audit_event",
            kind=str(event.kind),
            target=event.target,
            success=event.success,
            duration_ms=event.duration_ms,
            prompt_tokens=event.prompt_tokens,
            completion_tokens=event.completion_tokens,
            error=mask_credentials(event.error) if event.error else None,
            conversation_id=event.conversation_id,
        )


class InMemoryAuditSink:
    """Keeps the most recent events in memory."""

    def __init__(self, max_events: int = 1000) -> None:
        self._max_events = max_events
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        if event.error:
            event = event.model_copy(update={"error": mask_credentials(event.error)})
        self.events.append(event)
        if len(self.events) > self._max_events:
            del self.events[: len(self.events) - self._max_events]
