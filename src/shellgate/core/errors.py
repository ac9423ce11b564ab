"""Shellgate · Error Hierarchy.

All custom exceptions inherit from ShellgateError, which carries an error_code
and optional details dict for programmatic handling. The gateway service maps
these onto transport-safe error responses.

Usage::

    from shellgate.core.errors import CircuitOpenError, ConfigError

    raise ConfigError("Primary provider missing", details={"provider": "foundry"})
    raise CircuitOpenError("llm:azure", retry_after=12.5)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shellgate.models import ValidationOutcome


class ShellgateError(Exception):
    """Base exception for all Shellgate errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "SHELLGATE_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class ConfigError(ShellgateError):
    """Configuration errors (loading, validation, missing primary provider)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class UnknownProviderError(ConfigError):
    """A ``provider/model`` path names a provider that is not registered."""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_PROVIDER",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Provider-Fehler
# ============================================================================


class ProviderError(ShellgateError):
    """A model provider failed, timed out or was rejected by its breaker."""

    def __init__(
        self,
        message: str,
        error_code: str = "PROVIDER_ERROR",
        details: dict | None = None,
        *,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
        self.retry_after = retry_after


class CircuitOpenError(ProviderError):
    """Breaker is open. ``retry_after`` is the remaining reset time in seconds."""

    def __init__(self, name: str, retry_after: float) -> None:
        retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit '{name}' is open, retry in {retry_after:.1f}s",
            error_code="CIRCUIT_OPEN",
            details={"breaker": name},
            retry_after=retry_after,
        )
        self.name = name


class CircuitTimeoutError(ProviderError):
    """Operation exceeded the breaker timeout. Counts as a failure."""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(
            f"Operation behind circuit '{name}' timed out after {timeout}s",
            error_code="CIRCUIT_TIMEOUT",
            details={"breaker": name, "timeout_s": timeout},
        )
        self.name = name
        self.timeout = timeout


# ============================================================================
# Skript-Fehler
# ============================================================================


class ScriptValidationError(ShellgateError):
    """Script was rejected by the safety gate."""

    def __init__(self, outcome: ValidationOutcome) -> None:
        reason = "; ".join(outcome.errors) or "script rejected"
        super().__init__(
            f"Script validation failed: {reason}",
            error_code="SCRIPT_INVALID",
            details={"safety_level": str(outcome.safety_level)},
        )
        self.outcome = outcome


class ScriptExecutionError(ShellgateError):
    """Execution backend could not be reached or misbehaved."""

    def __init__(
        self,
        message: str,
        error_code: str = "SCRIPT_EXECUTION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Konversations-Fehler
# ============================================================================


class ConversationNotFoundError(ShellgateError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"Conversation not found: {conversation_id}",
            error_code="CONVERSATION_NOT_FOUND",
            details={"conversation_id": conversation_id},
        )
        self.conversation_id = conversation_id


class ConversationBusyError(ShellgateError):
    """A turn is already running for this conversation and busy_policy is reject."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"Conversation is busy: {conversation_id}",
            error_code="CONVERSATION_BUSY",
            details={"conversation_id": conversation_id},
        )
        self.conversation_id = conversation_id
