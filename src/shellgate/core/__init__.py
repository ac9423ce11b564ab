"""Shellgate core: breaker, providers, executor and turn orchestration."""

from shellgate.core.errors import (  # noqa: F401
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
