"""Sicherheitsmodule: Script-Gate, Befehlsvokabular, Audit, Secrets."""

from shellgate.security.audit import AuditEvent, LogAuditSink, mask_credentials
from shellgate.security.commands import generate_command_reference, is_known_command
from shellgate.security.script_gate import DEFAULT_PATTERNS, ScriptSafetyGate

__all__ = [
    "DEFAULT_PATTERNS",
    "AuditEvent",
    "LogAuditSink",
    "ScriptSafetyGate",
    "generate_command_reference",
    "is_known_command",
    "mask_credentials",
]
