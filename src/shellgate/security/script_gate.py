"""Script Safety Gate: static analysis of model-generated Nushell scripts.

Every script extracted from a model response passes through
:meth:`ScriptSafetyGate.validate` before anything may run it. The gate is a
pure function of the script text and its pattern set.

Pattern matching instead of parsing: over-blocking is acceptable,
under-blocking is not. The pattern set is pluggable (``PatternSet``) so new
dangerous idioms can be added without touching the gate.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from shellgate.core.errors import ScriptValidationError
from shellgate.models import OutputFormat, SafetyLevel, ValidationOutcome
from shellgate.security.commands import BLOCKED_COMMANDS, is_known_command
from shellgate.utils.logging import get_logger

log = get_logger(__name__)

MAX_SCRIPT_BYTES = 100 * 1024
MAX_PIPELINE_DEPTH = 20


# ============================================================================
# Pattern-Set
# ============================================================================


@dataclass(frozen=True)
class PatternRule:
    """A named regex with the message reported when it matches."""

    name: str
    pattern: re.Pattern[str]
    message: str

    @classmethod
    def compile(cls, name: str, regex: str, message: str, flags: int = 0) -> PatternRule:
        return cls(name=name, pattern=re.compile(regex, flags), message=message)

    def matches(self, script: str) -> bool:
        return self.pattern.search(script) is not None


@dataclass(frozen=True)
class PatternSet:
    """Blocked rules reject a script, warning rules only downgrade it to CAUTION."""

    blocked: tuple[PatternRule, ...] = ()
    warnings: tuple[PatternRule, ...] = ()
    blocked_commands: frozenset[str] = field(default_factory=frozenset)

    def with_extra_blocked(self, regexes: list[str]) -> PatternSet:
        extra = tuple(
            PatternRule.compile(f"custom_{i}", regex, f"Blocked by custom pattern: {regex}")
            for i, regex in enumerate(regexes)
        )
        return PatternSet(
            blocked=self.blocked + extra,
            warnings=self.warnings,
            blocked_commands=self.blocked_commands,
        )


_I = re.IGNORECASE

DEFAULT_PATTERNS = PatternSet(
    blocked=(
        PatternRule.compile(
            "recursive_force_delete",
            r"\brm\b(?=[^|;\n]*(?:\s-[a-zA-Z]*r|\s--recursive))(?=[^|;\n]*(?:\s-[a-zA-Z]*f|\s--force))",
            "Recursive force delete",
        ),
        PatternRule.compile(
            "privilege_escalation", r"(?<![\w-])(?:sudo|doas)(?![\w-])", "Privilege escalation", _I
        ),
        PatternRule.compile("dynamic_eval", r"(?<![\w-])eval(?![\w-])", "Dynamic evaluation", _I),
        PatternRule.compile("export_path", r"\bexport\s+PATH\b", "Modifying PATH environment", _I),
        PatternRule.compile("env_path", r"\$env\.PATH\s*=(?!=)", "Modifying PATH environment", _I),
        PatternRule.compile(
            "env_assignment",
            r"\$env\.[A-Za-z_][A-Za-z0-9_]*\s*=(?!=)",
            "Modifying environment variables",
        ),
        PatternRule.compile(
            "listening_socket",
            r"(?<![\w-])(?:nc|ncat|netcat)\s+(?:[^|;\n]*\s)?-[a-zA-Z]*l",
            "Raw listening socket",
            _I,
        ),
        PatternRule.compile(
            "download_to_shell",
            r"(?<![\w-])(?:curl|wget|iwr|invoke-webrequest|http\s+get|ph-web\s+get)\b[^\n]*"
            r"\|\s*(?:sudo\s+)?(?:bash|sh|zsh|dash|ksh|nu|pwsh|powershell)\b",
            "Remote download piped into a shell",
            _I,
        ),
        PatternRule.compile("backtick_substitution", r"`[^`]*`", "Backtick command substitution"),
        PatternRule.compile("subshell", r"\$\([^)]*\)", "Subshell execution"),
        PatternRule.compile("root_write", r">\s*/", "Direct write to root path"),
        PatternRule.compile(
            "root_save", r"\bsave\s+(?:-{1,2}[\w-]+\s+)*/", "Direct write to root path"
        ),
        PatternRule.compile("infinite_loop", r"\bwhile\s+true\b", "Infinite loop"),
    ),
    warnings=(
        PatternRule.compile("pipe_to_http", r"\|.*http", "Piping to HTTP endpoint"),
        PatternRule.compile("save_file", r"\bsave\s+", "Attempting to save file"),
        PatternRule.compile("home_access", r"\bopen\s+~", "Accessing home directory"),
        PatternRule.compile("recursive_glob", r"\bglob\s+\*\*", "Recursive glob pattern"),
    ),
    blocked_commands=BLOCKED_COMMANDS,
)


class ScriptValidator(Protocol):
    """Stable interface the executor and orchestrator depend on."""

    def validate(self, script: str) -> ValidationOutcome: ...


# ============================================================================
# Befehls-Extraktion
# ============================================================================

_STATEMENT_SPLIT = re.compile(r"[\n;]")
_LEADING_NOISE = "^({["


def _stage_tokens(script: str) -> list[list[str]]:
    """Tokens of every pipeline stage, in order.

    Statements are split on newlines and ``;``, stages on ``|``. Comment
    lines are skipped; a leading ``^`` (external call) or opening bracket is
    stripped from the first token.
    """
    stages: list[list[str]] = []
    for line in _STATEMENT_SPLIT.split(script):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        for segment in trimmed.split("|"):
            tokens = segment.split()
            if tokens and tokens[0].lstrip(_LEADING_NOISE):
                stages.append([tokens[0].lstrip(_LEADING_NOISE), *tokens[1:]])
    return stages


def _recognized(stages: list[list[str]]) -> list[str]:
    seen: list[str] = []
    for tokens in stages:
        command = tokens[0]
        # Zweiwort-Befehle (ph-file read, to json) zusammenfassen
        if len(tokens) > 1 and is_known_command(f"{command} {tokens[1]}") is not None:
            name = f"{command} {tokens[1]}"
        elif is_known_command(command) is not None:
            name = command
        else:
            continue
        if name not in seen:
            seen.append(name)
    return seen


# ============================================================================
# Gate
# ============================================================================


class ScriptSafetyGate:
    """Validates scripts against a pattern set.

    Args:
        patterns: Blocked/warning rules and blocked first tokens.
        max_script_bytes: Size ceiling (UTF-8 bytes). Larger scripts are rejected.
        max_pipeline_depth: Maximum number of ``|`` in a script.
    """

    def __init__(
        self,
        patterns: PatternSet = DEFAULT_PATTERNS,
        *,
        max_script_bytes: int = MAX_SCRIPT_BYTES,
        max_pipeline_depth: int = MAX_PIPELINE_DEPTH,
    ) -> None:
        self._patterns = patterns
        self._max_script_bytes = max_script_bytes
        self._max_pipeline_depth = max_pipeline_depth

    @property
    def patterns(self) -> PatternSet:
        return self._patterns

    def validate(self, script: str) -> ValidationOutcome:
        """Returns the verdict for ``script``. Never raises."""
        size = len(script.encode("utf-8"))
        if size > self._max_script_bytes:
            return ValidationOutcome(
                valid=False,
                errors=[f"Script exceeds maximum size of {self._max_script_bytes} bytes ({size})"],
                safety_level=SafetyLevel.DANGEROUS,
            )

        normalized = script.strip()
        if not normalized:
            return ValidationOutcome(valid=False, errors=["Empty script"])

        errors: list[str] = []
        warnings: list[str] = []

        stages = _stage_tokens(normalized)
        for tokens in stages:
            if tokens[0].lower() in self._patterns.blocked_commands:
                errors.append(f"Blocked command: {tokens[0]}")

        for rule in self._patterns.blocked:
            if rule.matches(normalized):
                errors.append(f"Dangerous pattern detected: {rule.message}")

        for rule in self._patterns.warnings:
            if rule.matches(normalized):
                warnings.append(rule.message)

        depth = normalized.count("|")
        if depth > self._max_pipeline_depth:
            errors.append(
                f"Pipeline too deep: {depth} stages (max: {self._max_pipeline_depth})"
            )

        if errors:
            level = SafetyLevel.DANGEROUS
        elif warnings:
            level = SafetyLevel.CAUTION
        else:
            level = SafetyLevel.SAFE

        outcome = ValidationOutcome(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            safety_level=level,
            detected_commands=_recognized(stages),
            script=normalized if not errors else None,
        )
        if errors:
            log.info("script_rejected", errors=errors, script_preview=normalized[:80])
        return outcome


# ============================================================================
# Hilfsfunktionen
# ============================================================================


def validate_or_raise(validator: ScriptValidator, script: str) -> ValidationOutcome:
    """Runs ``validator``; raises ScriptValidationError when the script is rejected."""
    outcome = validator.validate(script)
    if not outcome.valid:
        raise ScriptValidationError(outcome)
    return outcome


@dataclass(frozen=True)
class OutputHint:
    format: OutputFormat
    columns: tuple[str, ...] = ()


_SELECT_COLUMNS = re.compile(r"\|\s*select\s+([\w\s,]+)")


def infer_output_format(script: str) -> OutputHint:
    """Guesses how the script's output should be rendered."""
    trimmed = script.strip()

    if "| to json" in trimmed or "| to nuon" in trimmed:
        return OutputHint(OutputFormat.JSON)

    if any(op in trimmed for op in ("| select", "| table", "| grid", "| reject")):
        match = _SELECT_COLUMNS.search(trimmed)
        if match:
            columns = tuple(c for c in re.split(r"[\s,]+", match.group(1)) if c)
            return OutputHint(OutputFormat.TABLE, columns)
        return OutputHint(OutputFormat.TABLE)

    if "| flatten" in trimmed or "| each" in trimmed:
        return OutputHint(OutputFormat.LIST)

    return OutputHint(OutputFormat.UNKNOWN)


def parse_structured_output(output: str) -> Any:
    """Parsed JSON value of ``output`` or None if it is not JSON."""
    text = output.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None
