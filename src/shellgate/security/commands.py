"""Command vocabulary exposed to the model.

The vocabulary serves two purposes: it is rendered into a compact reference
for the system prompt, and it classifies commands found in scripts
(core Nushell, agent command, blocked).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class CommandSource(StrEnum):
    CORE = "core"
    AGENT = "agent"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    usage: str
    examples: tuple[str, ...] = ()
    aliases: tuple[str, ...] = field(default_factory=tuple)


# ============================================================================
# Kern-Befehle (kuratierte Nushell-Teilmenge)
# ============================================================================

CORE_COMMANDS: tuple[CommandSpec, ...] = (
    CommandSpec("ls", "List directory contents as a table", "ls [path] [--all] [--long]",
                ("ls", "ls data/")),
    CommandSpec("open", "Open a file and parse its contents (JSON, YAML, CSV, ...)",
                "open <file>", ("open data.json",)),
    CommandSpec("where", "Filter rows based on a condition", "<input> | where <condition>",
                ("ls | where size > 1mb",)),
    CommandSpec("select", "Select specific columns from a table", "<input> | select <columns...>",
                ("ls | select name size",)),
    CommandSpec("get", "Get a value at a path from structured data", "<input> | get <path>",
                ("open config.json | get database.host",)),
    CommandSpec("sort-by", "Sort table by column(s)", "<input> | sort-by <column> [--reverse]",
                ("ls | sort-by size",)),
    CommandSpec("group-by", "Group rows by a column value", "<input> | group-by <column>"),
    CommandSpec("reduce", "Reduce a list to a single value",
                "<input> | reduce { |it, acc| <expression> }"),
    CommandSpec("each", "Run a closure on each row", "<input> | each { |it| <expression> }",
                ("[1 2 3] | each { |it| $it * 2 }",)),
    CommandSpec("first", "Take the first n rows", "<input> | first [n]"),
    CommandSpec("last", "Take the last n rows", "<input> | last [n]"),
    CommandSpec("length", "Count rows or items", "<input> | length"),
    CommandSpec("to json", "Convert data to JSON", "<input> | to json"),
    CommandSpec("from json", "Parse a JSON string", "<input> | from json"),
    CommandSpec("str contains", "Check if a string contains a substring",
                "<input> | str contains <pattern>"),
    CommandSpec("str replace", "Replace occurrences in a string",
                "<input> | str replace <find> <replace>"),
    CommandSpec("split row", "Split a string into rows", "<input> | split row <separator>"),
    CommandSpec("lines", "Split a string into lines", "<input> | lines"),
    CommandSpec("math sum", "Sum numbers", "<input> | math sum"),
    CommandSpec("math avg", "Average of numbers", "<input> | math avg"),
    CommandSpec("date now", "Current date and time", "date now"),
    CommandSpec("let", "Bind a variable", "let <name> = <value>"),
    CommandSpec("echo", "Return its arguments", "echo <value>"),
)

# ============================================================================
# Agent-Befehle (ph-*)
# ============================================================================

AGENT_COMMANDS: tuple[CommandSpec, ...] = (
    CommandSpec("ph-file read", "Read a file from the conversation workspace",
                "ph-file read <path>", ("ph-file read notes.txt",)),
    CommandSpec("ph-file write", "Write text to a file in the conversation workspace",
                "ph-file write <path> <content>", ("ph-file write out.txt 'hello'",)),
    CommandSpec("ph-web get", "HTTP GET against an allowed endpoint", "ph-web get <url>",
                ("ph-web get https://api.example.com/items",)),
    CommandSpec("ph-web post", "HTTP POST against an allowed endpoint",
                "ph-web post <url> <body>"),
    CommandSpec("ph-azure list", "List cloud resources", "ph-azure list [--type <type>]",
                ("ph-azure list --type 'Microsoft.Web/sites'",)),
    CommandSpec("ph-memo save", "Remember a value for later turns", "ph-memo save <key> <value>"),
    CommandSpec("ph-memo get", "Recall a remembered value", "ph-memo get <key>"),
    CommandSpec("ph-ask", "Ask a nested question to the agent", "ph-ask <question>"),
)

# Erste Tokens, die nie ausgeführt werden dürfen
BLOCKED_COMMANDS: frozenset[str] = frozenset({
    # Systemveränderung
    "rm", "remove", "rmdir", "mv", "move", "cp", "copy",
    # Prozesskontrolle
    "kill", "pkill", "exec", "eval",
    # Netzwerk
    "ssh", "scp", "sftp", "nc", "ncat", "netcat", "curl", "wget",
    # Paketverwaltung
    "cargo", "npm", "pip", "apt", "brew",
    # Shell-Escapes
    "bash", "sh", "zsh", "cmd", "powershell", "pwsh",
    # Umgebung
    "export", "unset", "setenv",
    # Systemkonfiguration
    "registry", "regedit", "chmod", "chown", "sudo", "su", "doas",
})


def _lookup(name: str, commands: tuple[CommandSpec, ...]) -> bool:
    lower = name.lower()
    for spec in commands:
        candidates = (spec.name.lower(), spec.name.split()[0].lower(), *spec.aliases)
        if lower in candidates:
            return True
    return False


def is_known_command(command: str) -> CommandSource | None:
    """Klassifiziert einen Befehl. ``None`` = unbekannt."""
    if command.lower() in BLOCKED_COMMANDS:
        return CommandSource.BLOCKED
    if _lookup(command, CORE_COMMANDS):
        return CommandSource.CORE
    if _lookup(command, AGENT_COMMANDS):
        return CommandSource.AGENT
    return None


def generate_command_reference() -> str:
    """Compact command reference for the system prompt."""
    lines = [
        "# Available Nushell Commands",
        "",
        "## Core Commands",
        *(f"- `{cmd.usage}` - {cmd.description}" for cmd in CORE_COMMANDS),
        "",
        "## Agent Commands",
        *(f"- `{cmd.usage}` - {cmd.description}" for cmd in AGENT_COMMANDS),
        "",
        "## Usage Notes",
        "- Chain commands with pipes: `ls | where size > 1mb | sort-by size`",
        "- Variables: `let x = 5; $x * 2`",
        "- Tables flow through pipelines as structured data",
    ]
    return "\n".join(lines)
