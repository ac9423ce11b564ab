"""
Shellgate -- Entry Point.

Usage: shellgate health
       shellgate run-script 'ls | length' [--input '{"a": 1}'] [--timeout 10]
       shellgate chat [--conversation conv-...]
       shellgate --config /path/to/config.yaml --log-level DEBUG chat
       python -m shellgate
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from shellgate import __version__


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Kommandozeilen-Argumente parsen."""
    parser = argparse.ArgumentParser(
        prog="shellgate",
        description="Shellgate -- model-driven Nushell agent with a safety gate",
    )
    parser.add_argument("--version", action="version", version=f"Shellgate v{__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pfad zur config.yaml (Default: ~/.shellgate/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log-Level überschreiben",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("health", help="Health report as JSON")

    run = sub.add_parser("run-script", help="Run a single script directly")
    run.add_argument("script", help="Nushell script, or '-' to read from stdin")
    run.add_argument("--input", default=None, help="JSON value bound to $input")
    run.add_argument("--timeout", type=float, default=None, help="Timeout in seconds")

    chat = sub.add_parser("chat", help="Interactive conversation on the terminal")
    chat.add_argument("--conversation", default=None, help="Continue an existing conversation")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "chat"
        args.conversation = None
    return args


def _dump(value: Any) -> str:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


async def _health(service: Any) -> int:
    report = await service.status()
    print(_dump(report))
    return 0 if report["status"] != "unhealthy" else 1


async def _run_script(service: Any, args: argparse.Namespace) -> int:
    from shellgate.gateway.service import ErrorResponse

    script = sys.stdin.read() if args.script == "-" else args.script
    value = json.loads(args.input) if args.input is not None else None
    result = await service.run_script(script, value, args.timeout)
    print(_dump(result))
    if isinstance(result, ErrorResponse):
        return 2
    return 0 if result.success else 1


async def _chat(service: Any, conversation_id: str | None) -> int:
    from shellgate.gateway.service import ErrorResponse

    print(f"Shellgate v{__version__} -- Ctrl+D zum Beenden")
    loop = asyncio.get_running_loop()
    while True:
        try:
            line = await loop.run_in_executor(None, input, "> ")
        except EOFError:
            print()
            return 0
        message = line.strip()
        if not message:
            continue

        result = await service.process_turn(conversation_id, message)
        if isinstance(result, ErrorResponse):
            hint = f" (retry in {result.retry_after_seconds:.0f}s)" if result.retry_after_seconds else ""
            print(f"[{result.category}] {result.message}{hint}")
            continue

        conversation_id = result.conversation_id
        print(result.response)
        for execution in result.nushell_executions:
            status = "ok" if execution.result.success else "failed"
            print(f"\n--- script ({status}, {execution.result.duration_ms} ms) ---")
            print(execution.result.output or execution.result.error or "(no output)")


def main(argv: list[str] | None = None) -> None:
    """Haupteintrittspunkt."""
    args = parse_args(argv)

    # 0. .env-Dateien laden (Projekt, dann User)
    load_dotenv(Path(".env"), override=False)
    load_dotenv(Path.home() / ".shellgate" / ".env", override=True)

    # 1. Konfiguration laden
    from shellgate.config import load_config

    config = load_config(args.config)

    # 2. Logging initialisieren
    from shellgate.utils.logging import get_logger, setup_logging

    log_level = args.log_level or config.logging.level
    setup_logging(
        level=log_level,
        log_dir=config.logs_dir,
        json_logs=config.logging.json_logs,
        console=config.logging.console,
    )
    log = get_logger("shellgate")
    log.info("shellgate_starting", version=__version__, home=str(config.home), command=args.command)

    async def run() -> int:
        from shellgate.core.errors import ConfigError
        from shellgate.gateway.service import create_service

        try:
            service = await create_service(config)
        except ConfigError as exc:
            log.error("startup_failed", error=exc.message)
            print(f"Configuration error: {exc.message}", file=sys.stderr)
            return 2

        try:
            match args.command:
                case "health":
                    return await _health(service)
                case "run-script":
                    return await _run_script(service, args)
                case _:
                    return await _chat(service, args.conversation)
        finally:
            await service.close()

    try:
        exit_code = asyncio.run(run())
    except KeyboardInterrupt:
        exit_code = 130
    log.info("shellgate_stopped", exit_code=exit_code)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
