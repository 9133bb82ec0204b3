"""Command line entry point for inspecting servers and chatting with tools."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

import openai

from .ai.agent import Agent
from .ai.conversation import ConversationError
from .ai.ordering import ToolOrderingError
from .mcp.errors import MCPError
from .runtime import Runtime
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_EXIT_WORDS = {"exit", "quit", ":q"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    # The console stays quiet unless debugging; the log file always gets everything at ``level``.
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``mcpwire`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("MCPWIRE_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings or os.environ.get("MCPWIRE_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)
    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    if args.config:
        overrides["mcp_config_path"] = args.config
    if args.model:
        overrides["model"] = args.model

    settings = load_settings(store=store, overrides=overrides or None)
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.command == "settings":
        _dump_settings(settings, store, overrides=overrides)
        return

    try:
        code = asyncio.run(_run_command(args, settings))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        code = 130
    raise SystemExit(code)


async def _run_command(args: argparse.Namespace, settings: Settings, *, stream: TextIO | None = None) -> int:
    out = stream or sys.stdout
    async with Runtime.from_settings(settings) as runtime:
        if args.command == "servers":
            return _print_servers(runtime, out)
        if args.command == "tools":
            return _print_tools(runtime, out)
        if args.command == "call":
            return await _call_tool(runtime, args.tool, args.arguments, out)
        if args.command == "chat":
            return await _chat(runtime, args.prompt, out)
    raise ValueError(f"Unknown command {args.command!r}")


def _print_servers(runtime: Runtime, out: TextIO) -> int:
    infos = runtime.registry.servers()
    if not infos:
        out.write("No MCP servers configured.\n")
        return 0
    for info in infos:
        line = f"{info.name}\t{info.status.value}\t{len(info.snapshot.tools)} tool(s)"
        if info.error:
            line += f"\t{info.error}"
        out.write(line + "\n")
    return 0


def _print_tools(runtime: Runtime, out: TextIO) -> int:
    for entry in runtime.registry.get_all_tools():
        line = entry.unique_id
        if entry.tool.description:
            line += f" - {entry.tool.description}"
        out.write(line + "\n")
    return 0


async def _call_tool(runtime: Runtime, tool_id: str, raw_arguments: str | None, out: TextIO) -> int:
    try:
        arguments = json.loads(raw_arguments) if raw_arguments else {}
    except json.JSONDecodeError as exc:
        print(f"Arguments must be a JSON object: {exc}", file=sys.stderr)
        return 2
    if not isinstance(arguments, dict):
        print("Arguments must be a JSON object", file=sys.stderr)
        return 2
    agent = runtime.create_agent("cli")
    try:
        result = await agent.call_tool(tool_id, arguments)
    except (MCPError, ValueError) as exc:
        print(f"Tool call failed: {exc}", file=sys.stderr)
        return 1
    out.write(result.text + "\n")
    return 1 if result.is_error else 0


async def _chat(runtime: Runtime, prompt: str | None, out: TextIO) -> int:
    agent = runtime.create_agent("chat")
    if prompt:
        reply = await _chat_turn(agent, prompt)
        if reply is None:
            return 1
        out.write(reply + "\n")
        return 0
    while True:
        try:
            text = await asyncio.to_thread(input, "> ")
        except EOFError:
            out.write("\n")
            return 0
        text = text.strip()
        if not text:
            continue
        if text.lower() in _EXIT_WORDS:
            return 0
        if text == "/reset":
            agent.reset()
            continue
        reply = await _chat_turn(agent, text)
        if reply is None:
            continue
        out.write(reply + "\n")
        reasoning = agent.orchestrator.last_reasoning
        if reasoning:
            _LOGGER.debug("Reasoning: %s", reasoning)


async def _chat_turn(agent: Agent, text: str) -> str | None:
    """Run one chat turn; errors are reported on stderr and yield ``None``."""

    try:
        return await agent.send_user_message_and_get_response(text)
    except ToolOrderingError as exc:
        print(f"Error: {exc}\nThe conversation cannot continue; type /reset to start over.", file=sys.stderr)
    except (ConversationError, MCPError, openai.APIError) as exc:
        _LOGGER.warning("Chat turn failed: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
    return None


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mcpwire",
        description="Talk to MCP tool servers directly or through a tool-calling chat model.",
    )
    parser.add_argument("--config", metavar="PATH", help="Path to the mcp.json server definitions.")
    parser.add_argument("--settings", metavar="PATH", help="Override the default ~/.mcpwire/settings.json path.")
    parser.add_argument("--model", help="Chat model to use for this run.")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level to the console and log file.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting for this run (repeatable).",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("servers", help="Connect to every server and print its status.")
    commands.add_parser("tools", help="List the tools offered by connected servers.")
    call = commands.add_parser("call", help="Call one tool and print its result.")
    call.add_argument("tool", help="Tool id as SERVER:TOOL, or a bare tool name.")
    call.add_argument("arguments", nargs="?", help="JSON object with the tool arguments.")
    chat = commands.add_parser("chat", help="Send one prompt, or start an interactive chat.")
    chat.add_argument("prompt", nargs="?", help="Prompt to send; omit for an interactive session.")
    commands.add_parser("settings", help="Print the effective settings (secrets redacted).")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and type(None) in get_args(annotation):
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            value = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(value, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return value
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    output = {
        "settings": payload,
        "meta": {
            "path": str(store.path),
            "cli_overrides": sorted(overrides.keys()),
            "environment_variables": sorted(name for name in os.environ if name.startswith("MCPWIRE_")),
        },
    }
    json.dump(output, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    main()
