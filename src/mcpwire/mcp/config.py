"""Loading tool-server definitions from ``mcp.json`` style files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .models import ServerConfig, TransportKind

__all__ = [
    "load_mcp_config",
    "parse_mcp_config",
    "parse_server_entry",
    "dump_mcp_config",
]

LOGGER = logging.getLogger(__name__)

_HTTP_ALIASES = {"http", "sse", "streamable-http", "streamable_http"}


def load_mcp_config(path: Path | str) -> Dict[str, ServerConfig]:
    """Read ``{"mcpServers": {...}}`` from ``path``.

    A missing file yields an empty mapping.

    Raises:
        ValueError: the file is not valid JSON or not a JSON object.
    """

    config_path = Path(path).expanduser()
    if not config_path.exists():
        LOGGER.info("No MCP config at %s; starting without servers", config_path)
        return {}
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"{config_path} is not valid JSON: {exc}") from exc
    return parse_mcp_config(payload, source=str(config_path))


def parse_mcp_config(payload: Any, *, source: str = "<memory>") -> Dict[str, ServerConfig]:
    if not isinstance(payload, Mapping):
        raise ValueError(f"{source} must contain a JSON object")
    servers = payload.get("mcpServers") or {}
    if not isinstance(servers, Mapping):
        raise ValueError(f"{source}: 'mcpServers' must be an object")
    configs: Dict[str, ServerConfig] = {}
    for name, entry in servers.items():
        config = parse_server_entry(str(name), entry, source=source)
        if config is not None:
            configs[config.name] = config
    LOGGER.debug("Loaded %d MCP server definition(s) from %s", len(configs), source)
    return configs


def parse_server_entry(name: str, entry: Any, *, source: str = "<memory>") -> ServerConfig | None:
    """Convert one server entry; invalid entries are skipped with a warning."""

    if not isinstance(entry, Mapping):
        LOGGER.warning("%s: server '%s' is not an object; skipping", source, name)
        return None
    raw_type = str(entry.get("type") or ("http" if entry.get("url") else "stdio")).lower()
    try:
        if raw_type in _HTTP_ALIASES:
            return ServerConfig.http(name, str(entry.get("url") or ""))
        if raw_type != "stdio":
            LOGGER.warning("%s: server '%s' has unknown type '%s'; skipping", source, name, raw_type)
            return None
        args = entry.get("args") or []
        env = entry.get("env") or {}
        if not isinstance(args, list) or not isinstance(env, Mapping):
            raise ValueError("'args' must be a list and 'env' an object")
        return ServerConfig.stdio(
            name,
            str(entry.get("command") or ""),
            [str(arg) for arg in args],
            {str(key): str(value) for key, value in env.items()},
        )
    except ValueError as exc:
        LOGGER.warning("%s: skipping server '%s': %s", source, name, exc)
        return None


def dump_mcp_config(configs: Mapping[str, ServerConfig] | List[ServerConfig]) -> Dict[str, Any]:
    """Render configs back into the ``mcp.json`` shape."""

    items = configs.values() if isinstance(configs, Mapping) else configs
    servers: Dict[str, Any] = {}
    for config in items:
        if config.kind is TransportKind.HTTP:
            servers[config.name] = {"type": "http", "url": config.url}
            continue
        entry: Dict[str, Any] = {"type": "stdio", "command": config.command}
        if config.args:
            entry["args"] = list(config.args)
        if config.env:
            entry["env"] = dict(config.env)
        servers[config.name] = entry
    return {"mcpServers": servers}
