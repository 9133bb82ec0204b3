"""Tests for mcp.json loading."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from mcpwire.mcp.config import (
    dump_mcp_config,
    load_mcp_config,
    parse_mcp_config,
)
from mcpwire.mcp.models import ServerConfig, TransportKind


def test_missing_file_yields_no_servers(tmp_path: Path) -> None:
    assert load_mcp_config(tmp_path / "mcp.json") == {}


def test_parses_stdio_and_http_entries(tmp_path: Path) -> None:
    path = tmp_path / "mcp.json"
    path.write_text(
        json.dumps(
            {
                "mcpServers": {
                    "fs": {"command": "npx", "args": ["-y", "server-fs", "/tmp"], "env": {"DEBUG": 1}},
                    "web": {"type": "sse", "url": "http://localhost:9000/mcp"},
                    "remote": {"url": "http://remote/mcp"},
                }
            }
        ),
        encoding="utf-8",
    )

    configs = load_mcp_config(path)

    assert configs["fs"] == ServerConfig.stdio("fs", "npx", ["-y", "server-fs", "/tmp"], {"DEBUG": "1"})
    assert configs["web"].kind is TransportKind.HTTP
    assert configs["web"].url == "http://localhost:9000/mcp"
    assert configs["remote"].kind is TransportKind.HTTP


def test_invalid_entries_are_skipped(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="mcpwire.mcp.config"):
        configs = parse_mcp_config(
            {
                "mcpServers": {
                    "nocommand": {"type": "stdio"},
                    "weird": {"type": "carrier-pigeon", "command": "x"},
                    "scalar": 5,
                    "ok": {"command": "run"},
                }
            }
        )

    assert list(configs) == ["ok"]
    assert "nocommand" in caplog.text
    assert "carrier-pigeon" in caplog.text


def test_invalid_json_raises(tmp_path: Path) -> None:
    path = tmp_path / "mcp.json"
    path.write_text("{", encoding="utf-8")

    with pytest.raises(ValueError):
        load_mcp_config(path)


def test_non_object_root_raises() -> None:
    with pytest.raises(ValueError):
        parse_mcp_config(["not", "an", "object"])


def test_dump_matches_file_shape() -> None:
    configs = {
        "fs": ServerConfig.stdio("fs", "npx", ["a"], {"K": "V"}),
        "web": ServerConfig.http("web", "http://w"),
    }

    dumped = dump_mcp_config(configs)

    assert dumped == {
        "mcpServers": {
            "fs": {"type": "stdio", "command": "npx", "args": ["a"], "env": {"K": "V"}},
            "web": {"type": "http", "url": "http://w"},
        }
    }
    assert parse_mcp_config(dumped) == configs
