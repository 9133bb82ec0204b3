"""Shared pytest fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable

import pytest

from mcpwire.mcp.models import ServerConfig

FAKE_SERVER = Path(__file__).with_name("fake_mcp_server.py")


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("MCPWIRE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MCPWIRE_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def fake_server_config() -> Callable[..., ServerConfig]:
    """Build a stdio config that launches the fake tool server with ``flags``."""

    def _build(name: str = "fake", *flags: str, env: dict[str, str] | None = None) -> ServerConfig:
        return ServerConfig.stdio(name, sys.executable, [str(FAKE_SERVER), *flags], env)

    return _build
