"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mcpwire.services.settings import Settings, SettingsStore, redact_secret


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings == Settings()
    assert settings.mcp_request_timeout == 30.0
    assert settings.max_tool_rounds == 10


def test_save_and_load_roundtrip_without_api_key(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    store = SettingsStore(path)
    original = Settings(
        api_key="super-secret",
        model="gpt-4.1-mini",
        mcp_config_path="/etc/mcp.json",
        default_headers={"X-Test": "1"},
        metadata={"env": "dev"},
        max_tool_rounds=4,
    )

    store.save(original)
    raw = json.loads(path.read_text(encoding="utf-8"))
    reloaded = SettingsStore(path).load()

    assert "api_key" not in raw
    assert raw["version"] == 1
    assert reloaded.api_key == ""
    assert reloaded.model == "gpt-4.1-mini"
    assert reloaded.mcp_config_path == "/etc/mcp.json"
    assert reloaded.default_headers == {"X-Test": "1"}
    assert reloaded.max_tool_rounds == 4
    assert not path.with_suffix(".tmp").exists()


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "m1", "theme": "dark", "version": 1}), encoding="utf-8")

    settings = SettingsStore(path).load()

    assert settings.model == "m1"


def test_explicit_overrides_merge_metadata(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(metadata={"a": "1"}))

    settings = SettingsStore(path).load(overrides={"metadata": {"b": "2"}, "model": "cli-model", "bogus": 1})

    assert settings.metadata == {"a": "1", "b": "2"}
    assert settings.model == "cli-model"


def test_environment_overrides_win(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MCPWIRE_API_KEY", "env-key")
    monkeypatch.setenv("MCPWIRE_MODEL", "env-model")
    monkeypatch.setenv("MCPWIRE_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("MCPWIRE_MAX_TOOL_ROUNDS", "3")
    monkeypatch.setenv("MCPWIRE_MCP_REQUEST_TIMEOUT", "2.5")

    settings = SettingsStore(tmp_path / "settings.json").load(overrides={"model": "cli-model"})

    assert settings.api_key == "env-key"
    assert settings.model == "env-model"
    assert settings.debug_logging is True
    assert settings.max_tool_rounds == 3
    assert settings.mcp_request_timeout == 2.5


def test_malformed_numeric_environment_override_is_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MCPWIRE_MAX_TOOL_ROUNDS", "many")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.max_tool_rounds == 10


@pytest.mark.parametrize(
    ("secret", "expected"),
    [("", ""), ("abc", "***"), ("sk-123456", "sk*****56")],
)
def test_redact_secret(secret: str, expected: str) -> None:
    assert redact_secret(secret) == expected
