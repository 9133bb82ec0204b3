"""Tests for the agent facade and runtime wiring."""

from __future__ import annotations

import json
from typing import Any, Sequence, Mapping

import pytest

from mcpwire.ai.agent import Agent
from mcpwire.ai.conversation import ConversationOrchestrator, OrchestratorConfig
from mcpwire.ai.messages import AssistantReply, ToolCall
from mcpwire.mcp.models import ServerStatus
from mcpwire.mcp.process_pool import ProcessPool
from mcpwire.mcp.registry import CapabilityRegistry
from mcpwire.runtime import Runtime
from mcpwire.services.settings import Settings


class _ScriptedProvider:
    def __init__(self, replies: Sequence[AssistantReply]) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def complete_chat(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> AssistantReply:
        self.calls.append({"messages": list(messages), **kwargs})
        return self.replies.pop(0)

    async def aclose(self) -> None:
        self.closed = True


def _settings(**overrides: Any) -> Settings:
    options: dict[str, Any] = {"api_key": "test", "model": "stub", "refresh_backoff_initial": 0.001}
    options.update(overrides)
    return Settings(**options)


@pytest.mark.asyncio
async def test_runtime_agent_calls_tools_on_real_subprocess(fake_server_config) -> None:
    provider = _ScriptedProvider([])
    runtime = Runtime.from_settings(_settings(), servers=[fake_server_config("fake")], provider=provider)
    async with runtime:
        agent = runtime.create_agent("one")

        tool_ids = [entry.unique_id for entry in agent.get_available_tools()]
        by_id = await agent.call_tool("fake:echo", {"message": "hello"})
        by_name = await agent.call_tool("add", {"a": 1, "b": 1})

        assert "fake:echo" in tool_ids
        assert by_id.text == "hello"
        assert by_name.text == "2"
        with pytest.raises(ValueError):
            await agent.call_tool("does-not-exist")

    assert len(runtime.pool) == 0
    assert provider.closed
    assert runtime.registry.status("fake") is ServerStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_two_servers_with_same_launch_share_one_process(fake_server_config) -> None:
    runtime = Runtime.from_settings(
        _settings(),
        servers=[fake_server_config("alpha"), fake_server_config("beta")],
        provider=_ScriptedProvider([]),
    )
    async with runtime:
        stats = runtime.pool.stats()
        pid_alpha = await runtime.registry.call_tool("alpha", "pid")
        pid_beta = await runtime.registry.call_tool("beta", "pid")

        assert len(stats) == 1
        assert stats[0].referencing_servers == ("alpha", "beta")
        assert pid_alpha.text == pid_beta.text

        await runtime.registry.disconnect("alpha")
        assert (await runtime.registry.call_tool("beta", "echo", {"message": "ok"})).text == "ok"
    assert len(runtime.pool) == 0


@pytest.mark.asyncio
async def test_start_reports_unavailable_servers(fake_server_config) -> None:
    runtime = Runtime.from_settings(
        _settings(refresh_attempts=1),
        servers=[fake_server_config("good"), fake_server_config("notools", "--no-tools")],
        provider=_ScriptedProvider([]),
    )
    try:
        outcome = await runtime.start()

        assert outcome["good"] is None
        assert outcome["notools"] is not None
        assert runtime.registry.status("notools") is ServerStatus.ERROR
        assert [entry.server_name for entry in runtime.registry.get_all_tools()] == ["good"] * 4
    finally:
        await runtime.aclose()


@pytest.mark.asyncio
async def test_agent_chat_loop_through_runtime(fake_server_config) -> None:
    provider = _ScriptedProvider(
        [
            AssistantReply(tool_calls=(ToolCall(id="c1", name="fake_echo", arguments=json.dumps({"message": "ping"})),)),
            AssistantReply(content="The server said ping."),
        ]
    )
    runtime = Runtime.from_settings(_settings(), servers=[fake_server_config("fake")], provider=provider)
    async with runtime:
        agent = runtime.create_agent("chat")

        reply = await agent.send_user_message_and_get_response("echo ping please")

        assert reply == "The server said ping."
        history = agent.get_history()
        assert history[2].role == "tool"
        assert history[2].content == "ping"

        agent.reset()
        assert agent.get_history() == []
        with pytest.raises(ValueError):
            runtime.create_agent("chat")


@pytest.mark.asyncio
async def test_runtime_loads_servers_from_config_file(tmp_path, fake_server_config) -> None:
    config = fake_server_config("fromfile")
    path = tmp_path / "mcp.json"
    path.write_text(
        json.dumps({"mcpServers": {"fromfile": {"command": config.command, "args": list(config.args)}}}),
        encoding="utf-8",
    )

    runtime = Runtime.from_settings(_settings(mcp_config_path=str(path)), provider=_ScriptedProvider([]))
    try:
        assert runtime.registry.server_names() == ["fromfile"]
        assert runtime.orchestrator_config().model == "stub"
    finally:
        await runtime.aclose()


def test_agent_delegates_reset_to_orchestrator() -> None:
    registry = CapabilityRegistry(ProcessPool())
    orchestrator = ConversationOrchestrator(
        _ScriptedProvider([]), registry, config=OrchestratorConfig(refresh_tools_on_send=False)
    )
    agent = Agent("solo", orchestrator, registry)
    orchestrator.add_user_message("hi")

    agent.reset()

    assert agent.get_history() == []
    assert agent.get_available_tools() == []
