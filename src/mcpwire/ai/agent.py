"""Agent facade consumed by whatever drives the conversation (UI, CLI, scripts)."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping

from ..mcp.models import ToolCallResult, ToolWithServer
from ..mcp.registry import CapabilityRegistry
from .conversation import ConversationOrchestrator
from .messages import Message

__all__ = ["Agent"]

LOGGER = logging.getLogger(__name__)


class Agent:
    """A named conversation bound to the shared capability registry."""

    def __init__(self, name: str, orchestrator: ConversationOrchestrator, registry: CapabilityRegistry) -> None:
        self.name = name
        self._orchestrator = orchestrator
        self._registry = registry

    @property
    def orchestrator(self) -> ConversationOrchestrator:
        return self._orchestrator

    def get_available_tools(self) -> List[ToolWithServer]:
        return self._registry.get_all_tools()

    async def call_tool(self, tool_id: str, args: Mapping[str, Any] | None = None) -> ToolCallResult:
        """Invoke ``server:tool`` directly, or a bare tool name on whichever server offers it."""

        server_name, sep, tool_name = tool_id.partition(":")
        if not sep:
            tool_name = tool_id
            found = self._registry.find_server_for_tool(tool_name)
            if found is None:
                raise ValueError(f"No connected server offers tool '{tool_name}'")
            server_name = found
        LOGGER.debug("Agent %s calling %s:%s", self.name, server_name, tool_name)
        return await self._registry.call_tool(server_name, tool_name, args)

    def get_history(self) -> List[Message]:
        return self._orchestrator.get_history()

    async def send_user_message_and_get_response(self, text: str) -> str:
        return await self._orchestrator.send_user_message_and_get_response(text)

    def reset(self) -> None:
        self._orchestrator.clear()

    async def aclose(self) -> None:
        await self._orchestrator.aclose()

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, messages={len(self._orchestrator)})"
