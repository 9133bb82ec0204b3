"""Translation between MCP tool ids and OpenAI function-calling names.

The chat API only accepts ``[a-zA-Z0-9_-]`` in function names, so the
protocol form ``server:tool`` travels as ``server_tool``.  Decoding splits on
the first underscore and is therefore ambiguous when a server name contains
one; :meth:`FunctionBridge.resolve` prefers exact mappings recorded while
encoding and only falls back to the generic decode.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Tuple, cast

from openai.types.chat import ChatCompletionToolParam

from .models import ToolWithServer

__all__ = ["FunctionBridge", "ToolCallContext", "DEFAULT_MAX_CALL_AGE"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CALL_AGE = 3600.0


@dataclass(slots=True)
class ToolCallContext:
    """Bookkeeping for one outstanding tool call.

    Attributes:
        id: Tool call id issued by the model; echoed back on the tool message.
        tool_name: Protocol form ``server:tool``.
        server_name: Owning server.
        arguments: Parsed arguments sent to the server.
        created_at: ``time.time()`` at registration.
    """

    id: str
    tool_name: str
    server_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @property
    def bare_tool_name(self) -> str:
        prefix = f"{self.server_name}:"
        if self.tool_name.startswith(prefix):
            return self.tool_name[len(prefix):]
        return self.tool_name


class FunctionBridge:
    """Name codec plus the table of in-flight tool calls."""

    def __init__(self) -> None:
        self._calls: Dict[str, ToolCallContext] = {}
        self._known: Dict[str, Tuple[str, str]] = {}
        self._counter = itertools.count()

    # ------------------------------------------------------------------
    # Name codec
    # ------------------------------------------------------------------
    @staticmethod
    def to_api_name(server_name: str, tool_name: str) -> str:
        return f"{server_name}_{tool_name}"

    @staticmethod
    def from_api_name(api_name: str) -> str:
        """Best-effort decode of ``server_tool`` into ``server:tool``.

        Names without an underscore, or whose only underscore is the last
        character, are returned unchanged.
        """

        index = api_name.find("_")
        if index == -1 or index == len(api_name) - 1:
            return api_name
        return f"{api_name[:index]}:{api_name[index + 1:]}"

    def convert_tools(self, tools: Iterable[ToolWithServer]) -> List[ChatCompletionToolParam]:
        """Build OpenAI function specs and remember the exact name mapping."""

        functions: List[ChatCompletionToolParam] = []
        known: Dict[str, Tuple[str, str]] = {}
        for entry in tools:
            api_name = self.to_api_name(entry.server_name, entry.tool.name)
            if api_name in known:
                LOGGER.warning("Function name %s is produced by more than one tool; keeping the first", api_name)
                continue
            known[api_name] = (entry.server_name, entry.tool.name)
            function: Dict[str, Any] = {
                "name": api_name,
                "parameters": convert_schema(entry.tool.input_schema),
            }
            if entry.tool.description:
                function["description"] = entry.tool.description
            functions.append(cast(ChatCompletionToolParam, {"type": "function", "function": function}))
        self._known = known
        return functions

    def resolve(self, api_name: str, call_id: str | None = None) -> Tuple[str, str] | None:
        """Return ``(server, tool)`` for a function name issued by the model."""

        exact = self._known.get(api_name)
        if exact is not None:
            return exact
        if call_id is not None:
            context = self._calls.get(call_id)
            if context is not None:
                return context.server_name, context.bare_tool_name
        decoded = self.from_api_name(api_name)
        server, sep, tool = decoded.partition(":")
        if not sep:
            return None
        return server, tool

    # ------------------------------------------------------------------
    # Outstanding call table
    # ------------------------------------------------------------------
    def generate_call_id(self) -> str:
        return f"call_{int(time.time() * 1000)}_{next(self._counter)}"

    def register_call(
        self,
        call_id: str,
        tool_name: str,
        server_name: str,
        arguments: Mapping[str, Any] | None = None,
    ) -> ToolCallContext:
        """Record an outstanding call; ``tool_name`` may be the api or protocol form."""

        protocol_name = tool_name
        api_prefix = f"{server_name}_"
        if ":" not in tool_name and tool_name.startswith(api_prefix):
            protocol_name = f"{server_name}:{tool_name[len(api_prefix):]}"
        elif ":" not in tool_name:
            protocol_name = f"{server_name}:{tool_name}"
        context = ToolCallContext(
            id=call_id,
            tool_name=protocol_name,
            server_name=server_name,
            arguments=dict(arguments or {}),
        )
        self._calls[call_id] = context
        LOGGER.debug("Registered tool call %s -> %s", call_id, protocol_name)
        return context

    def get_call(self, call_id: str) -> ToolCallContext | None:
        return self._calls.get(call_id)

    def complete_call(self, call_id: str) -> ToolCallContext | None:
        context = self._calls.pop(call_id, None)
        if context is None:
            LOGGER.warning("Completed unknown tool call id %s", call_id)
        return context

    @property
    def active_calls(self) -> List[ToolCallContext]:
        return list(self._calls.values())

    def cleanup_older_than(self, max_age: float = DEFAULT_MAX_CALL_AGE, *, now: float | None = None) -> int:
        """Drop contexts older than ``max_age`` seconds and return how many were removed."""

        cutoff = (time.time() if now is None else now) - max_age
        stale = [call_id for call_id, context in self._calls.items() if context.created_at < cutoff]
        for call_id in stale:
            self._calls.pop(call_id, None)
        if stale:
            LOGGER.info("Dropped %d abandoned tool call(s)", len(stale))
        return len(stale)


def convert_schema(schema: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Reduce an MCP input schema to the subset the function-calling API accepts."""

    schema = schema or {}
    converted: Dict[str, Any] = {
        "type": schema.get("type") or "object",
        "properties": dict(schema.get("properties") or {}),
    }
    required = schema.get("required")
    if required:
        converted["required"] = list(required)
    description = schema.get("description")
    if description:
        converted["description"] = description
    return converted
