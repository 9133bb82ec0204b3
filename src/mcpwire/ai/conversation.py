"""Conversation state machine driving the model/tool-call loop.

The orchestrator owns one message history.  A turn looks like::

    user -> send_message() -> assistant(tool_calls=[...])
         -> process_tool_calls() -> tool, tool, ...
         -> send_message() -> assistant(...)

``process_and_continue`` repeats the last two steps until the model stops
asking for tools or the round limit is hit.
"""

from __future__ import annotations

import ast
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Tuple

from openai.types.chat import ChatCompletionToolChoiceOptionParam

from ..mcp.bridge import DEFAULT_MAX_CALL_AGE, FunctionBridge
from ..mcp.models import ToolCallResult, ToolWithServer
from ..services.events import EventBus, ToolCallCompleted
from .messages import AssistantReply, ChatCompletionProvider, Message, ToolCall
from .ordering import validate_tool_ordering

__all__ = [
    "ConversationError",
    "ConversationOrchestrator",
    "OrchestratorConfig",
    "ToolHost",
    "format_context_block",
]

LOGGER = logging.getLogger(__name__)

SYSTEM_CONTEXT_ID = "system"
DEFAULT_MAX_TOOL_ROUNDS = 10


class ConversationError(RuntimeError):
    """Raised when the conversation cannot be sent in its current state."""


class ToolHost(Protocol):
    """The capability registry surface the orchestrator relies on."""

    def get_all_tools(self) -> List[ToolWithServer]:  # pragma: no cover - protocol stub
        ...

    def server_names(self) -> List[str]:  # pragma: no cover - protocol stub
        ...

    def find_server_for_tool(self, tool_name: str) -> str | None:  # pragma: no cover - protocol stub
        ...

    async def refresh_all(self) -> Any:  # pragma: no cover - protocol stub
        ...

    async def call_tool(
        self, server_name: str, tool_name: str, arguments: Mapping[str, Any] | None = None
    ) -> ToolCallResult:  # pragma: no cover - protocol stub
        ...


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    """Model parameters and loop limits for one conversation."""

    model: str = "gpt-4o-mini"
    temperature: float | None = 0.7
    max_tokens: int | None = None
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    tool_call_max_age: float = DEFAULT_MAX_CALL_AGE
    system_prompt: str | None = None
    refresh_tools_on_send: bool = True


def format_context_block(context_id: str, content: str) -> str:
    return f"```{context_id.upper()}\n{content}\n```"


class ConversationOrchestrator:
    """Owns a conversation and runs the tool-calling loop against it."""

    def __init__(
        self,
        provider: ChatCompletionProvider,
        tools: ToolHost,
        *,
        bridge: FunctionBridge | None = None,
        events: EventBus | None = None,
        config: OrchestratorConfig | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self._provider = provider
        self._tools = tools
        self._bridge = bridge or FunctionBridge()
        self._events = events
        self._config = config or OrchestratorConfig()
        self.id = conversation_id or uuid.uuid4().hex
        self.created_at = time.time()
        self._messages: List[Message] = []
        self._reasoning: Dict[int, str] = {}
        self._refresh_task: asyncio.Task[Any] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def bridge(self) -> FunctionBridge:
        return self._bridge

    @property
    def history(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def get_history(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def get_reasoning(self, index: int) -> str | None:
        return self._reasoning.get(index)

    @property
    def last_reasoning(self) -> str | None:
        """Reasoning attached to the most recent assistant message, if any."""

        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role == "assistant":
                return self._reasoning.get(index)
        return None

    @property
    def has_pending_tool_calls(self) -> bool:
        return bool(self.pending_tool_calls())

    def pending_tool_calls(self) -> List[ToolCall]:
        """Calls of the latest assistant message that have no tool response yet."""

        for index in range(len(self._messages) - 1, -1, -1):
            message = self._messages[index]
            if message.role != "assistant":
                continue
            if not message.tool_calls:
                return []
            answered = {
                later.tool_call_id for later in self._messages[index + 1:] if later.role == "tool"
            }
            return [call for call in message.tool_calls if call.id not in answered]
        return []

    # ------------------------------------------------------------------
    # History mutation
    # ------------------------------------------------------------------
    def add_user_message(self, content: str) -> Message:
        message = Message(role="user", content=content)
        self._append(message)
        return message

    def add_assistant_message(
        self,
        content: str,
        *,
        reasoning: str | None = None,
        tool_calls: Sequence[ToolCall] = (),
    ) -> Message:
        message = Message(role="assistant", content=content, tool_calls=tuple(tool_calls))
        index = self._append(message)
        if reasoning:
            self._reasoning[index] = reasoning
        return message

    def add_system_message(self, content: str) -> Message:
        """Store system instructions as a ``user`` message tagged ``system``."""

        message = Message(role="user", content=content, context_id=SYSTEM_CONTEXT_ID)
        self._append(message)
        return message

    def add_system_context(self, context_id: str, content: str) -> Message:
        """Insert or replace the context block tagged ``context_id``.

        New blocks go in front of the first regular (untagged) message so that
        all context precedes the dialogue; with no regular messages they are
        appended.
        """

        message = Message(role="user", content=format_context_block(context_id, content), context_id=context_id)
        for index, existing in enumerate(self._messages):
            if existing.context_id == context_id:
                self._messages[index] = message
                LOGGER.debug("Replaced context block %s at index %d", context_id, index)
                return message
        for index, existing in enumerate(self._messages):
            if existing.context_id is None:
                self._insert(index, message)
                LOGGER.debug("Inserted context block %s at index %d", context_id, index)
                return message
        self._append(message)
        return message

    def remove_context(self, context_id: str) -> bool:
        for index, existing in enumerate(self._messages):
            if existing.context_id == context_id:
                self._delete(index)
                return True
        return False

    def clear(self) -> None:
        self._messages.clear()
        self._reasoning.clear()

    # ------------------------------------------------------------------
    # Model round-trips
    # ------------------------------------------------------------------
    def validate_ordering(self) -> None:
        """Raise :class:`~mcpwire.ai.ordering.ToolOrderingError` on a malformed transcript."""

        validate_tool_ordering(self._messages)

    async def send_message(
        self,
        *,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = None,
    ) -> str:
        """Send the conversation to the model and append its reply.

        When the reply requests tools the method returns right away; call
        :meth:`process_tool_calls` or :meth:`process_and_continue` next.
        """

        if not self._messages:
            raise ConversationError("Cannot send an empty conversation")
        self.validate_ordering()
        self._schedule_tool_refresh()

        functions = self._bridge.convert_tools(self._tools.get_all_tools())
        reply: AssistantReply = await self._provider.complete_chat(
            self._build_api_messages(),
            tools=functions or None,
            tool_choice=tool_choice if functions else None,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            model=self._config.model,
        )
        index = self._append(
            Message(role="assistant", content=reply.content, tool_calls=tuple(reply.tool_calls), name=reply.name)
        )
        if reply.reasoning:
            self._reasoning[index] = reply.reasoning
        if reply.tool_calls:
            LOGGER.info(
                "Model requested %d tool call(s): %s",
                len(reply.tool_calls),
                ", ".join(call.name for call in reply.tool_calls),
            )
        return reply.content

    async def process_tool_calls(self) -> bool:
        """Execute pending tool calls one at a time, in the order given.

        Every call produces exactly one ``tool`` message; failures are written
        as error text instead of raising.  Returns ``False`` when nothing was
        pending.
        """

        pending = self.pending_tool_calls()
        if not pending:
            return False
        for call in pending:
            await self._execute_tool_call(call)
        self._bridge.cleanup_older_than(self._config.tool_call_max_age)
        return True

    async def process_and_continue(self) -> str:
        """Alternate tool execution and model calls until the model is done."""

        content = self._last_assistant_content()
        rounds = 0
        while self.has_pending_tool_calls:
            if rounds >= self._config.max_tool_rounds:
                self._append_round_limit_error()
                break
            rounds += 1
            LOGGER.debug("Tool round %d/%d", rounds, self._config.max_tool_rounds)
            await self.process_tool_calls()
            content = await self.send_message()
        return content

    async def send_user_message_and_get_response(self, text: str, *, process_tools: bool = True) -> str:
        # A transcript that cannot be sent must not also collect the new message.
        self.validate_ordering()
        self.add_user_message(text)
        content = await self.send_message()
        if process_tools and self.has_pending_tool_calls:
            content = await self.process_and_continue()
        return content

    # ------------------------------------------------------------------
    # Export / copy
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        for index, message in enumerate(self._messages):
            payload = message.to_dict()
            reasoning = self._reasoning.get(index)
            if reasoning:
                payload["reasoning_content"] = reasoning
            messages.append(payload)
        return {
            "id": self.id,
            "model": self._config.model,
            "created_at": self.created_at,
            "messages": messages,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def copy(self, *, conversation_id: str | None = None) -> "ConversationOrchestrator":
        """Return an independent orchestrator with the same history and collaborators."""

        clone = ConversationOrchestrator(
            self._provider,
            self._tools,
            bridge=self._bridge,
            events=self._events,
            config=self._config,
            conversation_id=conversation_id,
        )
        clone._messages = list(self._messages)
        clone._reasoning = dict(self._reasoning)
        return clone

    async def aclose(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _append(self, message: Message) -> int:
        self._messages.append(message)
        return len(self._messages) - 1

    def _insert(self, index: int, message: Message) -> None:
        self._messages.insert(index, message)
        self._reasoning = {(key + 1 if key >= index else key): value for key, value in self._reasoning.items()}

    def _delete(self, index: int) -> None:
        del self._messages[index]
        self._reasoning = {
            (key - 1 if key > index else key): value for key, value in self._reasoning.items() if key != index
        }

    def _build_api_messages(self) -> List[Dict[str, Any]]:
        # Reasoning lives in the side-table and is never part of the payload.
        payload = [message.to_api() for message in self._messages]
        if self._config.system_prompt:
            payload.insert(0, {"role": "system", "content": self._config.system_prompt})
        return payload

    def _last_assistant_content(self) -> str:
        for message in reversed(self._messages):
            if message.role == "assistant":
                return message.content
        return ""

    def _schedule_tool_refresh(self) -> None:
        if not self._config.refresh_tools_on_send:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_tools(), name=f"tool-refresh-{self.id[:8]}")

    async def _refresh_tools(self) -> None:
        try:
            await self._tools.refresh_all()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.warning("Background tool refresh failed", exc_info=True)

    def _resolve(self, function_name: str, call_id: str) -> Tuple[str, str] | None:
        known_servers = self._tools.server_names()
        resolved = self._bridge.resolve(function_name, call_id)
        if resolved is not None and resolved[0] in known_servers:
            return resolved
        # Server names may contain underscores; try the longest matching prefix.
        for server in sorted(known_servers, key=len, reverse=True):
            prefix = f"{server}_"
            if function_name.startswith(prefix) and len(function_name) > len(prefix):
                return server, function_name[len(prefix):]
        server = self._tools.find_server_for_tool(function_name)
        if server is not None:
            return server, function_name
        return None

    async def _execute_tool_call(self, call: ToolCall) -> None:
        started = time.perf_counter()
        function_name = call.name
        server_name: str | None = None
        protocol_name = function_name
        is_error = True
        if not call.id:
            LOGGER.warning("Tool call for %s has no id; the API will reject its response", function_name)
        try:
            arguments = parse_tool_arguments(call.arguments)
        except ValueError as exc:
            content = f'Error: Invalid arguments for tool "{function_name}": {exc}'
        else:
            resolved = self._resolve(function_name, call.id)
            if resolved is None:
                LOGGER.warning("No server found for tool %s", function_name)
                content = f'Error: Server not found for tool "{function_name}".'
            else:
                server_name, tool_name = resolved
                protocol_name = f"{server_name}:{tool_name}"
                context = self._bridge.register_call(call.id, protocol_name, server_name, arguments)
                try:
                    result = await self._tools.call_tool(server_name, context.bare_tool_name, arguments)
                except Exception as exc:
                    LOGGER.warning("Tool %s failed: %s", protocol_name, exc)
                    content = f'Error: Tool "{function_name}" failed: {exc}'
                else:
                    is_error = result.is_error
                    content = result.text
                    if is_error and not content:
                        content = f'Error: Tool "{function_name}" reported an error.'
                finally:
                    self._bridge.complete_call(call.id)

        self._append(Message(role="tool", content=content, tool_call_id=call.id, name=function_name))
        duration = time.perf_counter() - started
        LOGGER.debug("Tool call %s (%s) finished in %.3fs error=%s", call.id, protocol_name, duration, is_error)
        if self._events is not None:
            self._events.publish(
                ToolCallCompleted(
                    call_id=call.id,
                    tool_name=protocol_name,
                    server_name=server_name,
                    is_error=is_error,
                    duration=duration,
                )
            )

    def _append_round_limit_error(self) -> None:
        limit = self._config.max_tool_rounds
        LOGGER.warning("Tool call loop stopped after %d rounds", limit)
        self._append(
            Message(
                role="tool",
                content=f"Error: Too many tool call rounds. Maximum of {limit} rounds exceeded.",
                tool_call_id=f"system_error_{int(time.time() * 1000)}",
                name="system",
            )
        )


def parse_tool_arguments(raw: str | None) -> Dict[str, Any]:
    """Decode a model-issued argument string into a JSON object.

    Raises:
        ValueError: the text is not a JSON (or Python literal) object.
    """

    text = (raw or "").strip()
    if not text:
        return {}
    try:
        value = json.loads(text, strict=False)
    except ValueError as exc:
        value = _literal_arguments(text)
        if value is None:
            raise ValueError(f"arguments are not valid JSON ({exc})") from exc
    if not isinstance(value, dict):
        raise ValueError("arguments must be a JSON object")
    return value


def _literal_arguments(text: str) -> Any | None:
    if not text or text[0] != "{":
        return None
    try:
        return ast.literal_eval(text)
    except (ValueError, SyntaxError):
        return None
