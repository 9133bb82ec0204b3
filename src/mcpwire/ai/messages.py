"""Chat message types exchanged between the orchestrator and the model client."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Protocol, Sequence

from openai.types.chat import ChatCompletionToolChoiceOptionParam, ChatCompletionToolParam

__all__ = [
    "Role",
    "ToolCall",
    "Message",
    "AssistantReply",
    "ChatCompletionProvider",
]

Role = Literal["user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A function call requested by the model."""

    id: str
    name: str
    arguments: str = ""
    type: str = "function"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolCall":
        function = payload.get("function") or {}
        arguments = function.get("arguments", "")
        if not isinstance(arguments, str):
            # Some providers send already-decoded argument objects.
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(
            id=str(payload.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments or "",
            type=str(payload.get("type") or "function"),
        )


@dataclass(slots=True, frozen=True)
class Message:
    """One entry of a conversation.

    ``tool_calls`` only appears on assistant messages and ``tool_call_id``
    only on tool messages.  ``context_id`` tags injected context blocks so
    they can be replaced in place.
    """

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    context_id: str | None = None
    name: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)

    def to_api(self) -> Dict[str, Any]:
        """Return the chat-completions wire form (never carries reasoning)."""

        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.role == "tool":
            payload["tool_call_id"] = self.tool_call_id
            if self.name:
                payload["name"] = self.name
        return payload

    def to_dict(self) -> Dict[str, Any]:
        payload = self.to_api()
        if self.context_id is not None:
            payload["context_id"] = self.context_id
        if self.name and "name" not in payload:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        role = payload.get("role")
        if role not in ("user", "assistant", "tool"):
            raise ValueError(f"Unsupported message role: {role!r}")
        raw_calls = payload.get("tool_calls") or []
        return cls(
            role=role,
            content=str(payload.get("content") or ""),
            tool_calls=tuple(ToolCall.from_dict(item) for item in raw_calls if isinstance(item, Mapping)),
            tool_call_id=payload.get("tool_call_id"),
            context_id=payload.get("context_id"),
            name=payload.get("name"),
        )


@dataclass(slots=True, frozen=True)
class AssistantReply:
    """Normalized result of one chat-completion call."""

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    reasoning: str | None = None
    id: str | None = None
    name: str | None = None
    finish_reason: str | None = None
    usage: Mapping[str, Any] = field(default_factory=dict)


class ChatCompletionProvider(Protocol):
    """The model collaborator the orchestrator talks to."""

    async def complete_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[ChatCompletionToolParam] | None = None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> AssistantReply:  # pragma: no cover - protocol stub
        ...
