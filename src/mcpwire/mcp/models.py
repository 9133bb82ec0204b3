"""Immutable data types shared by the MCP transport, registry and bridge."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence

__all__ = [
    "TransportKind",
    "ServerStatus",
    "ServerConfig",
    "ToolDescriptor",
    "ResourceDescriptor",
    "PromptArgument",
    "PromptDescriptor",
    "TextContent",
    "ToolCallResult",
    "PromptMessage",
    "ToolWithServer",
    "CapabilitySnapshot",
    "RpcRequest",
    "RpcResponse",
]


class TransportKind(str, Enum):
    """How a tool server is reached."""

    STDIO = "stdio"
    HTTP = "http"


class ServerStatus(str, Enum):
    """Connection lifecycle of a registered server."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ServerConfig:
    """Launch/connection settings for one logical tool server."""

    name: str
    kind: TransportKind = TransportKind.STDIO
    command: str | None = None
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    url: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Server name must be a non-empty string")
        if self.kind is TransportKind.STDIO and not self.command:
            raise ValueError(f"Server '{self.name}' uses stdio but has no command")
        if self.kind is TransportKind.HTTP and not self.url:
            raise ValueError(f"Server '{self.name}' uses http but has no url")
        # Freeze the mutable inputs so the config stays read-only after load.
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", dict(self.env))

    @classmethod
    def stdio(
        cls,
        name: str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> "ServerConfig":
        return cls(name=name, kind=TransportKind.STDIO, command=command, args=tuple(args), env=dict(env or {}))

    @classmethod
    def http(cls, name: str, url: str) -> "ServerConfig":
        return cls(name=name, kind=TransportKind.HTTP, url=url)


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    """A tool advertised by ``tools/list``."""

    name: str
    description: str | None = None
    input_schema: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolDescriptor":
        schema = payload.get("inputSchema")
        return cls(
            name=str(payload.get("name", "")),
            description=payload.get("description"),
            input_schema=dict(schema) if isinstance(schema, Mapping) else {},
        )


@dataclass(slots=True, frozen=True)
class ResourceDescriptor:
    """A resource advertised by ``resources/list``."""

    uri: str
    name: str
    description: str | None = None
    mime_type: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ResourceDescriptor":
        uri = str(payload.get("uri", ""))
        return cls(
            uri=uri,
            name=str(payload.get("name") or uri),
            description=payload.get("description"),
            mime_type=payload.get("mimeType"),
        )


@dataclass(slots=True, frozen=True)
class PromptArgument:
    name: str
    description: str | None = None
    required: bool = False


@dataclass(slots=True, frozen=True)
class PromptDescriptor:
    """A prompt template advertised by ``prompts/list``."""

    name: str
    description: str | None = None
    arguments: tuple[PromptArgument, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PromptDescriptor":
        raw_arguments = payload.get("arguments") or []
        arguments = tuple(
            PromptArgument(
                name=str(item.get("name", "")),
                description=item.get("description"),
                required=bool(item.get("required", False)),
            )
            for item in raw_arguments
            if isinstance(item, Mapping)
        )
        return cls(name=str(payload.get("name", "")), description=payload.get("description"), arguments=arguments)


@dataclass(slots=True, frozen=True)
class TextContent:
    """One content item of a tool result or resource read."""

    type: str = "text"
    text: str = ""
    uri: str | None = None
    mime_type: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "TextContent":
        if not isinstance(payload, Mapping):
            return cls(text="" if payload is None else str(payload))
        text = payload.get("text")
        if text is None and payload.get("type") not in (None, "text"):
            # Non-text parts (images, embedded resources) are rendered as JSON.
            text = json.dumps({k: v for k, v in payload.items() if k != "type"}, ensure_ascii=False)
        return cls(
            type=str(payload.get("type") or "text"),
            text="" if text is None else str(text),
            uri=payload.get("uri"),
            mime_type=payload.get("mimeType"),
        )


@dataclass(slots=True, frozen=True)
class ToolCallResult:
    """Result of ``tools/call``."""

    content: tuple[TextContent, ...] = ()
    is_error: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolCallResult":
        raw_content = payload.get("content") or []
        if not isinstance(raw_content, list):
            raw_content = [raw_content]
        return cls(
            content=tuple(TextContent.from_dict(item) for item in raw_content),
            is_error=bool(payload.get("isError", False)),
        )

    @property
    def text(self) -> str:
        return "\n".join(item.text for item in self.content if item.text)


@dataclass(slots=True, frozen=True)
class PromptMessage:
    role: str
    content: TextContent

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PromptMessage":
        content = payload.get("content")
        if isinstance(content, list):
            content = content[0] if content else None
        return cls(role=str(payload.get("role") or "user"), content=TextContent.from_dict(content))


@dataclass(slots=True, frozen=True)
class ToolWithServer:
    """A tool tagged with the server that owns it."""

    server_name: str
    tool: ToolDescriptor

    @property
    def unique_id(self) -> str:
        return f"{self.server_name}:{self.tool.name}"


@dataclass(slots=True, frozen=True)
class CapabilitySnapshot:
    """Everything one server advertised at a single refresh.

    Snapshots are replaced wholesale; readers holding a reference never see a
    partially refreshed state.
    """

    tools: tuple[ToolDescriptor, ...] = ()
    resources: tuple[ResourceDescriptor, ...] = ()
    prompts: tuple[PromptDescriptor, ...] = ()
    refreshed_at: float = field(default_factory=time.time)

    def find_tool(self, name: str) -> ToolDescriptor | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 envelopes
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RpcRequest:
    """JSON-RPC request; ``id`` of ``None`` makes it a notification."""

    method: str
    params: Dict[str, Any] | None = None
    id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.id is not None:
            payload["id"] = self.id
        if self.params is not None:
            payload["params"] = self.params
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


@dataclass(slots=True)
class RpcResponse:
    id: str | None
    result: Any = None
    error: Dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RpcResponse":
        raw_id = payload.get("id")
        error = payload.get("error")
        return cls(
            id=None if raw_id is None else str(raw_id),
            result=payload.get("result"),
            error=error if isinstance(error, dict) else ({"message": str(error)} if error is not None else None),
        )

