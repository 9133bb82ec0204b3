"""Exception hierarchy raised by the MCP client layer."""

from __future__ import annotations

from typing import Any

__all__ = [
    "METHOD_NOT_FOUND",
    "MCPError",
    "TransportError",
    "ProcessSpawnError",
    "RequestTimeoutError",
    "TransportClosedError",
    "ProtocolError",
    "RpcError",
    "CapabilityError",
    "ServerNotFoundError",
]

METHOD_NOT_FOUND = -32601


class MCPError(Exception):
    """Base class for every error raised while talking to tool servers."""


class TransportError(MCPError):
    """Raised when a single request could not be delivered or answered."""


class ProcessSpawnError(TransportError):
    """Raised when a tool-server subprocess cannot be started."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to start '{command}': {reason}")
        self.command = command
        self.reason = reason


class RequestTimeoutError(TransportError):
    """Raised when no response arrives within the request timeout."""

    def __init__(self, method: str, request_id: str, timeout: float) -> None:
        super().__init__(f"Request '{method}' (id={request_id}) timed out after {timeout:g}s")
        self.method = method
        self.request_id = request_id
        self.timeout = timeout


class TransportClosedError(TransportError):
    """Raised when the transport closed or its process exited mid-request."""


class ProtocolError(TransportError):
    """Raised for malformed JSON, invalid envelopes and non-2xx HTTP replies."""


class RpcError(MCPError):
    """The server answered with a JSON-RPC ``error`` object."""

    def __init__(self, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(f"RPC error {code}: {message}" if code is not None else f"RPC error: {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def is_method_not_found(self) -> bool:
        if self.code == METHOD_NOT_FOUND:
            return True
        return "method not found" in (self.message or "").lower()

    @classmethod
    def from_payload(cls, payload: Any) -> "RpcError":
        if isinstance(payload, dict):
            code = payload.get("code")
            return cls(
                code if isinstance(code, int) else None,
                str(payload.get("message") or "Unknown error"),
                payload.get("data"),
            )
        return cls(None, str(payload))


class CapabilityError(MCPError):
    """Raised when a server lacks a mandatory capability such as ``tools/list``."""

    def __init__(self, server_name: str, capability: str) -> None:
        super().__init__(f"Server '{server_name}' does not support required capability '{capability}'")
        self.server_name = server_name
        self.capability = capability


class ServerNotFoundError(MCPError):
    """Raised when a server name is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Server '{name}' is not registered")
        self.name = name
