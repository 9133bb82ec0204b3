"""MCP client layer: process pool, transports, capability registry and function bridge."""

from .bridge import FunctionBridge, ToolCallContext
from .config import load_mcp_config
from .errors import (
    CapabilityError,
    MCPError,
    ProcessSpawnError,
    ProtocolError,
    RequestTimeoutError,
    RpcError,
    ServerNotFoundError,
    TransportClosedError,
    TransportError,
)
from .models import (
    ServerConfig,
    ServerStatus,
    ToolCallResult,
    ToolDescriptor,
    ToolWithServer,
    TransportKind,
)
from .process_pool import ProcessHandle, ProcessPool
from .registry import CapabilityRegistry, RefreshPolicy
from .transport import HttpTransport, StdioTransport, Transport, create_transport

__all__ = [
    "CapabilityError",
    "CapabilityRegistry",
    "FunctionBridge",
    "HttpTransport",
    "MCPError",
    "ProcessHandle",
    "ProcessPool",
    "ProcessSpawnError",
    "ProtocolError",
    "RefreshPolicy",
    "RequestTimeoutError",
    "RpcError",
    "ServerConfig",
    "ServerNotFoundError",
    "ServerStatus",
    "StdioTransport",
    "ToolCallContext",
    "ToolCallResult",
    "ToolDescriptor",
    "ToolWithServer",
    "Transport",
    "TransportClosedError",
    "TransportError",
    "TransportKind",
    "create_transport",
    "load_mcp_config",
]
