"""Per-server capability cache and connection status tracking."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from .. import __version__
from ..services.events import EventBus, ServerStatusChanged, ToolsRefreshed
from .errors import ServerNotFoundError, TransportClosedError, TransportError
from .models import (
    CapabilitySnapshot,
    PromptDescriptor,
    PromptMessage,
    ResourceDescriptor,
    ServerConfig,
    ServerStatus,
    TextContent,
    ToolCallResult,
    ToolWithServer,
)
from .process_pool import ProcessPool
from .transport import DEFAULT_REQUEST_TIMEOUT, Transport, create_transport

__all__ = [
    "CapabilityRegistry",
    "RefreshPolicy",
    "ServerInfo",
    "TransportFactory",
]

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[ServerConfig], Transport]


@dataclass(slots=True, frozen=True)
class RefreshPolicy:
    """Retry policy for capability fetches.

    Attributes:
        attempts: Total attempts including the first one.
        initial: Multiplier of the randomized exponential backoff in seconds.
        maximum: Upper bound of a single backoff delay in seconds.
    """

    attempts: int = 3
    initial: float = 1.0
    maximum: float = 16.0


@dataclass(slots=True, frozen=True)
class ServerInfo:
    """Read-only view of one registered server."""

    name: str
    config: ServerConfig
    status: ServerStatus
    error: str | None
    snapshot: CapabilitySnapshot


@dataclass(slots=True)
class _ServerState:
    config: ServerConfig
    status: ServerStatus = ServerStatus.DISCONNECTED
    error: str | None = None
    snapshot: CapabilitySnapshot = field(default_factory=CapabilitySnapshot)
    transport: Transport | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class CapabilityRegistry:
    """Tracks every configured server, its status and its last capability snapshot."""

    def __init__(
        self,
        pool: ProcessPool,
        *,
        events: EventBus | None = None,
        transport_factory: TransportFactory | None = None,
        refresh_policy: RefreshPolicy | None = None,
        client_name: str = "mcpwire",
        client_version: str = __version__,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._pool = pool
        self._events = events
        self._refresh_policy = refresh_policy or RefreshPolicy()
        self._servers: Dict[str, _ServerState] = {}
        if transport_factory is None:

            def transport_factory(config: ServerConfig) -> Transport:
                return create_transport(
                    config,
                    pool,
                    client_name=client_name,
                    client_version=client_version,
                    request_timeout=request_timeout,
                )

        self._transport_factory = transport_factory

    # ------------------------------------------------------------------
    # Server management
    # ------------------------------------------------------------------
    @property
    def pool(self) -> ProcessPool:
        return self._pool

    def add_server(self, config: ServerConfig) -> None:
        if config.name in self._servers:
            raise ValueError(f"Server '{config.name}' is already registered")
        self._servers[config.name] = _ServerState(config=config)
        LOGGER.debug("Registered server '%s' (%s)", config.name, config.kind.value)

    async def remove_server(self, name: str) -> None:
        await self.disconnect(name)
        self._servers.pop(name, None)

    def server_names(self) -> List[str]:
        return list(self._servers)

    def servers(self) -> List[ServerInfo]:
        return [self._info(state) for state in self._servers.values()]

    def server(self, name: str) -> ServerInfo:
        return self._info(self._require(name))

    def status(self, name: str) -> ServerStatus:
        return self._require(name).status

    def snapshot(self, name: str) -> CapabilitySnapshot:
        return self._require(name).snapshot

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self, name: str) -> CapabilitySnapshot:
        """Handshake with ``name`` and load its capabilities.

        A failure leaves the server in ``error`` status with the reason recorded
        and re-raises the underlying exception.
        """

        state = self._require(name)
        async with state.lock:
            if state.status is ServerStatus.CONNECTED and state.transport is not None:
                return state.snapshot
            self._set_status(state, ServerStatus.CONNECTING)
            transport = self._transport_factory(state.config)
            state.transport = transport
            try:
                await transport.initialize()
                snapshot = await self._fetch_with_retry(state.config.name, transport)
            except Exception as exc:
                LOGGER.error("Failed to connect to MCP server '%s': %s", name, exc)
                await self._fail(state, exc)
                raise
            self._replace_snapshot(state, snapshot)
            self._set_status(state, ServerStatus.CONNECTED)
            return snapshot

    async def connect_all(self) -> Dict[str, BaseException | None]:
        """Connect every server concurrently; one failure never blocks the others."""

        names = [name for name, state in self._servers.items() if state.status is not ServerStatus.CONNECTED]
        results = await asyncio.gather(*(self.connect(name) for name in names), return_exceptions=True)
        outcome: Dict[str, BaseException | None] = {}
        for name, result in zip(names, results):
            outcome[name] = result if isinstance(result, BaseException) else None
        connected = sum(1 for error in outcome.values() if error is None)
        LOGGER.info("Connected %d of %d MCP server(s)", connected, len(names))
        return outcome

    async def disconnect(self, name: str) -> None:
        state = self._require(name)
        async with state.lock:
            await self._drop_transport(state)
            state.snapshot = CapabilitySnapshot()
            state.error = None
            self._set_status(state, ServerStatus.DISCONNECTED)

    async def close(self) -> None:
        for name in list(self._servers):
            await self.disconnect(name)

    async def refresh(self, name: str) -> CapabilitySnapshot:
        """Re-fetch capabilities for ``name`` and swap the snapshot in one step."""

        state = self._require(name)
        if state.status is not ServerStatus.CONNECTED or state.transport is None:
            return await self.connect(name)
        async with state.lock:
            transport = state.transport
            if transport is None:
                raise TransportClosedError(f"Server '{name}' was disconnected during refresh")
            try:
                snapshot = await self._fetch_with_retry(name, transport)
            except Exception as exc:
                LOGGER.error("Capability refresh for '%s' failed: %s", name, exc)
                await self._fail(state, exc)
                raise
            self._replace_snapshot(state, snapshot)
            return snapshot

    async def refresh_all(self) -> Dict[str, BaseException | None]:
        names = [name for name, state in self._servers.items() if state.status is ServerStatus.CONNECTED]
        results = await asyncio.gather(*(self.refresh(name) for name in names), return_exceptions=True)
        return {
            name: result if isinstance(result, BaseException) else None
            for name, result in zip(names, results)
        }

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def find_server_for_tool(self, tool_name: str) -> str | None:
        """Return the first connected server advertising ``tool_name``."""

        for name, state in self._servers.items():
            if state.status is not ServerStatus.CONNECTED:
                continue
            if state.snapshot.find_tool(tool_name) is not None:
                return name
        return None

    def get_all_tools(self) -> List[ToolWithServer]:
        tools: List[ToolWithServer] = []
        for name, state in self._servers.items():
            if state.status is not ServerStatus.CONNECTED:
                continue
            tools.extend(ToolWithServer(name, tool) for tool in state.snapshot.tools)
        return tools

    def get_all_resources(self) -> List[tuple[str, ResourceDescriptor]]:
        return [
            (name, resource)
            for name, state in self._servers.items()
            if state.status is ServerStatus.CONNECTED
            for resource in state.snapshot.resources
        ]

    def get_all_prompts(self) -> List[tuple[str, PromptDescriptor]]:
        return [
            (name, prompt)
            for name, state in self._servers.items()
            if state.status is ServerStatus.CONNECTED
            for prompt in state.snapshot.prompts
        ]

    # ------------------------------------------------------------------
    # Routed protocol calls
    # ------------------------------------------------------------------
    async def call_tool(self, server_name: str, tool_name: str, arguments: Mapping[str, Any] | None = None) -> ToolCallResult:
        transport = await self._connected_transport(server_name)
        LOGGER.debug("Calling tool %s:%s", server_name, tool_name)
        return await transport.call_tool(tool_name, arguments)

    async def read_resource(self, server_name: str, uri: str) -> TextContent:
        transport = await self._connected_transport(server_name)
        return await transport.read_resource(uri)

    async def get_prompt(
        self,
        server_name: str,
        prompt_name: str,
        arguments: Mapping[str, Any] | None = None,
    ) -> List[PromptMessage]:
        transport = await self._connected_transport(server_name)
        return await transport.get_prompt(prompt_name, arguments)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, name: str) -> _ServerState:
        state = self._servers.get(name)
        if state is None:
            raise ServerNotFoundError(name)
        return state

    @staticmethod
    def _info(state: _ServerState) -> ServerInfo:
        return ServerInfo(
            name=state.config.name,
            config=state.config,
            status=state.status,
            error=state.error,
            snapshot=state.snapshot,
        )

    async def _connected_transport(self, name: str) -> Transport:
        state = self._require(name)
        if state.status is not ServerStatus.CONNECTED or state.transport is None:
            await self.connect(name)
        transport = state.transport
        if transport is None:
            raise ServerNotFoundError(name)
        return transport

    async def _fetch_with_retry(self, name: str, transport: Transport) -> CapabilitySnapshot:
        policy = self._refresh_policy
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, policy.attempts)),
            wait=wait_random_exponential(multiplier=policy.initial, max=policy.maximum),
            retry=retry_if_exception_type(TransportError),
            before_sleep=lambda retry_state: LOGGER.warning(
                "Capability fetch for '%s' failed (attempt %d): %s; retrying",
                name,
                retry_state.attempt_number,
                retry_state.outcome.exception() if retry_state.outcome else None,
            ),
        )
        async for attempt in retrying:
            with attempt:
                tools = await transport.list_tools()
                resources = await transport.list_resources()
                prompts = await transport.list_prompts()
        return CapabilitySnapshot(tools=tuple(tools), resources=tuple(resources), prompts=tuple(prompts))

    def _replace_snapshot(self, state: _ServerState, snapshot: CapabilitySnapshot) -> None:
        state.snapshot = snapshot
        state.error = None
        LOGGER.info(
            "Server '%s' offers %d tool(s), %d resource(s), %d prompt(s)",
            state.config.name,
            len(snapshot.tools),
            len(snapshot.resources),
            len(snapshot.prompts),
        )
        if self._events is not None:
            self._events.publish(
                ToolsRefreshed(
                    server_name=state.config.name,
                    tool_count=len(snapshot.tools),
                    resource_count=len(snapshot.resources),
                    prompt_count=len(snapshot.prompts),
                )
            )

    async def _fail(self, state: _ServerState, exc: BaseException) -> None:
        await self._drop_transport(state)
        state.snapshot = CapabilitySnapshot()
        self._set_status(state, ServerStatus.ERROR, reason=str(exc) or type(exc).__name__)

    async def _drop_transport(self, state: _ServerState) -> None:
        transport, state.transport = state.transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:
            LOGGER.exception("Error while closing transport for '%s'", state.config.name)

    def _set_status(self, state: _ServerState, status: ServerStatus, *, reason: str | None = None) -> None:
        previous = state.status
        state.status = status
        state.error = reason if status is ServerStatus.ERROR else None
        if previous is status and reason is None:
            return
        LOGGER.debug("Server '%s' status %s -> %s", state.config.name, previous.value, status.value)
        if self._events is not None:
            self._events.publish(
                ServerStatusChanged(
                    server_name=state.config.name,
                    status=status.value,
                    previous=previous.value,
                    reason=state.error,
                )
            )

