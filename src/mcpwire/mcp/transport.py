"""JSON-RPC transports for MCP tool servers.

Two flavours share one protocol surface:

* :class:`StdioTransport` talks to a pooled subprocess over newline-delimited
  JSON on stdin/stdout and correlates responses by request id.
* :class:`HttpTransport` POSTs one JSON-RPC envelope per call.

Any protocol method triggers the ``initialize`` handshake first.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping

import httpx

from .. import __version__
from .errors import (
    CapabilityError,
    ProtocolError,
    RequestTimeoutError,
    RpcError,
    TransportClosedError,
    TransportError,
)
from .models import (
    PromptDescriptor,
    PromptMessage,
    ResourceDescriptor,
    RpcRequest,
    RpcResponse,
    ServerConfig,
    TextContent,
    ToolCallResult,
    ToolDescriptor,
    TransportKind,
)
from .process_pool import ProcessHandle, ProcessPool

__all__ = [
    "PROTOCOL_VERSION",
    "DEFAULT_REQUEST_TIMEOUT",
    "Transport",
    "StdioTransport",
    "HttpTransport",
    "create_transport",
]

LOGGER = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
DEFAULT_REQUEST_TIMEOUT = 30.0
_CLIENT_CAPABILITIES: Mapping[str, Any] = {"tools": {}, "resources": {}, "prompts": {}}


class Transport(ABC):
    """Protocol surface shared by every transport kind."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        client_name: str = "mcpwire",
        client_version: str = __version__,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._config = config
        self._client_name = client_name
        self._client_version = client_version
        self._request_timeout = request_timeout
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._closed = False
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    async def initialize(self) -> None:
        """Perform the capability handshake once; later calls are no-ops."""

        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            if self._closed:
                raise TransportClosedError(f"Transport for '{self.name}' is closed")
            await self._open()
            try:
                result = await self._request(
                    "initialize",
                    {
                        "protocolVersion": PROTOCOL_VERSION,
                        "capabilities": {key: dict(value) for key, value in _CLIENT_CAPABILITIES.items()},
                        "clientInfo": {"name": self._client_name, "version": self._client_version},
                    },
                    ensure_initialized=False,
                )
            except BaseException:
                await self._teardown()
                raise
            if isinstance(result, Mapping):
                self.server_info = dict(result.get("serverInfo") or {})
                self.server_capabilities = dict(result.get("capabilities") or {})
            self._initialized = True
            LOGGER.info(
                "Initialized MCP server '%s' (%s %s)",
                self.name,
                self.server_info.get("name", "unknown"),
                self.server_info.get("version", ""),
            )

    async def list_tools(self) -> List[ToolDescriptor]:
        """Return the server's tools; a server without ``tools/list`` is unusable."""

        try:
            result = await self._request("tools/list", {})
        except RpcError as exc:
            if not exc.is_method_not_found:
                raise
            LOGGER.error("Server '%s' does not implement tools/list; closing connection", self.name)
            await self.close()
            raise CapabilityError(self.name, "tools/list") from exc
        return [ToolDescriptor.from_dict(item) for item in _items(result, "tools")]

    async def list_resources(self) -> List[ResourceDescriptor]:
        items = await self._list_optional("resources/list", "resources")
        return [ResourceDescriptor.from_dict(item) for item in items]

    async def list_prompts(self) -> List[PromptDescriptor]:
        items = await self._list_optional("prompts/list", "prompts")
        return [PromptDescriptor.from_dict(item) for item in items]

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None = None) -> ToolCallResult:
        result = await self._request("tools/call", {"name": name, "arguments": dict(arguments or {})})
        if not isinstance(result, Mapping):
            raise ProtocolError(f"tools/call on '{self.name}' returned a non-object result")
        return ToolCallResult.from_dict(result)

    async def read_resource(self, uri: str) -> TextContent:
        result = await self._request("resources/read", {"uri": uri})
        contents = _items(result, "contents")
        if not contents:
            return TextContent(uri=uri)
        return TextContent.from_dict(contents[0])

    async def get_prompt(self, name: str, arguments: Mapping[str, Any] | None = None) -> List[PromptMessage]:
        params: Dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = dict(arguments)
        result = await self._request("prompts/get", params)
        return [PromptMessage.from_dict(item) for item in _items(result, "messages")]

    async def close(self) -> None:
        """Release the connection; safe to call repeatedly."""

        if self._closed:
            return
        self._closed = True
        self._initialized = False
        await self._teardown()
        LOGGER.debug("Closed transport for '%s'", self.name)

    async def __aenter__(self) -> "Transport":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _list_optional(self, method: str, key: str) -> List[Mapping[str, Any]]:
        try:
            result = await self._request(method, {})
        except RpcError as exc:
            if exc.is_method_not_found:
                LOGGER.info("Server '%s' does not support %s; treating as empty", self.name, method)
                return []
            raise
        return _items(result, key)

    async def _request(self, method: str, params: Dict[str, Any] | None, *, ensure_initialized: bool = True) -> Any:
        if self._closed:
            raise TransportClosedError(f"Transport for '{self.name}' is closed")
        if ensure_initialized:
            await self.initialize()
        response = await self._send(method, params)
        if response.is_error:
            raise RpcError.from_payload(response.error)
        return response.result

    @abstractmethod
    async def _open(self) -> None:
        """Prepare the underlying channel before the handshake."""

    @abstractmethod
    async def _send(self, method: str, params: Dict[str, Any] | None) -> RpcResponse:
        """Send one request and return its correlated response."""

    @abstractmethod
    async def _teardown(self) -> None:
        """Release channel resources."""


class StdioTransport(Transport):
    """Transport over a pooled subprocess speaking line-delimited JSON-RPC."""

    def __init__(
        self,
        config: ServerConfig,
        pool: ProcessPool,
        **kwargs: Any,
    ) -> None:
        if config.kind is not TransportKind.STDIO:
            raise ValueError(f"Server '{config.name}' is not a stdio server")
        if not config.command:
            raise ValueError(f"Server '{config.name}' has no command to launch")
        super().__init__(config, **kwargs)
        self._command: str = config.command
        self._pool = pool
        self._handle: ProcessHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._pending: Dict[str, asyncio.Future[RpcResponse]] = {}

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    @property
    def pending_request_ids(self) -> tuple[str, ...]:
        return tuple(self._pending)

    async def _open(self) -> None:
        if self._handle is not None:
            await self._release_handle()
        config = self._config
        self._handle = await self._pool.acquire(config.name, self._command, config.args, config.env)
        self._unsubscribe = self._handle.process.subscribe(self._on_line)

    async def _send(self, method: str, params: Dict[str, Any] | None) -> RpcResponse:
        if self._handle is None:
            raise TransportClosedError(f"Transport for '{self.name}' is not connected")
        process = self._handle.process
        request_id = process.next_request_id()
        request = RpcRequest(method=method, params=params, id=request_id)
        future: asyncio.Future[RpcResponse] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        LOGGER.debug("[%s] -> %s (id=%s)", self.name, method, request_id)
        try:
            await process.write_line(request.to_json())
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(method, request_id, self._request_timeout) from None
        finally:
            self._pending.pop(request_id, None)

    def _on_line(self, line: str | None) -> None:
        if line is None:
            # The next request re-runs the handshake on a respawned process.
            self._initialized = False
            self._fail_pending(TransportClosedError(f"Process for '{self.name}' exited"))
            return
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            LOGGER.warning("[%s] ignoring non-JSON stdout line: %.200s", self.name, line)
            return
        if not isinstance(payload, dict) or ("result" not in payload and "error" not in payload):
            LOGGER.debug("[%s] ignoring non-response message: %.200s", self.name, line)
            return
        response = RpcResponse.from_dict(payload)
        if response.id is None:
            LOGGER.warning("[%s] response without id: %.200s", self.name, line)
            return
        future = self._pending.get(response.id)
        if future is None:
            if not self._owned_elsewhere():
                LOGGER.warning("[%s] orphaned response for id=%s", self.name, response.id)
            return
        if not future.done():
            future.set_result(response)

    def _owned_elsewhere(self) -> bool:
        # Sibling transports on a shared process see every line too.
        if self._handle is None:
            return False
        try:
            return self._handle.process.reference_count > 1
        except TransportClosedError:
            return False

    def _fail_pending(self, error: TransportError) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)

    async def _teardown(self) -> None:
        self._fail_pending(TransportClosedError(f"Transport for '{self.name}' closed"))
        await self._release_handle()

    async def _release_handle(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.dispose()


class HttpTransport(Transport):
    """Transport issuing one HTTP POST per JSON-RPC call."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        if config.kind is not TransportKind.HTTP:
            raise ValueError(f"Server '{config.name}' is not an http server")
        if not config.url:
            raise ValueError(f"Server '{config.name}' has no url")
        super().__init__(config, **kwargs)
        self._url: str = config.url
        self._client = client
        self._owns_client = client is None
        self._headers = dict(headers or {})
        self._ids = itertools.count()

    async def _open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._request_timeout)
            self._owns_client = True

    async def _send(self, method: str, params: Dict[str, Any] | None) -> RpcResponse:
        if self._client is None:
            raise TransportClosedError(f"Transport for '{self.name}' is not connected")
        request = RpcRequest(method=method, params=params, id=str(next(self._ids)))
        url = self._url
        LOGGER.debug("[%s] POST %s -> %s (id=%s)", self.name, url, method, request.id)
        try:
            response = await self._client.post(
                url,
                content=request.to_json(),
                headers={"Content-Type": "application/json", "Accept": "application/json", **self._headers},
                timeout=self._request_timeout,
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(method, str(request.id), self._request_timeout) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP request to '{self.name}' failed: {exc}") from exc
        if not response.is_success:
            raise ProtocolError(f"HTTP {response.status_code} from '{self.name}' for {method}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Invalid JSON from '{self.name}' for {method}") from exc
        if not isinstance(payload, dict) or ("result" not in payload and "error" not in payload):
            raise ProtocolError(f"Malformed JSON-RPC response from '{self.name}' for {method}")
        return RpcResponse.from_dict(payload)

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        if client is not None and self._owns_client:
            await client.aclose()


def create_transport(
    config: ServerConfig,
    pool: ProcessPool,
    *,
    client_name: str = "mcpwire",
    client_version: str = __version__,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> Transport:
    """Build the transport matching ``config.kind``."""

    options: Dict[str, Any] = {
        "client_name": client_name,
        "client_version": client_version,
        "request_timeout": request_timeout,
    }
    if config.kind is TransportKind.STDIO:
        return StdioTransport(config, pool, **options)
    return HttpTransport(config, **options)


def _items(payload: Any, key: str) -> List[Mapping[str, Any]]:
    if not isinstance(payload, Mapping):
        return []
    items = payload.get(key)
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, Mapping)]
