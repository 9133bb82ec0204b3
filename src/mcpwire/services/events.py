"""Event channel for consumers that observe the MCP core.

The core publishes a small set of events at the seams outside code cares
about (server status changes, capability refreshes, completed tool calls).
Nothing inside the core subscribes to its own events.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, TYPE_CHECKING
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

__all__ = [
    "Event",
    "EventBus",
    "ServerStatusChanged",
    "ToolsRefreshed",
    "ToolCallCompleted",
]

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events published on an :class:`EventBus`."""


@dataclass(slots=True)
class ServerStatusChanged(Event):
    """Emitted whenever a server's connection status changes.

    Attributes:
        server_name: Name of the server from ``mcp.json``.
        status: New status value (``disconnected``, ``connecting``,
            ``connected`` or ``error``).
        previous: Status before the change.
        reason: Human-readable error reason when ``status`` is ``error``.
    """

    server_name: str
    status: str
    previous: str
    reason: str | None = None


@dataclass(slots=True)
class ToolsRefreshed(Event):
    """Emitted after a server's capability snapshot was replaced."""

    server_name: str
    tool_count: int
    resource_count: int
    prompt_count: int


@dataclass(slots=True)
class ToolCallCompleted(Event):
    """Emitted once per processed tool call, successful or not.

    Attributes:
        call_id: Id issued by the model for this call.
        tool_name: Protocol form ``server:tool`` when resolved, otherwise the raw function name.
        server_name: Owning server, or ``None`` when resolution failed.
        is_error: Whether the tool message carries an error.
        duration: Seconds spent executing the call.
    """

    call_id: str
    tool_name: str
    server_name: str | None
    is_error: bool
    duration: float


class EventBus(Generic[E]):
    """Typed publish/subscribe channel.

    Handlers subscribed to a base class also receive its subclasses.  Bound
    methods are held weakly so subscribers can be garbage collected.

    Example::

        bus = EventBus()
        bus.subscribe(ServerStatusChanged, lambda event: print(event.status))
        bus.publish(ServerStatusChanged("fs", "connected", "connecting"))
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed handler %s to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                return

    def publish(self, event: E) -> None:
        """Invoke matching handlers synchronously; handler errors are logged and skipped."""

        delivered = 0
        for event_type in type(event).__mro__:
            handlers = self._handlers.get(event_type)
            if not handlers:
                continue
            dead: list[_HandlerRef] = []
            for handler_ref in list(handlers):
                handler = handler_ref.resolve()
                if handler is None:
                    dead.append(handler_ref)
                    continue
                delivered += 1
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Handler %s raised for event %s",
                        _handler_name(handler),
                        type(event).__name__,
                    )
            if dead:
                # Handlers may have unsubscribed meanwhile, so drop by identity.
                handlers[:] = [ref for ref in handlers if not any(ref is gone for gone in dead)]
        if delivered:
            logger.debug("Published %s to %d handler(s)", type(event).__name__, delivered)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Strong reference for plain callables, weak for bound methods."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))
