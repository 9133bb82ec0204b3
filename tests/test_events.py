"""Unit tests for :mod:`mcpwire.services.events`."""

from __future__ import annotations

import gc

from mcpwire.services.events import (
    Event,
    EventBus,
    ServerStatusChanged,
    ToolCallCompleted,
    ToolsRefreshed,
)


class _Listener:
    def __init__(self) -> None:
        self.received: list[Event] = []

    def on_event(self, event: Event) -> None:
        self.received.append(event)


class TestEventBus:
    """Subscription, delivery and cleanup."""

    def test_publish_reaches_matching_handlers_only(self) -> None:
        bus: EventBus[Event] = EventBus()
        statuses: list[ServerStatusChanged] = []
        refreshes: list[ToolsRefreshed] = []
        bus.subscribe(ServerStatusChanged, statuses.append)
        bus.subscribe(ToolsRefreshed, refreshes.append)

        bus.publish(ServerStatusChanged("fs", "connected", "connecting"))

        assert len(statuses) == 1
        assert statuses[0].server_name == "fs"
        assert refreshes == []

    def test_base_class_subscribers_see_every_event(self) -> None:
        bus: EventBus[Event] = EventBus()
        seen: list[Event] = []
        bus.subscribe(Event, seen.append)

        bus.publish(ToolsRefreshed("fs", 1, 0, 0))
        bus.publish(ToolCallCompleted("c1", "fs:read", "fs", False, 0.1))

        assert [type(event) for event in seen] == [ToolsRefreshed, ToolCallCompleted]

    def test_unsubscribe_removes_handler(self) -> None:
        bus: EventBus[Event] = EventBus()
        seen: list[Event] = []
        bus.subscribe(ToolsRefreshed, seen.append)

        bus.unsubscribe(ToolsRefreshed, seen.append)
        bus.publish(ToolsRefreshed("fs", 1, 0, 0))

        assert seen == []
        assert bus.handler_count(ToolsRefreshed) == 0

    def test_failing_handler_does_not_block_others(self) -> None:
        bus: EventBus[Event] = EventBus()
        seen: list[Event] = []

        def explode(event: Event) -> None:
            raise RuntimeError("boom")

        bus.subscribe(ToolsRefreshed, explode)
        bus.subscribe(ToolsRefreshed, seen.append)

        bus.publish(ToolsRefreshed("fs", 1, 0, 0))

        assert len(seen) == 1

    def test_bound_methods_are_held_weakly(self) -> None:
        bus: EventBus[Event] = EventBus()
        listener = _Listener()
        bus.subscribe(ToolsRefreshed, listener.on_event)
        bus.publish(ToolsRefreshed("fs", 1, 0, 0))
        assert len(listener.received) == 1

        del listener
        gc.collect()
        bus.publish(ToolsRefreshed("fs", 2, 0, 0))

        assert bus.handler_count(ToolsRefreshed) == 0

    def test_pruning_dead_handlers_spares_live_ones_after_unsubscribe(self) -> None:
        bus: EventBus[Event] = EventBus()
        seen: list[Event] = []
        listener = _Listener()

        def once(event: Event) -> None:
            bus.unsubscribe(ToolsRefreshed, once)

        bus.subscribe(ToolsRefreshed, once)
        bus.subscribe(ToolsRefreshed, listener.on_event)
        bus.subscribe(ToolsRefreshed, seen.append)
        del listener
        gc.collect()

        bus.publish(ToolsRefreshed("fs", 1, 0, 0))
        bus.publish(ToolsRefreshed("fs", 2, 0, 0))

        assert bus.handler_count(ToolsRefreshed) == 1
        assert [event.tool_count for event in seen] == [1, 2]

    def test_clear_drops_everything(self) -> None:
        bus: EventBus[Event] = EventBus()
        bus.subscribe(ToolsRefreshed, lambda event: None)
        bus.subscribe(ServerStatusChanged, lambda event: None)

        bus.clear()

        assert bus.handler_count() == 0
