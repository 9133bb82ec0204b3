"""Service layer helpers (settings, event channel)."""

from .events import EventBus, ServerStatusChanged, ToolCallCompleted, ToolsRefreshed
from .settings import Settings, SettingsStore

__all__ = [
    "EventBus",
    "ServerStatusChanged",
    "Settings",
    "SettingsStore",
    "ToolCallCompleted",
    "ToolsRefreshed",
]
