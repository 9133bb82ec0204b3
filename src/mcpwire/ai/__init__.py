"""Model client, conversation orchestration and the agent facade."""

from .agent import Agent
from .client import AIClient, ClientSettings
from .conversation import ConversationError, ConversationOrchestrator, OrchestratorConfig
from .messages import AssistantReply, Message, ToolCall
from .ordering import ToolOrderingError, validate_tool_ordering

__all__ = [
    "AIClient",
    "Agent",
    "AssistantReply",
    "ClientSettings",
    "ConversationError",
    "ConversationOrchestrator",
    "Message",
    "OrchestratorConfig",
    "ToolCall",
    "ToolOrderingError",
    "validate_tool_ordering",
]
