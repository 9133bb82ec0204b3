"""Tool-call/tool-response ordering checks for outgoing transcripts.

Chat-completion APIs reject a transcript unless every assistant tool call is
answered by exactly one ``tool`` message, and the answers follow the
assistant message contiguously and in call order.
"""

from __future__ import annotations

from typing import Sequence

from .messages import Message

__all__ = ["ToolOrderingError", "validate_tool_ordering"]


class ToolOrderingError(ValueError):
    """Raised when a transcript breaks tool-call ordering.

    Attributes:
        kind: ``missing``, ``order``, ``interleaved`` or ``orphan``.
        message_index: Index of the assistant message (or of the stray tool
            message for ``orphan``).
        tool_call_id: The call id whose response is misplaced.
    """

    def __init__(self, kind: str, message: str, *, message_index: int, tool_call_id: str | None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message_index = message_index
        self.tool_call_id = tool_call_id


def validate_tool_ordering(messages: Sequence[Message]) -> None:
    """Raise :class:`ToolOrderingError` unless every tool call is answered in place."""

    index = 0
    total = len(messages)
    while index < total:
        message = messages[index]
        if message.role == "tool":
            raise ToolOrderingError(
                "orphan",
                f"Tool message at index {index} (tool_call_id={message.tool_call_id}) does not answer a preceding tool call",
                message_index=index,
                tool_call_id=message.tool_call_id,
            )
        if not message.has_tool_calls:
            index += 1
            continue

        call_ids = [call.id for call in message.tool_calls]
        for offset, call_id in enumerate(call_ids):
            position = index + 1 + offset
            candidate = messages[position] if position < total else None
            if candidate is not None and candidate.role == "tool" and candidate.tool_call_id == call_id:
                continue
            raise _describe_violation(messages, index, position, call_id, call_ids)
        index += 1 + len(call_ids)


def _describe_violation(
    messages: Sequence[Message],
    assistant_index: int,
    position: int,
    call_id: str,
    call_ids: Sequence[str],
) -> ToolOrderingError:
    answered_later = any(
        later.role == "tool" and later.tool_call_id == call_id for later in messages[position + 1:]
    )
    candidate = messages[position] if position < len(messages) else None
    if candidate is not None and candidate.role == "tool" and candidate.tool_call_id in call_ids:
        return ToolOrderingError(
            "order",
            f"Tool responses after message {assistant_index} are out of order: expected {call_id}, "
            f"found {candidate.tool_call_id}",
            message_index=assistant_index,
            tool_call_id=call_id,
        )
    if candidate is not None and answered_later:
        return ToolOrderingError(
            "interleaved",
            f"A {candidate.role} message at index {position} separates tool call {call_id} "
            f"from its response",
            message_index=assistant_index,
            tool_call_id=call_id,
        )
    return ToolOrderingError(
        "missing",
        f"Tool call {call_id} from message {assistant_index} has no response",
        message_index=assistant_index,
        tool_call_id=call_id,
    )
