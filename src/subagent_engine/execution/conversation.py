"""Append-only conversation log and the loop's correction messages."""

from __future__ import annotations

from collections.abc import Iterable

from subagent_engine.constants import (
    CONTINUATION_INSTRUCTION,
    EXHAUSTED_RETRIES_MESSAGE,
    PARSE_CORRECTION_INSTRUCTION,
)
from subagent_engine.execution.protocols import ConversationSink, Message, MessageRole, ToolCall


class Conversation:
    """In-memory ``ConversationSink``."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


def append_system(sink: ConversationSink, content: str) -> None:
    sink.append(Message(role=MessageRole.SYSTEM, content=content))


def append_user(sink: ConversationSink, content: str) -> None:
    sink.append(Message(role=MessageRole.USER, content=content))


def append_assistant(
    sink: ConversationSink, content: str, tool_calls: Iterable[ToolCall] = ()
) -> None:
    sink.append(Message(role=MessageRole.ASSISTANT, content=content, tool_calls=tuple(tool_calls)))


def append_tool_result(sink: ConversationSink, call: ToolCall, content: str) -> None:
    sink.append(
        Message(role=MessageRole.TOOL, content=content, tool_call_id=call.call_id, name=call.name)
    )


def append_parse_correction(sink: ConversationSink, detail: str) -> None:
    """Record the rejected reply and ask for a corrected one."""
    append_assistant(sink, f"(Response rejected: {detail})")
    append_system(sink, PARSE_CORRECTION_INSTRUCTION)


def append_continuation(sink: ConversationSink) -> None:
    append_system(sink, CONTINUATION_INSTRUCTION)


def append_exhausted_retries(sink: ConversationSink) -> None:
    append_assistant(sink, EXHAUSTED_RETRIES_MESSAGE)


__all__ = [
    "Conversation",
    "append_assistant",
    "append_continuation",
    "append_exhausted_retries",
    "append_parse_correction",
    "append_system",
    "append_tool_result",
    "append_user",
]
