"""Conversation helpers and the in-memory tool registry."""

from __future__ import annotations

import pytest

from subagent_engine.constants import (
    CONTINUATION_INSTRUCTION,
    EXHAUSTED_RETRIES_MESSAGE,
    PARSE_CORRECTION_INSTRUCTION,
)
from subagent_engine.domain.errors import ToolExecutionError
from subagent_engine.execution import conversation as conv
from subagent_engine.execution.protocols import ConversationSink, MessageRole, ToolCall, ToolResult
from subagent_engine.execution.tools import InMemoryToolRegistry


def test_conversation_records_messages_in_order() -> None:
    sink = conv.Conversation()
    call = ToolCall(call_id="c1", name="search", arguments={"q": "x"})

    conv.append_system(sink, "be brief")
    conv.append_user(sink, "find x")
    conv.append_assistant(sink, "", [call])
    conv.append_tool_result(sink, call, "found")
    conv.append_continuation(sink)

    assert isinstance(sink, ConversationSink)
    assert len(sink) == 5
    assert [message.role for message in sink.messages()] == [
        MessageRole.SYSTEM,
        MessageRole.USER,
        MessageRole.ASSISTANT,
        MessageRole.TOOL,
        MessageRole.SYSTEM,
    ]
    assert sink.messages()[3].tool_call_id == "c1"
    assert sink.messages()[4].content == CONTINUATION_INSTRUCTION


def test_parse_correction_and_exhaustion_messages() -> None:
    sink = conv.Conversation()

    conv.append_parse_correction(sink, "bad json")
    conv.append_exhausted_retries(sink)

    rejected, instruction, exhausted = sink.messages()
    assert rejected.role is MessageRole.ASSISTANT
    assert rejected.content == "(Response rejected: bad json)"
    assert instruction.content == PARSE_CORRECTION_INSTRUCTION
    assert exhausted.content == EXHAUSTED_RETRIES_MESSAGE


@pytest.mark.asyncio
async def test_registry_invokes_sync_and_async_handlers() -> None:
    registry = InMemoryToolRegistry()

    async def lookup(key: str) -> dict[str, object]:
        return {"content": f"value of {key}", "variables": {"key": key}}

    registry.register("echo", lambda text: text.upper(), description="Echo text")
    registry.register("lookup", lookup)

    assert [schema.name for schema in registry.get_tool_schemas()] == ["echo", "lookup"]
    assert await registry.invoke("echo", {"text": "hi"}) == ToolResult(content="HI")
    looked_up = await registry.invoke("lookup", {"key": "k"})
    assert looked_up.content == "value of k"
    assert dict(looked_up.variables) == {"key": "k"}


@pytest.mark.asyncio
async def test_registry_rejects_duplicates_and_unknown_tools() -> None:
    registry = InMemoryToolRegistry()
    registry.register("echo", lambda text: text)

    with pytest.raises(ValueError, match="already registered"):
        registry.register("echo", lambda text: text)
    with pytest.raises(ToolExecutionError, match="unknown tool: missing"):
        await registry.invoke("missing", {})

    assert registry.unregister("echo")
    assert not registry.unregister("echo")
    assert registry.get_tool_schemas() == ()
