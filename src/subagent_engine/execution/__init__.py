"""The tool-call loop and its collaborator contracts."""

from subagent_engine.execution.conversation import Conversation
from subagent_engine.execution.loop import LoopOutcome, ToolCallLoop
from subagent_engine.execution.protocols import (
    ConversationSink,
    Message,
    MessageRole,
    ModelClient,
    ModelResponse,
    ToolCall,
    ToolRegistry,
    ToolResult,
    ToolSchema,
)
from subagent_engine.execution.tools import InMemoryToolRegistry

__all__ = [
    "Conversation",
    "ConversationSink",
    "InMemoryToolRegistry",
    "LoopOutcome",
    "Message",
    "MessageRole",
    "ModelClient",
    "ModelResponse",
    "ToolCall",
    "ToolCallLoop",
    "ToolRegistry",
    "ToolResult",
    "ToolSchema",
]
