"""
subagent-engine: collaborator contracts of the tool-call loop

File: src/subagent_engine/execution/protocols.py

Purpose
- Narrow interfaces to the model client, tool registry and conversation sink.
- Normalized message, tool-call and response records exchanged across them.

Functional requirements
- Model clients carry no retry policy; the loop owns all retries.
- Raw mapping responses are normalized through ``ModelResponse.from_raw``;
  malformed tool arguments become a parse error instead of an exception.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from subagent_engine.domain.errors import ParseError

if TYPE_CHECKING:
    from subagent_engine.utils.concurrency import CancellationToken


class MessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def _validate_non_empty_str(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


@dataclass(frozen=True, slots=True)
class ToolCall:
    """Normalized tool call requested by the model."""

    call_id: str
    name: str
    arguments: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "call_id", _validate_non_empty_str(self.call_id, "ToolCall.call_id"))
        object.__setattr__(self, "name", _validate_non_empty_str(self.name, "ToolCall.name"))
        object.__setattr__(self, "arguments", MappingProxyType(dict(self.arguments)))

    def to_dict(self) -> dict[str, object]:
        return {"call_id": self.call_id, "name": self.name, "arguments": dict(self.arguments)}


@dataclass(frozen=True, slots=True)
class ToolSchema:
    name: str
    description: str = ""
    parameters: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
        }


@dataclass(frozen=True, slots=True)
class ToolResult:
    content: str
    is_error: bool = False
    variables: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def error(cls, message: str) -> ToolResult:
        return cls(content=message, is_error=True)

    @classmethod
    def coerce(cls, raw: ToolResult | Mapping[str, object] | str) -> ToolResult:
        if isinstance(raw, ToolResult):
            return raw
        if isinstance(raw, str):
            return cls(content=raw)
        if isinstance(raw, Mapping):
            content = raw.get("content", "")
            return cls(
                content=content if isinstance(content, str) else json.dumps(content, default=str),
                is_error=bool(raw.get("is_error", raw.get("isError", False))),
                variables=dict(raw.get("variables") or {}),  # type: ignore[call-overload]
            )
        raise TypeError(f"unsupported tool result type: {type(raw).__name__}")


@dataclass(frozen=True, slots=True)
class Message:
    role: MessageRole
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            payload["name"] = self.name
        return payload


@dataclass(frozen=True, slots=True)
class ModelResponse:
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    parse_error: str | None = None
    variables: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def is_empty(self) -> bool:
        return not self.content.strip() and not self.tool_calls

    @classmethod
    def from_raw(cls, raw: ModelResponse | Mapping[str, object]) -> ModelResponse:
        """Normalize a client reply. Argument decoding failures become ``parse_error``."""
        if isinstance(raw, ModelResponse):
            return raw
        if not isinstance(raw, Mapping):
            return cls(parse_error=f"unsupported response type: {type(raw).__name__}")

        content = raw.get("content") or ""
        if not isinstance(content, str):
            content = json.dumps(content, default=str)
        parse_error = raw.get("parse_error", raw.get("parseError"))
        variables = raw.get("variables") or {}

        calls: list[ToolCall] = []
        raw_calls = raw.get("tool_calls", raw.get("toolCalls")) or ()
        try:
            for index, item in enumerate(raw_calls):  # type: ignore[arg-type]
                calls.append(_coerce_tool_call(item, index))
        except (ParseError, TypeError, ValueError) as exc:
            return cls(content=content, parse_error=str(exc))

        return cls(
            content=content,
            tool_calls=tuple(calls),
            parse_error=None if parse_error in (None, "", False) else str(parse_error),
            variables=variables if isinstance(variables, Mapping) else {},
        )


def parse_tool_arguments(arguments: object, *, tool_name: str) -> dict[str, object]:
    """Normalize a tool-argument payload (mapping or JSON text) to a dict."""
    if arguments is None:
        return {}
    if isinstance(arguments, Mapping):
        return dict(arguments)
    if isinstance(arguments, str):
        candidate = arguments.strip()
        if not candidate:
            return {}
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid tool arguments for {tool_name}: non-JSON string") from exc
        if not isinstance(parsed, dict):
            raise ParseError(f"invalid tool arguments for {tool_name}: expected JSON object")
        return parsed
    raise ParseError(
        f"invalid tool arguments for {tool_name}: unsupported type {type(arguments).__name__}"
    )


def _coerce_tool_call(item: object, index: int) -> ToolCall:
    if isinstance(item, ToolCall):
        return item
    if not isinstance(item, Mapping):
        raise ParseError(f"tool call #{index} must be an object")
    function = item.get("function")
    source = function if isinstance(function, Mapping) else item
    name = source.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ParseError(f"tool call #{index} is missing a name")
    call_id = item.get("id", item.get("call_id")) or f"call_{index}"
    return ToolCall(
        call_id=str(call_id),
        name=name,
        arguments=parse_tool_arguments(
            source.get("arguments", source.get("input")), tool_name=name
        ),
    )


@runtime_checkable
class ModelClient(Protocol):
    def generate_response(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[ToolSchema],
        cancellation_token: CancellationToken,
    ) -> Awaitable[ModelResponse | Mapping[str, object]]: ...


@runtime_checkable
class ToolRegistry(Protocol):
    def get_tool_schemas(self) -> Sequence[ToolSchema]: ...

    def invoke(
        self, name: str, arguments: Mapping[str, object]
    ) -> Awaitable[ToolResult | Mapping[str, object] | str]: ...


@runtime_checkable
class ConversationSink(Protocol):
    def append(self, message: Message) -> None: ...

    def messages(self) -> Sequence[Message]: ...


__all__ = [
    "ConversationSink",
    "Message",
    "MessageRole",
    "ModelClient",
    "ModelResponse",
    "ToolCall",
    "ToolRegistry",
    "ToolResult",
    "ToolSchema",
    "parse_tool_arguments",
]
