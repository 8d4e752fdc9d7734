"""In-process tool registry backed by plain callables."""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, TypeAlias

from subagent_engine.domain.errors import ToolExecutionError
from subagent_engine.execution.protocols import ToolResult, ToolSchema

ToolHandler: TypeAlias = Callable[..., Any]


@dataclass(frozen=True, slots=True)
class RegisteredTool:
    schema: ToolSchema
    handler: ToolHandler = field(repr=False)


class InMemoryToolRegistry:
    """Handlers receive the call arguments as keyword arguments."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        parameters: Mapping[str, object] | None = None,
    ) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("tool name must be a non-empty string")
        if name in self._tools:
            raise ValueError(f"tool already registered: {name}")
        schema = ToolSchema(
            name=name,
            description=description,
            parameters=MappingProxyType(dict(parameters or {"type": "object", "properties": {}})),
        )
        self._tools[name] = RegisteredTool(schema=schema, handler=handler)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get_tool_schemas(self) -> tuple[ToolSchema, ...]:
        return tuple(tool.schema for tool in self._tools.values())

    async def invoke(self, name: str, arguments: Mapping[str, object]) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(f"unknown tool: {name}", tool_name=name)
        outcome = tool.handler(**dict(arguments))
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return ToolResult.coerce(outcome)


__all__ = ["InMemoryToolRegistry", "RegisteredTool", "ToolHandler"]
