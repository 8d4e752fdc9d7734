"""
Legacy invocation shape <-> ScopeConfig / SubAgentResult.

Older callers name a task type, pass a prompt and a context mapping, and
expect a flat result dict back. The adapter is a stateless mapping apart from
its table of registered task types.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Final

import structlog

from subagent_engine.constants import (
    DEFAULT_MAX_TURNS,
    DEFAULT_TIMEOUT_MS,
    RESULT_VARIABLE_NAME,
    WILDCARD_TOOL_PERMISSION,
)
from subagent_engine.context.templates import is_valid_variable_name
from subagent_engine.domain.errors import ConfigurationError
from subagent_engine.domain.models import (
    ExecutionConstraints,
    ResourceLimits,
    ScopeConfig,
    SubAgentResult,
)
from subagent_engine.termination.conditions import output_condition
from subagent_engine.utils.copying import deep_copy

TASK_DESCRIPTION_VARIABLE: Final[str] = "task_description"
GENERAL_PURPOSE_TYPE: Final[str] = "general-purpose"
DEFAULT_LEGACY_RESULT: Final[str] = "Task completed"


@dataclass(frozen=True, slots=True)
class TaskTypeDefinition:
    """Defaults for one named task type.

    ``prompt_template`` should reference ``{{task_description}}``; the caller's
    prompt is bound to that variable. ``required_outputs`` become an OUTPUT
    termination condition.
    """

    name: str
    prompt_template: str
    tool_permissions: tuple[str, ...] = (WILDCARD_TOOL_PERMISSION,)
    output_definitions: Mapping[str, object] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_turns: int = DEFAULT_MAX_TURNS
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    required_outputs: tuple[str, ...] = ()
    model_settings: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError("task type name must be a non-empty string")
        if not isinstance(self.prompt_template, str) or not self.prompt_template.strip():
            raise ConfigurationError(f"task type {self.name!r} needs a prompt template")
        object.__setattr__(self, "tool_permissions", tuple(self.tool_permissions))
        object.__setattr__(self, "required_outputs", tuple(self.required_outputs))
        object.__setattr__(self, "output_definitions", MappingProxyType(dict(self.output_definitions)))
        object.__setattr__(self, "model_settings", MappingProxyType(dict(self.model_settings)))


GENERAL_PURPOSE: Final[TaskTypeDefinition] = TaskTypeDefinition(
    name=GENERAL_PURPOSE_TYPE,
    prompt_template=(
        "You are a general-purpose agent for researching complex questions, searching for "
        "code, and executing multi-step tasks. {{task_description}}"
    ),
    output_definitions={
        RESULT_VARIABLE_NAME: {"type": "any", "description": "General task result"},
    },
)


class CompatibilityAdapter:
    def __init__(
        self,
        types: tuple[TaskTypeDefinition, ...] = (GENERAL_PURPOSE,),
        *,
        logger: Any | None = None,
    ) -> None:
        self._types: dict[str, TaskTypeDefinition] = {}
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        for definition in types:
            self.register_type(definition)

    def register_type(self, definition: TaskTypeDefinition) -> None:
        with self._lock:
            replaced = definition.name in self._types
            self._types[definition.name] = definition
        self._logger.info("compat_type_registered", task_type=definition.name, replaced=replaced)

    def registered_types(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._types))

    def resolve_type(self, task_type: str | None) -> TaskTypeDefinition:
        """Look up a task type; unknown names fall back to general-purpose."""
        with self._lock:
            definition = self._types.get(task_type or GENERAL_PURPOSE_TYPE)
            fallback = self._types.get(GENERAL_PURPOSE_TYPE, GENERAL_PURPOSE)
        if definition is None:
            self._logger.info("compat_unknown_task_type", task_type=task_type, fallback=fallback.name)
            return fallback
        return definition

    def to_scope_config(self, task_type: str | None, prompt: str) -> ScopeConfig:
        definition = self.resolve_type(task_type)
        if not isinstance(prompt, str) or not prompt.strip():
            raise ConfigurationError("legacy invocation needs a non-empty prompt")
        conditions = (
            (output_condition(*definition.required_outputs),) if definition.required_outputs else ()
        )
        return ScopeConfig(
            prompt=definition.prompt_template,
            constraints=ExecutionConstraints(
                timeout_ms=definition.timeout_ms,
                max_turns=definition.max_turns,
                resource_limits=definition.resource_limits,
                termination_conditions=conditions,
            ),
            tool_permissions=definition.tool_permissions,
            model_settings=dict(definition.model_settings),
            output_definitions=dict(definition.output_definitions),
            task_type=definition.name,
        )

    def initial_variables(
        self, prompt: str, context: Mapping[str, object] | None = None
    ) -> dict[str, object]:
        """Context entries with valid names, plus the prompt as ``task_description``."""
        variables: dict[str, object] = {}
        for name, value in (context or {}).items():
            if is_valid_variable_name(name):
                variables[name] = deep_copy(value)
            else:
                self._logger.warning("compat_context_key_skipped", name=name)
        variables[TASK_DESCRIPTION_VARIABLE] = prompt
        return variables

    def to_legacy_result(self, result: SubAgentResult, task_type: str | None) -> dict[str, object]:
        emitted = result.emitted_variables
        return {
            "success": result.success,
            "agent_type": self.resolve_type(task_type).name,
            "result": emitted.get(RESULT_VARIABLE_NAME, DEFAULT_LEGACY_RESULT),
            "execution_time_ms": result.termination.execution_duration_ms,
            "turns_executed": result.termination.turns_executed,
            "termination_reason": result.termination.reason.value,
            "metadata": {
                "scope_id": result.scope_id,
                "status": result.status.value,
                "detail": result.termination.detail,
                "emitted_variables": dict(emitted),
                "error": None if result.metadata.error is None else result.metadata.error.to_dict(),
            },
        }


__all__ = [
    "CompatibilityAdapter",
    "GENERAL_PURPOSE",
    "GENERAL_PURPOSE_TYPE",
    "TASK_DESCRIPTION_VARIABLE",
    "TaskTypeDefinition",
]
