"""Explicit termination condition variants and their factories.

Implicit MAX_TURNS and TIMEOUT conditions are derived from a scope's
constraints by the evaluator and never appear here.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, TypeAlias

from subagent_engine.domain.models import Scope, TerminationReason

if TYPE_CHECKING:
    from subagent_engine.resources.ledger import ViolationType

ScopePredicate: TypeAlias = Callable[[Scope], bool | Awaitable[bool]]
ValuePredicate: TypeAlias = Callable[[Any], bool | Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class GoalCondition:
    description: str
    evaluator: ScopePredicate

    kind: ClassVar[TerminationReason] = TerminationReason.GOAL

    async def is_met(self, scope: Scope) -> bool:
        return await _resolve(self.evaluator(scope))

    @property
    def reason(self) -> str:
        return f"Goal achieved: {self.description}"


@dataclass(frozen=True, slots=True)
class OutputCondition:
    required_outputs: tuple[str, ...]
    description: str = ""

    kind: ClassVar[TerminationReason] = TerminationReason.OUTPUT

    async def is_met(self, scope: Scope) -> bool:
        return all(name in scope.emitted_variables for name in self.required_outputs)

    @property
    def reason(self) -> str:
        return f"Required outputs available: {', '.join(self.required_outputs)}"


@dataclass(frozen=True, slots=True)
class VariableCondition:
    name: str
    predicate: ValuePredicate
    description: str = ""

    kind: ClassVar[TerminationReason] = TerminationReason.VARIABLE

    async def is_met(self, scope: Scope) -> bool:
        record = scope.context.variables.get(self.name)
        if record is None:
            return False
        return await _resolve(self.predicate(record.value))

    @property
    def reason(self) -> str:
        return f"Variable condition met: {self.name}"


@dataclass(frozen=True, slots=True)
class CustomCondition:
    evaluator: ScopePredicate
    reason: str

    kind: ClassVar[TerminationReason] = TerminationReason.CUSTOM

    async def is_met(self, scope: Scope) -> bool:
        return await _resolve(self.evaluator(scope))


TerminationCondition: TypeAlias = GoalCondition | OutputCondition | VariableCondition | CustomCondition


def goal_condition(description: str, evaluator: ScopePredicate) -> GoalCondition:
    return GoalCondition(description=description, evaluator=evaluator)


def output_condition(*required_outputs: str, description: str = "") -> OutputCondition:
    if not required_outputs:
        raise ValueError("output_condition requires at least one output name")
    return OutputCondition(required_outputs=tuple(required_outputs), description=description)


def variable_condition(
    name: str,
    predicate: ValuePredicate | None = None,
    *,
    description: str = "",
) -> VariableCondition:
    """Met when ``name`` is set and ``predicate(value)`` holds (truthiness by default)."""
    return VariableCondition(name=name, predicate=predicate or bool, description=description)


def custom_condition(evaluator: ScopePredicate, reason: str) -> CustomCondition:
    return CustomCondition(evaluator=evaluator, reason=reason)


def resource_limit_condition(
    types: Iterable[ViolationType] | None = None,
    *,
    reason: str = "Resource limits exceeded",
) -> CustomCondition:
    """Stop once the scope's last recorded usage violates one of ``types`` (any by default)."""
    wanted = None if types is None else frozenset(types)

    def _violated(scope: Scope) -> bool:
        return any(wanted is None or violation.type in wanted for violation in scope.violations)

    return CustomCondition(evaluator=_violated, reason=reason)


async def _resolve(value: bool | Awaitable[bool]) -> bool:
    if inspect.isawaitable(value):
        value = await value
    return bool(value)


__all__ = [
    "CustomCondition",
    "GoalCondition",
    "OutputCondition",
    "TerminationCondition",
    "VariableCondition",
    "custom_condition",
    "goal_condition",
    "output_condition",
    "resource_limit_condition",
    "variable_condition",
]
