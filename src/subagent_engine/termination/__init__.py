"""Stopping rules for live scopes."""

from subagent_engine.termination.conditions import (
    CustomCondition,
    GoalCondition,
    OutputCondition,
    TerminationCondition,
    VariableCondition,
    custom_condition,
    goal_condition,
    output_condition,
    resource_limit_condition,
    variable_condition,
)
from subagent_engine.termination.evaluator import TerminationDecision, TerminationEvaluator

__all__ = [
    "CustomCondition",
    "GoalCondition",
    "OutputCondition",
    "TerminationCondition",
    "TerminationDecision",
    "TerminationEvaluator",
    "VariableCondition",
    "custom_condition",
    "goal_condition",
    "output_condition",
    "resource_limit_condition",
    "variable_condition",
]
