"""Scope lifecycle: orchestrator, usage monitor and legacy compatibility adapter."""

from subagent_engine.orchestration.compat import (
    GENERAL_PURPOSE,
    CompatibilityAdapter,
    TaskTypeDefinition,
)
from subagent_engine.orchestration.monitor import UsageMonitor
from subagent_engine.orchestration.orchestrator import ExecutionStatistics, ScopeOrchestrator

__all__ = [
    "GENERAL_PURPOSE",
    "CompatibilityAdapter",
    "ExecutionStatistics",
    "ScopeOrchestrator",
    "TaskTypeDefinition",
    "UsageMonitor",
]
