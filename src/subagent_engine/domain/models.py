"""
subagent-engine: domain records

File: src/subagent_engine/domain/models.py

Purpose
- Immutable inputs (ScopeConfig and its constraints) and outputs (SubAgentResult).
- The mutable per-scope records (Scope, ContextState) owned by a single executor.

Functional requirements
- Invalid configs fail at construction with ``ConfigurationError``.
- Output records are frozen and expose ``to_dict()`` for callers and logs.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

from subagent_engine.constants import WILDCARD_TOOL_PERMISSION
from subagent_engine.domain.errors import ConfigurationError

if TYPE_CHECKING:
    from subagent_engine.termination.conditions import TerminationCondition


class ScopeStatus(StrEnum):
    INITIALIZED = "INITIALIZED"
    EXECUTING = "EXECUTING"
    SUCCESS = "SUCCESS"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"
    INTERRUPTED = "INTERRUPTED"


TERMINAL_STATUSES: Final[frozenset[ScopeStatus]] = frozenset(
    {ScopeStatus.SUCCESS, ScopeStatus.TIMEOUT, ScopeStatus.ERROR, ScopeStatus.INTERRUPTED}
)


class TerminationReason(StrEnum):
    GOAL = "GOAL"
    OUTPUT = "OUTPUT"
    VARIABLE = "VARIABLE"
    CUSTOM = "CUSTOM"
    MAX_TURNS = "MAX_TURNS"
    TIMEOUT = "TIMEOUT"
    FORCED = "FORCED"
    INTERRUPTED = "INTERRUPTED"
    ERROR = "ERROR"
    EXHAUSTED_RETRIES = "EXHAUSTED_RETRIES"


_REASON_STATUS: Final[Mapping[TerminationReason, ScopeStatus]] = MappingProxyType(
    {
        TerminationReason.TIMEOUT: ScopeStatus.TIMEOUT,
        TerminationReason.ERROR: ScopeStatus.ERROR,
        TerminationReason.EXHAUSTED_RETRIES: ScopeStatus.ERROR,
        TerminationReason.FORCED: ScopeStatus.INTERRUPTED,
        TerminationReason.INTERRUPTED: ScopeStatus.INTERRUPTED,
    }
)


def status_for_reason(reason: TerminationReason) -> ScopeStatus:
    """Map a termination reason to the terminal status it produces."""
    return _REASON_STATUS.get(reason, ScopeStatus.SUCCESS)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Configuration inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Per-scope resource ceilings. ``None`` means "use the engine default"."""

    max_memory_mb: float | None = None
    max_cpu_time_ms: int | None = None
    max_file_handles: int | None = None
    max_network_connections: int | None = None

    def __post_init__(self) -> None:
        problems: list[str] = []
        for name in (
            "max_memory_mb",
            "max_cpu_time_ms",
            "max_file_handles",
            "max_network_connections",
        ):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                problems.append(f"resource_limits.{name} must be numeric")
            elif not math.isfinite(float(value)) or value <= 0:
                problems.append(f"resource_limits.{name} must be > 0")
        if problems:
            raise ConfigurationError("invalid resource limits", problems=problems)

    def with_defaults(self, defaults: ResourceLimits) -> ResourceLimits:
        """Fill unspecified limits from ``defaults``."""
        return ResourceLimits(
            max_memory_mb=_first_set(self.max_memory_mb, defaults.max_memory_mb),
            max_cpu_time_ms=_first_set(self.max_cpu_time_ms, defaults.max_cpu_time_ms),
            max_file_handles=_first_set(self.max_file_handles, defaults.max_file_handles),
            max_network_connections=_first_set(
                self.max_network_connections, defaults.max_network_connections
            ),
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object] | None) -> ResourceLimits:
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise ConfigurationError("resource_limits must be a mapping")
        values = _resolve_aliases(raw, _RESOURCE_LIMIT_ALIASES, section="resource_limits")
        return cls(**values)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, float | int | None]:
        return {
            "max_memory_mb": self.max_memory_mb,
            "max_cpu_time_ms": self.max_cpu_time_ms,
            "max_file_handles": self.max_file_handles,
            "max_network_connections": self.max_network_connections,
        }


@dataclass(frozen=True, slots=True)
class ExecutionConstraints:
    timeout_ms: int | None = None
    max_turns: int | None = None
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    termination_conditions: tuple[TerminationCondition, ...] = ()

    def __post_init__(self) -> None:
        problems: list[str] = []
        if self.timeout_ms is not None and (
            isinstance(self.timeout_ms, bool)
            or not isinstance(self.timeout_ms, int)
            or self.timeout_ms <= 0
        ):
            problems.append("timeout_ms must be a positive integer")
        if self.max_turns is not None and (
            isinstance(self.max_turns, bool)
            or not isinstance(self.max_turns, int)
            or self.max_turns <= 0
        ):
            problems.append("max_turns must be a positive integer")
        if not isinstance(self.resource_limits, ResourceLimits):
            problems.append("resource_limits must be a ResourceLimits")
        if isinstance(self.termination_conditions, (str, bytes)) or not isinstance(
            self.termination_conditions, Sequence
        ):
            problems.append("termination_conditions must be a sequence")
        if problems:
            raise ConfigurationError("invalid execution constraints", problems=problems)
        object.__setattr__(self, "termination_conditions", tuple(self.termination_conditions))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ExecutionConstraints:
        if not isinstance(raw, Mapping):
            raise ConfigurationError("constraints must be a mapping")
        values = _resolve_aliases(raw, _CONSTRAINT_ALIASES, section="constraints")
        limits = values.pop("resource_limits", None)
        if not isinstance(limits, ResourceLimits):
            limits = ResourceLimits.from_mapping(limits)  # type: ignore[arg-type]
        conditions = values.pop("termination_conditions", ())
        return cls(
            resource_limits=limits,
            termination_conditions=conditions,  # type: ignore[arg-type]
            **values,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class ScopeConfig:
    """Immutable description of one delegated subtask."""

    prompt: str
    constraints: ExecutionConstraints
    tool_permissions: tuple[str, ...] = ()
    model_settings: Mapping[str, object] = field(default_factory=dict)
    output_definitions: Mapping[str, str] = field(default_factory=dict)
    task_type: str | None = None

    def __post_init__(self) -> None:
        problems: list[str] = []
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            problems.append("prompt must be a non-empty string")
        if isinstance(self.tool_permissions, (str, bytes)) or not isinstance(
            self.tool_permissions, Sequence
        ):
            problems.append("tool_permissions must be a list of tool names")
        elif not all(isinstance(item, str) and item for item in self.tool_permissions):
            problems.append("tool_permissions entries must be non-empty strings")
        if not isinstance(self.constraints, ExecutionConstraints):
            problems.append("constraints must be present")
        if not isinstance(self.model_settings, Mapping):
            problems.append("model_settings must be a mapping")
        if not isinstance(self.output_definitions, Mapping):
            problems.append("output_definitions must be a mapping")
        if problems:
            raise ConfigurationError("invalid scope config", problems=problems)
        object.__setattr__(self, "tool_permissions", tuple(self.tool_permissions))
        object.__setattr__(self, "model_settings", MappingProxyType(dict(self.model_settings)))
        object.__setattr__(
            self, "output_definitions", MappingProxyType(dict(self.output_definitions))
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ScopeConfig:
        """Build a config from a plain mapping (snake_case or legacy camelCase keys)."""
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"scope config must be a mapping, got {type(raw).__name__}")
        values = _resolve_aliases(raw, _SCOPE_CONFIG_ALIASES, section="config")
        constraints = values.pop("constraints", None)
        if constraints is None:
            raise ConfigurationError("invalid scope config", problems=["constraints must be present"])
        if not isinstance(constraints, ExecutionConstraints):
            constraints = ExecutionConstraints.from_mapping(constraints)  # type: ignore[arg-type]
        permissions = values.pop("tool_permissions", ())
        if isinstance(permissions, (str, bytes)) or not isinstance(permissions, Sequence):
            raise ConfigurationError(
                "invalid scope config", problems=["tool_permissions must be a list of tool names"]
            )
        return cls(
            constraints=constraints,
            tool_permissions=tuple(permissions),  # type: ignore[arg-type]
            **values,  # type: ignore[arg-type]
        )

    def allows_tool(self, name: str) -> bool:
        return WILDCARD_TOOL_PERMISSION in self.tool_permissions or name in self.tool_permissions


def validate_scope_config(config: object) -> ScopeConfig:
    """Return a validated ``ScopeConfig`` or raise ``ConfigurationError``."""
    if isinstance(config, ScopeConfig):
        return config
    if isinstance(config, Mapping):
        try:
            return ScopeConfig.from_mapping(config)
        except TypeError as exc:
            raise ConfigurationError(f"invalid scope config: {exc}") from exc
    raise ConfigurationError(
        f"scope config must be a ScopeConfig or mapping, got {type(config).__name__}"
    )


# ---------------------------------------------------------------------------
# Context and resource records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ContextVariable:
    value: Any
    metadata: Mapping[str, object] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    event: str
    recorded_at: datetime
    details: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "event": self.event,
            "recorded_at": self.recorded_at.isoformat(),
            "details": dict(self.details),
        }


@dataclass(slots=True)
class ContextState:
    """Private variable namespace of one scope. Mutated only through ``ContextStore``."""

    scope_id: str
    variables: dict[str, ContextVariable] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class ContextSnapshot:
    """Detached, read-only copy of a context at a point in time."""

    scope_id: str
    variables: Mapping[str, object]
    history: tuple[HistoryEntry, ...]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "variables": dict(self.variables),
            "history": [entry.to_dict() for entry in self.history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ResourceUsage:
    memory_mb: float = 0.0
    cpu_time_ms: float = 0.0
    file_handles: int = 0
    network_connections: int = 0

    def __post_init__(self) -> None:
        for name in ("memory_mb", "cpu_time_ms", "file_handles", "network_connections"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be numeric")
            if value < 0:
                raise ValueError(f"{name} must be >= 0")

    def merged(self, update: ResourceUsage | Mapping[str, float | int]) -> ResourceUsage:
        """Overlay the fields present in ``update`` onto this snapshot."""
        if isinstance(update, ResourceUsage):
            return update
        values = self.to_dict()
        for key, value in update.items():
            target = _RESOURCE_USAGE_ALIASES.get(key)
            if target is None:
                raise ValueError(f"unknown usage field: {key}")
            values[target] = value
        return ResourceUsage(**values)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, float | int]:
        return {
            "memory_mb": self.memory_mb,
            "cpu_time_ms": self.cpu_time_ms,
            "file_handles": self.file_handles,
            "network_connections": self.network_connections,
        }


# ---------------------------------------------------------------------------
# Live scope
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EmittedVariable:
    name: str
    value: Any
    turn: int
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class Scope:
    """One bounded execution. Single writer: the executor driving it."""

    id: str
    config: ScopeConfig
    context: ContextState
    timeout_ms: int
    max_turns: int
    status: ScopeStatus = ScopeStatus.INITIALIZED
    started_at: float | None = None
    finished_at: float | None = None
    turns: int = 0
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    violations: tuple[Any, ...] = ()
    emitted_variables: dict[str, EmittedVariable] = field(default_factory=dict)
    last_response: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def start(self, now: float) -> None:
        if self.status is not ScopeStatus.INITIALIZED:
            raise RuntimeError(f"scope {self.id} already started (status={self.status})")
        self.started_at = now
        self.status = ScopeStatus.EXECUTING

    def finish(self, status: ScopeStatus, now: float) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        if self.is_terminal:
            return
        self.status = status
        self.finished_at = now

    def elapsed_ms(self, now: float) -> int:
        if self.started_at is None:
            return 0
        end = self.finished_at if self.finished_at is not None else now
        return max(0, int(round((end - self.started_at) * 1000)))

    def emitted_values(self) -> dict[str, Any]:
        return {name: record.value for name, record in self.emitted_variables.items()}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TerminationInfo:
    reason: TerminationReason
    status: ScopeStatus
    execution_duration_ms: int
    turns_executed: int
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "reason": self.reason.value,
            "status": self.status.value,
            "execution_duration_ms": self.execution_duration_ms,
            "turns_executed": self.turns_executed,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True, slots=True)
class ExecutionMetadata:
    resource_stats: Mapping[str, object] | None = None
    context_stats: Mapping[str, object] | None = None
    termination_stats: Mapping[str, object] | None = None
    diagnostics: Mapping[str, object] = field(default_factory=dict)
    error: ErrorInfo | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "resource_stats": None if self.resource_stats is None else dict(self.resource_stats),
            "context_stats": None if self.context_stats is None else dict(self.context_stats),
            "termination_stats": (
                None if self.termination_stats is None else dict(self.termination_stats)
            ),
            "diagnostics": dict(self.diagnostics),
            "error": None if self.error is None else self.error.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class SubAgentResult:
    scope_id: str | None
    emitted_variables: Mapping[str, object]
    termination: TerminationInfo
    metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)
    final_context: ContextSnapshot | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "emitted_variables", MappingProxyType(dict(self.emitted_variables))
        )

    @property
    def status(self) -> ScopeStatus:
        return self.termination.status

    @property
    def success(self) -> bool:
        return self.termination.status is ScopeStatus.SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "emitted_variables": dict(self.emitted_variables),
            "termination": self.termination.to_dict(),
            "metadata": self.metadata.to_dict(),
            "final_context": None if self.final_context is None else self.final_context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_RESOURCE_LIMIT_ALIASES: Final[Mapping[str, str]] = MappingProxyType(
    {
        "max_memory_mb": "max_memory_mb",
        "maxMemoryMB": "max_memory_mb",
        "max_cpu_time_ms": "max_cpu_time_ms",
        "maxCpuTimeMs": "max_cpu_time_ms",
        "max_file_handles": "max_file_handles",
        "maxFileHandles": "max_file_handles",
        "max_network_connections": "max_network_connections",
        "maxNetworkConnections": "max_network_connections",
    }
)

_RESOURCE_USAGE_ALIASES: Final[Mapping[str, str]] = MappingProxyType(
    {
        "memory_mb": "memory_mb",
        "memoryMB": "memory_mb",
        "memoryMb": "memory_mb",
        "cpu_time_ms": "cpu_time_ms",
        "cpuTimeMs": "cpu_time_ms",
        "cpuTimeMS": "cpu_time_ms",
        "file_handles": "file_handles",
        "fileHandles": "file_handles",
        "network_connections": "network_connections",
        "networkConnections": "network_connections",
    }
)

_CONSTRAINT_ALIASES: Final[Mapping[str, str]] = MappingProxyType(
    {
        "timeout_ms": "timeout_ms",
        "timeoutMs": "timeout_ms",
        "max_turns": "max_turns",
        "maxTurns": "max_turns",
        "resource_limits": "resource_limits",
        "resourceLimits": "resource_limits",
        "termination_conditions": "termination_conditions",
        "terminationConditions": "termination_conditions",
    }
)

_SCOPE_CONFIG_ALIASES: Final[Mapping[str, str]] = MappingProxyType(
    {
        "prompt": "prompt",
        "constraints": "constraints",
        "tool_permissions": "tool_permissions",
        "toolPermissions": "tool_permissions",
        "model_settings": "model_settings",
        "modelSettings": "model_settings",
        "output_definitions": "output_definitions",
        "outputDefinitions": "output_definitions",
        "task_type": "task_type",
        "taskType": "task_type",
    }
)


def _resolve_aliases(
    raw: Mapping[str, object], aliases: Mapping[str, str], *, section: str
) -> dict[str, object]:
    resolved: dict[str, object] = {}
    unknown: list[str] = []
    for key, value in raw.items():
        target = aliases.get(key)
        if target is None:
            unknown.append(str(key))
            continue
        resolved[target] = value
    if unknown:
        raise ConfigurationError(
            f"invalid {section}",
            problems=[f"unknown key {section}.{key}" for key in sorted(unknown)],
        )
    return resolved


def _first_set(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value


__all__ = [
    "TERMINAL_STATUSES",
    "ContextSnapshot",
    "ContextState",
    "ContextVariable",
    "EmittedVariable",
    "ErrorInfo",
    "ExecutionConstraints",
    "ExecutionMetadata",
    "HistoryEntry",
    "ResourceLimits",
    "ResourceUsage",
    "Scope",
    "ScopeConfig",
    "ScopeStatus",
    "SubAgentResult",
    "TerminationInfo",
    "TerminationReason",
    "status_for_reason",
    "utc_now",
    "validate_scope_config",
]
