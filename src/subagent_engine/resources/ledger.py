"""
Per-scope and global resource accounting.

The ledger measures; it never acts. Violations are recorded and surfaced in
stats, and it is up to termination conditions wired by the caller to turn them
into a stop decision.

Admission is a gated check, not a scheduler: ``allocate`` either grants
immediately or returns an ``Err`` naming the exceeded ceiling, and a denied
request leaves the ledger untouched.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Final

import structlog

from subagent_engine.constants import (
    DEFAULT_MAX_CPU_TIME_MS,
    DEFAULT_MAX_FILE_HANDLES,
    DEFAULT_MAX_MEMORY_MB,
    DEFAULT_MAX_NETWORK_CONNECTIONS,
    MAX_CONCURRENT_SCOPES,
    MAX_TOTAL_CPU_TIME_MS,
    MAX_TOTAL_MEMORY_MB,
)
from subagent_engine.domain.errors import AllocationError, NotFoundError
from subagent_engine.domain.models import ResourceLimits, ResourceUsage
from subagent_engine.domain.result import Err, Ok

DEFAULT_RESOURCE_LIMITS: Final[ResourceLimits] = ResourceLimits(
    max_memory_mb=DEFAULT_MAX_MEMORY_MB,
    max_cpu_time_ms=DEFAULT_MAX_CPU_TIME_MS,
    max_file_handles=DEFAULT_MAX_FILE_HANDLES,
    max_network_connections=DEFAULT_MAX_NETWORK_CONNECTIONS,
)


class AllocationStatus(StrEnum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"


class ViolationType(StrEnum):
    MEMORY = "MEMORY"
    CPU_TIME = "CPU_TIME"
    FILE_HANDLES = "FILE_HANDLES"
    NETWORK_CONNECTIONS = "NETWORK_CONNECTIONS"


class Severity(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


# (violation type, usage field, limit field, severity) in check order.
_LIMIT_CHECKS: Final[tuple[tuple[ViolationType, str, str, Severity], ...]] = (
    (ViolationType.MEMORY, "memory_mb", "max_memory_mb", Severity.HIGH),
    (ViolationType.CPU_TIME, "cpu_time_ms", "max_cpu_time_ms", Severity.HIGH),
    (ViolationType.FILE_HANDLES, "file_handles", "max_file_handles", Severity.MEDIUM),
    (
        ViolationType.NETWORK_CONNECTIONS,
        "network_connections",
        "max_network_connections",
        Severity.MEDIUM,
    ),
)

# Per-resource cleanup steps run on release when the resource was in use.
_CLEANUP_STEPS: Final[tuple[tuple[str, str], ...]] = (
    ("memory", "memory_mb"),
    ("file_handles", "file_handles"),
    ("network_connections", "network_connections"),
)


@dataclass(frozen=True, slots=True)
class GlobalCeilings:
    max_concurrent_scopes: int = MAX_CONCURRENT_SCOPES
    max_total_memory_mb: float = MAX_TOTAL_MEMORY_MB
    max_total_cpu_time_ms: float = MAX_TOTAL_CPU_TIME_MS

    def __post_init__(self) -> None:
        if self.max_concurrent_scopes <= 0:
            raise ValueError("max_concurrent_scopes must be > 0")
        if self.max_total_memory_mb <= 0:
            raise ValueError("max_total_memory_mb must be > 0")
        if self.max_total_cpu_time_ms <= 0:
            raise ValueError("max_total_cpu_time_ms must be > 0")

    def to_dict(self) -> dict[str, float | int]:
        return {
            "max_concurrent_scopes": self.max_concurrent_scopes,
            "max_total_memory_mb": self.max_total_memory_mb,
            "max_total_cpu_time_ms": self.max_total_cpu_time_ms,
        }


@dataclass(frozen=True, slots=True)
class IsolationFlags:
    memory: bool = True
    network: bool = True
    file_system: bool = True
    process: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "memory": self.memory,
            "network": self.network,
            "file_system": self.file_system,
            "process": self.process,
        }


@dataclass(frozen=True, slots=True)
class LimitViolation:
    type: ViolationType
    current: float
    limit: float
    severity: Severity

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type.value,
            "current": self.current,
            "limit": self.limit,
            "severity": self.severity.value,
        }


@dataclass(frozen=True, slots=True)
class AllocationGrant:
    allocation: AllocationStats
    remaining_capacity: Mapping[str, float | int]


@dataclass(frozen=True, slots=True)
class LimitCheck:
    scope_id: str
    valid: bool
    violations: tuple[LimitViolation, ...] = ()
    usage: ResourceUsage | None = None
    limits: ResourceLimits | None = None
    found: bool = True

    def to_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "valid": self.valid,
            "violations": [violation.to_dict() for violation in self.violations],
            "usage": None if self.usage is None else self.usage.to_dict(),
            "limits": None if self.limits is None else self.limits.to_dict(),
            "found": self.found,
        }


@dataclass(frozen=True, slots=True)
class ReleaseOutcome:
    scope_id: str
    success: bool = True
    warning: str | None = None
    lifetime_ms: int | None = None
    final_usage: ResourceUsage | None = None
    cleanup_steps: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "success": self.success,
            "warning": self.warning,
            "lifetime_ms": self.lifetime_ms,
            "final_usage": None if self.final_usage is None else self.final_usage.to_dict(),
            "cleanup_steps": list(self.cleanup_steps),
        }


@dataclass(frozen=True, slots=True)
class AllocationStats:
    """Read-only view of one allocation at a point in time."""

    scope_id: str
    status: AllocationStatus
    requested: ResourceLimits
    usage: ResourceUsage
    limits: ResourceLimits
    utilization_percent: Mapping[str, float]
    violations: tuple[LimitViolation, ...]
    lifetime_ms: int
    isolation: IsolationFlags

    def to_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "status": self.status.value,
            "requested": self.requested.to_dict(),
            "usage": self.usage.to_dict(),
            "limits": self.limits.to_dict(),
            "utilization_percent": dict(self.utilization_percent),
            "violations": [violation.to_dict() for violation in self.violations],
            "lifetime_ms": self.lifetime_ms,
            "isolation": self.isolation.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class GlobalStats:
    active_scopes: int
    total_allocations: int
    total_usage: ResourceUsage
    ceilings: GlobalCeilings
    utilization_percent: Mapping[str, float]
    remaining_capacity: Mapping[str, float | int]

    def to_dict(self) -> dict[str, object]:
        return {
            "active_scopes": self.active_scopes,
            "total_allocations": self.total_allocations,
            "total_usage": self.total_usage.to_dict(),
            "ceilings": self.ceilings.to_dict(),
            "utilization_percent": dict(self.utilization_percent),
            "remaining_capacity": dict(self.remaining_capacity),
        }


@dataclass(frozen=True, slots=True)
class CleanupResult:
    scope_id: str
    reason: str
    outcome: ReleaseOutcome


@dataclass(slots=True)
class _Allocation:
    scope_id: str
    requested: ResourceLimits
    limits: ResourceLimits
    allocated_at: float
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    status: AllocationStatus = AllocationStatus.ACTIVE
    isolation: IsolationFlags = field(default_factory=IsolationFlags)
    violations: tuple[LimitViolation, ...] = ()
    released_at: float | None = None

    def stats(self, now: float) -> AllocationStats:
        return AllocationStats(
            scope_id=self.scope_id,
            status=self.status,
            requested=self.requested,
            usage=self.usage,
            limits=self.limits,
            utilization_percent=MappingProxyType(
                {
                    violation_type.value: _percent(
                        getattr(self.usage, usage_field), getattr(self.limits, limit_field)
                    )
                    for violation_type, usage_field, limit_field, _ in _LIMIT_CHECKS
                }
            ),
            violations=self.violations,
            lifetime_ms=_millis(now - self.allocated_at),
            isolation=self.isolation,
        )


class ResourceLedger:
    """Single writer of global resource totals. Safe to share across scopes."""

    def __init__(
        self,
        *,
        ceilings: GlobalCeilings | None = None,
        default_limits: ResourceLimits | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._ceilings = ceilings if ceilings is not None else GlobalCeilings()
        self._default_limits = (default_limits or ResourceLimits()).with_defaults(
            DEFAULT_RESOURCE_LIMITS
        )
        self._clock = clock
        self._allocations: dict[str, _Allocation] = {}
        self._total_granted = 0
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def ceilings(self) -> GlobalCeilings:
        return self._ceilings

    @property
    def default_limits(self) -> ResourceLimits:
        return self._default_limits

    # ------------------------------------------------------------------
    # Admission and release
    # ------------------------------------------------------------------

    def allocate(
        self,
        scope_id: str,
        requirements: ResourceLimits | Mapping[str, object] | None = None,
    ) -> Ok[AllocationGrant] | Err[AllocationError]:
        requested = (
            requirements
            if isinstance(requirements, ResourceLimits)
            else ResourceLimits.from_mapping(requirements)
        )
        limits = requested.with_defaults(self._default_limits)

        with self._lock:
            denial = self._admission_denial(scope_id, limits)
            if denial is not None:
                self._logger.warning(
                    "resource_allocation_denied",
                    scope_id=scope_id,
                    ceiling=denial.ceiling,
                    reason=denial.detail,
                )
                return Err(denial)

            allocation = _Allocation(
                scope_id=scope_id,
                requested=requested,
                limits=limits,
                allocated_at=self._clock(),
            )
            self._allocations[scope_id] = allocation
            self._total_granted += 1
            grant = AllocationGrant(
                allocation=allocation.stats(allocation.allocated_at),
                remaining_capacity=MappingProxyType(self._remaining_capacity()),
            )

        self._logger.info(
            "resource_allocated",
            scope_id=scope_id,
            limits=limits.to_dict(),
            remaining_capacity=dict(grant.remaining_capacity),
        )
        return Ok(grant)

    def release(self, scope_id: str) -> ReleaseOutcome:
        with self._lock:
            allocation = self._allocations.pop(scope_id, None)
            if allocation is None:
                warning = f"no live allocation for scope {scope_id}"
            else:
                allocation.status = AllocationStatus.RELEASED
                allocation.released_at = self._clock()
        if allocation is None:
            self._logger.warning("resource_release_unknown_scope", scope_id=scope_id)
            return ReleaseOutcome(scope_id=scope_id, success=True, warning=warning)

        steps = tuple(
            step for step, usage_field in _CLEANUP_STEPS if getattr(allocation.usage, usage_field) > 0
        )
        assert allocation.released_at is not None
        lifetime_ms = _millis(allocation.released_at - allocation.allocated_at)
        self._logger.info(
            "resource_released",
            scope_id=scope_id,
            lifetime_ms=lifetime_ms,
            final_usage=allocation.usage.to_dict(),
            cleanup_steps=list(steps),
        )
        return ReleaseOutcome(
            scope_id=scope_id,
            lifetime_ms=lifetime_ms,
            final_usage=allocation.usage,
            cleanup_steps=steps,
        )

    def force_cleanup(self) -> tuple[CleanupResult, ...]:
        """Release every non-active or violating allocation."""
        with self._lock:
            targets = [
                (scope_id, "inactive" if allocation.status is not AllocationStatus.ACTIVE else "violations")
                for scope_id, allocation in self._allocations.items()
                if allocation.status is not AllocationStatus.ACTIVE or allocation.violations
            ]
        results = tuple(
            CleanupResult(scope_id=scope_id, reason=reason, outcome=self.release(scope_id))
            for scope_id, reason in targets
        )
        if results:
            self._logger.warning(
                "resource_force_cleanup", cleaned=[result.scope_id for result in results]
            )
        return results

    def reset(self) -> None:
        with self._lock:
            self._allocations.clear()
            self._total_granted = 0

    # ------------------------------------------------------------------
    # Usage and limits
    # ------------------------------------------------------------------

    def update_usage(
        self,
        scope_id: str,
        usage: ResourceUsage | Mapping[str, float | int],
    ) -> tuple[LimitViolation, ...] | None:
        """Merge a usage snapshot and recompute violations.

        ``None`` for unknown scopes and for snapshots with unknown or invalid
        fields; a rejected snapshot leaves the recorded usage untouched.
        """
        with self._lock:
            allocation = self._allocations.get(scope_id)
            if allocation is not None:
                try:
                    merged = allocation.usage.merged(usage)
                except (TypeError, ValueError) as exc:
                    rejected = str(exc)
                else:
                    rejected = None
                    allocation.usage = merged
                    allocation.violations = _violations(allocation.usage, allocation.limits)
                    violations = allocation.violations
        if allocation is None:
            self._logger.warning("resource_usage_unknown_scope", scope_id=scope_id)
            return None
        if rejected is not None:
            self._logger.warning("resource_usage_rejected", scope_id=scope_id, error=rejected)
            return None
        return violations

    def check_limits(self, scope_id: str) -> LimitCheck:
        with self._lock:
            allocation = self._allocations.get(scope_id)
            if allocation is None:
                return LimitCheck(scope_id=scope_id, valid=False, found=False)
            violations = _violations(allocation.usage, allocation.limits)
            return LimitCheck(
                scope_id=scope_id,
                valid=not violations,
                violations=violations,
                usage=allocation.usage,
                limits=allocation.limits,
            )

    def create_isolation(
        self, scope_id: str, isolation: IsolationFlags | Mapping[str, bool] | None = None
    ) -> IsolationFlags:
        flags = (
            isolation
            if isinstance(isolation, IsolationFlags)
            else replace(IsolationFlags(), **dict(isolation or {}))
        )
        with self._lock:
            allocation = self._allocations.get(scope_id)
            if allocation is None:
                raise NotFoundError(f"no allocation for scope {scope_id}", scope_id=scope_id)
            allocation.isolation = flags
        self._logger.debug("resource_isolation_set", scope_id=scope_id, isolation=flags.to_dict())
        return flags

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------

    def get_stats(self, scope_id: str) -> AllocationStats | None:
        with self._lock:
            allocation = self._allocations.get(scope_id)
            return None if allocation is None else allocation.stats(self._clock())

    def get_global_stats(self) -> GlobalStats:
        with self._lock:
            active = self._active()
            total_usage = ResourceUsage(
                memory_mb=sum(allocation.usage.memory_mb for allocation in active),
                cpu_time_ms=sum(allocation.usage.cpu_time_ms for allocation in active),
                file_handles=sum(allocation.usage.file_handles for allocation in active),
                network_connections=sum(
                    allocation.usage.network_connections for allocation in active
                ),
            )
            return GlobalStats(
                active_scopes=len(active),
                total_allocations=self._total_granted,
                total_usage=total_usage,
                ceilings=self._ceilings,
                utilization_percent=MappingProxyType(
                    {
                        "scopes": _percent(len(active), self._ceilings.max_concurrent_scopes),
                        "memory": _percent(total_usage.memory_mb, self._ceilings.max_total_memory_mb),
                        "cpu_time": _percent(
                            total_usage.cpu_time_ms, self._ceilings.max_total_cpu_time_ms
                        ),
                    }
                ),
                remaining_capacity=MappingProxyType(self._remaining_capacity()),
            )

    @property
    def active_scope_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(allocation.scope_id for allocation in self._active())

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _active(self) -> list[_Allocation]:
        return [
            allocation
            for allocation in self._allocations.values()
            if allocation.status is AllocationStatus.ACTIVE
        ]

    def _admission_denial(self, scope_id: str, limits: ResourceLimits) -> AllocationError | None:
        if scope_id in self._allocations:
            return AllocationError(
                f"Scope already has a live allocation: {scope_id}",
                ceiling="duplicate",
                scope_id=scope_id,
            )

        active = self._active()
        if len(active) >= self._ceilings.max_concurrent_scopes:
            return AllocationError(
                f"Maximum concurrent scopes limit reached: {self._ceilings.max_concurrent_scopes}",
                ceiling="max_concurrent_scopes",
                scope_id=scope_id,
            )

        projected_memory = sum(a.usage.memory_mb for a in active) + float(limits.max_memory_mb or 0)
        if projected_memory > self._ceilings.max_total_memory_mb:
            return AllocationError(
                "Total memory limit would be exceeded: "
                f"{projected_memory:g}MB > {self._ceilings.max_total_memory_mb:g}MB",
                ceiling="max_total_memory_mb",
                scope_id=scope_id,
            )

        projected_cpu = sum(a.usage.cpu_time_ms for a in active) + float(limits.max_cpu_time_ms or 0)
        if projected_cpu > self._ceilings.max_total_cpu_time_ms:
            return AllocationError(
                "Total CPU time limit would be exceeded: "
                f"{projected_cpu:g}ms > {self._ceilings.max_total_cpu_time_ms:g}ms",
                ceiling="max_total_cpu_time_ms",
                scope_id=scope_id,
            )
        return None

    def _remaining_capacity(self) -> dict[str, float | int]:
        active = self._active()
        return {
            "scopes": max(0, self._ceilings.max_concurrent_scopes - len(active)),
            "memory_mb": max(
                0.0, self._ceilings.max_total_memory_mb - sum(a.usage.memory_mb for a in active)
            ),
            "cpu_time_ms": max(
                0.0,
                self._ceilings.max_total_cpu_time_ms - sum(a.usage.cpu_time_ms for a in active),
            ),
        }


def _violations(usage: ResourceUsage, limits: ResourceLimits) -> tuple[LimitViolation, ...]:
    found: list[LimitViolation] = []
    for violation_type, usage_field, limit_field, severity in _LIMIT_CHECKS:
        current = getattr(usage, usage_field)
        limit = getattr(limits, limit_field)
        if limit is not None and current > limit:
            found.append(
                LimitViolation(type=violation_type, current=current, limit=limit, severity=severity)
            )
    return tuple(found)


def _percent(current: float, limit: float | None) -> float:
    if not limit:
        return 0.0
    return round(current / limit * 100, 1)


def _millis(seconds: float) -> int:
    return max(0, int(round(seconds * 1000)))


__all__ = [
    "DEFAULT_RESOURCE_LIMITS",
    "AllocationGrant",
    "AllocationStats",
    "AllocationStatus",
    "CleanupResult",
    "GlobalCeilings",
    "GlobalStats",
    "IsolationFlags",
    "LimitCheck",
    "LimitViolation",
    "ReleaseOutcome",
    "ResourceLedger",
    "Severity",
    "ViolationType",
]
