"""
Termination evaluation for live scopes.

Precedence, first match wins:
1. a pending forced termination
2. explicit conditions from the scope config, in declaration order
3. MAX_TURNS (turns >= max_turns)
4. TIMEOUT (elapsed wall-clock >= timeout_ms, measured from scope start)

A condition whose predicate raises is logged and treated as not met, so the
implicit turn and time bounds always remain in force.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import structlog

from subagent_engine.domain.models import (
    Scope,
    ScopeStatus,
    TerminationReason,
    status_for_reason,
)


@dataclass(frozen=True, slots=True)
class TerminationDecision:
    terminate: bool
    reason: TerminationReason | None = None
    detail: str = ""

    @classmethod
    def stop(cls, reason: TerminationReason, detail: str) -> TerminationDecision:
        return cls(terminate=True, reason=reason, detail=detail)

    @property
    def status(self) -> ScopeStatus | None:
        return None if self.reason is None else status_for_reason(self.reason)

    def to_dict(self) -> dict[str, object]:
        return {
            "terminate": self.terminate,
            "reason": None if self.reason is None else self.reason.value,
            "detail": self.detail,
        }


CONTINUE = TerminationDecision(terminate=False)


@dataclass(frozen=True, slots=True)
class MonitorStats:
    scope_id: str
    runtime_ms: int
    check_count: int
    last_check_ms_ago: int | None
    terminated: bool
    termination: TerminationDecision | None
    timeout_remaining_ms: int

    def to_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "runtime_ms": self.runtime_ms,
            "check_count": self.check_count,
            "last_check_ms_ago": self.last_check_ms_ago,
            "terminated": self.terminated,
            "termination": None if self.termination is None else self.termination.to_dict(),
            "timeout_remaining_ms": self.timeout_remaining_ms,
        }


@dataclass(frozen=True, slots=True)
class OverallTerminationStats:
    active_monitors: int
    total_checks: int
    terminations_by_reason: MappingProxyType[str, int]

    def to_dict(self) -> dict[str, object]:
        return {
            "active_monitors": self.active_monitors,
            "total_checks": self.total_checks,
            "terminations_by_reason": dict(self.terminations_by_reason),
        }


@dataclass(slots=True)
class _Monitor:
    scope: Scope
    started_at: float
    check_count: int = 0
    last_check: float | None = None
    pending: TerminationDecision | None = None
    decision: TerminationDecision | None = None


class TerminationEvaluator:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._clock = clock
        self._monitors: dict[str, _Monitor] = {}
        self._total_checks = 0
        self._terminations: Counter[str] = Counter()
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def start_monitoring(self, scope: Scope) -> None:
        started_at = scope.started_at if scope.started_at is not None else self._clock()
        with self._lock:
            self._monitors[scope.id] = _Monitor(scope=scope, started_at=started_at)

    def stop_monitoring(self, scope_id: str) -> MonitorStats | None:
        stats = self.get_monitor_stats(scope_id)
        with self._lock:
            self._monitors.pop(scope_id, None)
        return stats

    async def check(self, scope: Scope) -> TerminationDecision:
        monitor = self._monitor_for(scope)
        now = self._clock()
        with self._lock:
            monitor.check_count += 1
            monitor.last_check = now
            self._total_checks += 1
            pending = monitor.pending

        decision = pending if pending is not None else await self._evaluate(scope, now)
        if decision.terminate:
            self._record(monitor, decision)
        return decision

    def force_termination(self, scope_id: str, reason: str) -> TerminationDecision | None:
        """Mark a pending FORCED result, observed at the scope's next checkpoint."""
        decision = TerminationDecision.stop(TerminationReason.FORCED, reason)
        with self._lock:
            monitor = self._monitors.get(scope_id)
            if monitor is not None and monitor.pending is None:
                monitor.pending = decision
        if monitor is None:
            self._logger.warning("termination_force_unknown_scope", scope_id=scope_id, reason=reason)
            return None
        self._logger.info("termination_forced", scope_id=scope_id, reason=reason)
        return monitor.pending

    def pending_termination(self, scope_id: str) -> TerminationDecision | None:
        with self._lock:
            monitor = self._monitors.get(scope_id)
            return None if monitor is None else monitor.pending

    def record_termination(self, scope_id: str, decision: TerminationDecision) -> None:
        """Record a stop decided outside ``check`` (interruption, errors)."""
        with self._lock:
            monitor = self._monitors.get(scope_id)
        if monitor is not None:
            self._record(monitor, decision)

    def get_monitor_stats(self, scope_id: str) -> MonitorStats | None:
        with self._lock:
            monitor = self._monitors.get(scope_id)
            if monitor is None:
                return None
            now = self._clock()
            runtime_ms = _millis(now - monitor.started_at)
            return MonitorStats(
                scope_id=scope_id,
                runtime_ms=runtime_ms,
                check_count=monitor.check_count,
                last_check_ms_ago=(
                    None if monitor.last_check is None else _millis(now - monitor.last_check)
                ),
                terminated=monitor.decision is not None,
                termination=monitor.decision,
                timeout_remaining_ms=max(0, monitor.scope.timeout_ms - runtime_ms),
            )

    def get_overall_stats(self) -> OverallTerminationStats:
        with self._lock:
            return OverallTerminationStats(
                active_monitors=len(self._monitors),
                total_checks=self._total_checks,
                terminations_by_reason=MappingProxyType(dict(self._terminations)),
            )

    async def _evaluate(self, scope: Scope, now: float) -> TerminationDecision:
        for condition in scope.config.constraints.termination_conditions:
            try:
                met = await condition.is_met(scope)
            except Exception as exc:  # noqa: BLE001 - predicate errors count as not met
                self._logger.warning(
                    "termination_condition_failed",
                    scope_id=scope.id,
                    condition=condition.kind.value,
                    error=f"{type(exc).__name__}: {exc}",
                )
                continue
            if met:
                return TerminationDecision.stop(condition.kind, condition.reason)

        if scope.turns >= scope.max_turns:
            return TerminationDecision.stop(
                TerminationReason.MAX_TURNS, f"Maximum turns reached: {scope.max_turns}"
            )
        if scope.elapsed_ms(now) >= scope.timeout_ms:
            return TerminationDecision.stop(
                TerminationReason.TIMEOUT, f"Timeout reached: {scope.timeout_ms}ms"
            )
        return CONTINUE

    def _monitor_for(self, scope: Scope) -> _Monitor:
        with self._lock:
            monitor = self._monitors.get(scope.id)
        if monitor is None:
            self.start_monitoring(scope)
            with self._lock:
                monitor = self._monitors[scope.id]
        return monitor

    def _record(self, monitor: _Monitor, decision: TerminationDecision) -> None:
        with self._lock:
            if monitor.decision is not None:
                return
            monitor.decision = decision
            assert decision.reason is not None
            self._terminations[decision.reason.value] += 1
        self._logger.info(
            "termination_decided",
            scope_id=monitor.scope.id,
            reason=decision.reason.value,
            detail=decision.detail,
            turns=monitor.scope.turns,
        )


def _millis(seconds: float) -> int:
    return max(0, int(round(seconds * 1000)))


__all__ = [
    "CONTINUE",
    "MonitorStats",
    "OverallTerminationStats",
    "TerminationDecision",
    "TerminationEvaluator",
]
