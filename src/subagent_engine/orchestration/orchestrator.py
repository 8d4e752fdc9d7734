"""
subagent-engine: scope orchestrator

File: src/subagent_engine/orchestration/orchestrator.py

Purpose
- Own the lifecycle of every scope: validate, seed context, create the scope,
  allocate, monitor, drive the tool-call loop, assemble the result, clean up.

Functional requirements
- ``run`` always returns a ``SubAgentResult``; failures before or during the
  loop surface as status ERROR with an ``ErrorInfo`` in the metadata.
- Resources are allocated under the real scope id, after the scope exists.
- Cleanup runs on every exit path and never raises: monitoring is stopped,
  the allocation released (once), contexts cleared, the scope unregistered.
- The usage monitor task is cancelled and awaited before the result is built.

Non-functional requirements
- Shared state (active registry, completion counters) is guarded by a lock;
  everything else is owned by the single task driving a scope.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import structlog

from subagent_engine.config.schema import EngineSettings
from subagent_engine.context.store import ContextStore
from subagent_engine.domain.errors import SubagentEngineError
from subagent_engine.domain.ids import generate_context_id, generate_scope_id
from subagent_engine.domain.models import (
    ContextState,
    ErrorInfo,
    ExecutionMetadata,
    Scope,
    ScopeConfig,
    ScopeStatus,
    SubAgentResult,
    TerminationInfo,
    TerminationReason,
    validate_scope_config,
)
from subagent_engine.execution.loop import LoopOutcome, ToolCallLoop
from subagent_engine.execution.protocols import ConversationSink, ModelClient, ToolRegistry
from subagent_engine.observability.logging import bind_scope
from subagent_engine.orchestration.compat import CompatibilityAdapter
from subagent_engine.orchestration.monitor import UsageMonitor
from subagent_engine.resources.ledger import GlobalStats, ResourceLedger
from subagent_engine.resources.usage import ProcessUsageProvider, UsageProvider
from subagent_engine.termination.evaluator import (
    OverallTerminationStats,
    TerminationDecision,
    TerminationEvaluator,
)
from subagent_engine.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class ExecutionStatistics:
    active_executions: tuple[str, ...]
    resources: GlobalStats
    termination: OverallTerminationStats
    completed_by_status: Mapping[str, int]

    def to_dict(self) -> dict[str, object]:
        return {
            "active_executions": list(self.active_executions),
            "resources": self.resources.to_dict(),
            "termination": self.termination.to_dict(),
            "completed_by_status": dict(self.completed_by_status),
        }


@dataclass(slots=True)
class _Execution:
    scope: Scope
    token: CancellationToken


@dataclass(slots=True)
class _RunState:
    started_at: float
    stage: str = "validate"
    scope: Scope | None = None
    seed_context_id: str | None = None
    allocated: bool = False


class ScopeOrchestrator:
    def __init__(
        self,
        *,
        model_client: ModelClient,
        tool_registry: ToolRegistry,
        context_store: ContextStore | None = None,
        ledger: ResourceLedger | None = None,
        evaluator: TerminationEvaluator | None = None,
        usage_provider: UsageProvider | None = None,
        settings: EngineSettings | None = None,
        compat: CompatibilityAdapter | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else EngineSettings.defaults()
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._context_store = context_store if context_store is not None else ContextStore()
        self._ledger = (
            ledger
            if ledger is not None
            else ResourceLedger(
                ceilings=self._settings.ceilings,
                default_limits=self._settings.default_limits,
                clock=clock,
            )
        )
        self._evaluator = evaluator if evaluator is not None else TerminationEvaluator(clock=clock)
        self._monitor = UsageMonitor(
            ledger=self._ledger,
            usage_provider=usage_provider if usage_provider is not None else ProcessUsageProvider(),
            interval_seconds=self._settings.monitor_interval_seconds,
            enabled=self._settings.monitor_enabled,
        )
        self._loop = ToolCallLoop(
            model_client=model_client,
            tool_registry=tool_registry,
            context_store=self._context_store,
            evaluator=self._evaluator,
            max_parse_retries=self._settings.max_parse_retries,
            tool_timeout_seconds=self._settings.tool_timeout_seconds,
            system_prompt=self._settings.system_prompt,
            clock=clock,
        )
        self._compat = compat if compat is not None else CompatibilityAdapter()
        self._active: dict[str, _Execution] = {}
        self._completed: Counter[str] = Counter()
        self._lock = threading.Lock()

    @property
    def context_store(self) -> ContextStore:
        return self._context_store

    @property
    def ledger(self) -> ResourceLedger:
        return self._ledger

    @property
    def evaluator(self) -> TerminationEvaluator:
        return self._evaluator

    @property
    def compat(self) -> CompatibilityAdapter:
        return self._compat

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        config: ScopeConfig | Mapping[str, object],
        variables: Mapping[str, object] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        conversation: ConversationSink | None = None,
    ) -> SubAgentResult:
        token = cancel_token if cancel_token is not None else CancellationToken()
        state = _RunState(started_at=self._clock())
        try:
            scope_config = validate_scope_config(config)

            state.stage = "context"
            state.seed_context_id = generate_context_id()
            seed = self._context_store.create_context(state.seed_context_id, variables)

            state.stage = "scope"
            scope = self._create_scope(scope_config, seed)
            state.scope = scope
            with self._lock:
                self._active[scope.id] = _Execution(scope=scope, token=token)

            state.stage = "allocate"
            allocation = self._ledger.allocate(scope.id, scope_config.constraints.resource_limits)
            if not allocation.ok:
                raise allocation.error
            state.allocated = True

            state.stage = "context"
            scope.context = self._context_store.create_isolated_copy(state.seed_context_id, scope.id)
            self._context_store.clear_context(state.seed_context_id)
            state.seed_context_id = None

            state.stage = "execute"
            with bind_scope(scope.id, task_type=scope_config.task_type):
                scope.start(self._clock())
                self._evaluator.start_monitoring(scope)
                self._logger.info(
                    "orchestrator_scope_started",
                    scope_id=scope.id,
                    timeout_ms=scope.timeout_ms,
                    max_turns=scope.max_turns,
                )
                async with self._monitor.watch(scope):
                    outcome = await self._loop.execute(
                        scope, cancel_token=token, conversation=conversation
                    )

            state.stage = "assemble"
            result = self._assemble(scope, outcome)
        except Exception as exc:  # noqa: BLE001 - callers always receive a structured result
            result = self._error_result(state, exc)
        finally:
            self._cleanup(state)

        with self._lock:
            self._completed[result.status.value] += 1
        self._logger.info(
            "orchestrator_run_finished",
            scope_id=result.scope_id,
            status=result.status.value,
            reason=result.termination.reason.value,
            turns=result.termination.turns_executed,
            duration_ms=result.termination.execution_duration_ms,
        )
        return result

    async def run_task(
        self,
        task_type: str | None,
        prompt: str,
        context: Mapping[str, object] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, object]:
        """Execute a legacy "task type + prompt + context" invocation."""
        try:
            scope_config = self._compat.to_scope_config(task_type, prompt)
            variables = self._compat.initial_variables(prompt, context)
        except SubagentEngineError as exc:
            result = self._error_result(_RunState(started_at=self._clock()), exc)
        else:
            result = await self.run(scope_config, variables, cancel_token=cancel_token)
        return self._compat.to_legacy_result(result, task_type)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def force_termination(self, scope_id: str, reason: str) -> bool:
        """Request a FORCED stop, observed at the scope's next checkpoint."""
        execution = self._lookup(scope_id, "force_termination")
        if execution is None:
            return False
        self._evaluator.force_termination(scope_id, reason)
        execution.token.cancel(reason)
        return True

    def cancel(self, scope_id: str, reason: str = "Execution cancelled") -> bool:
        execution = self._lookup(scope_id, "cancel")
        if execution is None:
            return False
        execution.token.cancel(reason)
        self._logger.info("orchestrator_scope_cancel_requested", scope_id=scope_id, reason=reason)
        return True

    def active_scope_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._active)

    def get_execution_statistics(self) -> ExecutionStatistics:
        with self._lock:
            active = tuple(self._active)
            completed = dict(self._completed)
        return ExecutionStatistics(
            active_executions=active,
            resources=self._ledger.get_global_stats(),
            termination=self._evaluator.get_overall_stats(),
            completed_by_status=MappingProxyType(completed),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_scope(self, config: ScopeConfig, seed: ContextState) -> Scope:
        with self._lock:
            live = set(self._active)
        constraints = config.constraints
        return Scope(
            id=generate_scope_id(live_ids=live),
            config=config,
            context=seed,
            timeout_ms=(
                constraints.timeout_ms
                if constraints.timeout_ms is not None
                else self._settings.default_timeout_ms
            ),
            max_turns=(
                constraints.max_turns
                if constraints.max_turns is not None
                else self._settings.default_max_turns
            ),
        )

    def _assemble(self, scope: Scope, outcome: LoopOutcome) -> SubAgentResult:
        return SubAgentResult(
            scope_id=scope.id,
            emitted_variables=scope.emitted_values(),
            termination=outcome.termination_info(),
            metadata=self._metadata(scope, outcome.diagnostics(), outcome.error),
            final_context=self._context_store.snapshot(scope.id),
        )

    def _metadata(
        self, scope: Scope, diagnostics: Mapping[str, object], error: ErrorInfo | None
    ) -> ExecutionMetadata:
        resource_stats = self._ledger.get_stats(scope.id)
        context_stats = self._context_store.get_context_stats(scope.id)
        monitor_stats = self._evaluator.get_monitor_stats(scope.id)
        return ExecutionMetadata(
            resource_stats=None if resource_stats is None else resource_stats.to_dict(),
            context_stats=None if context_stats is None else context_stats.to_dict(),
            termination_stats=None if monitor_stats is None else monitor_stats.to_dict(),
            diagnostics=dict(diagnostics),
            error=error,
        )

    def _error_result(self, state: _RunState, exc: Exception) -> SubAgentResult:
        kind = exc.kind if isinstance(exc, SubagentEngineError) else "internal"
        message = f"{type(exc).__name__}: {exc}"
        error = ErrorInfo(kind=kind, message=message)
        now = self._clock()
        scope = state.scope
        if isinstance(exc, SubagentEngineError):
            self._logger.warning(
                "orchestrator_run_failed",
                scope_id=None if scope is None else scope.id,
                stage=state.stage,
                error_kind=kind,
                error=message,
            )
        else:
            self._logger.exception(
                "orchestrator_run_failed",
                scope_id=None if scope is None else scope.id,
                stage=state.stage,
                error_kind=kind,
            )

        diagnostics = {"stage": state.stage}
        if scope is None:
            return SubAgentResult(
                scope_id=None,
                emitted_variables={},
                termination=TerminationInfo(
                    reason=TerminationReason.ERROR,
                    status=ScopeStatus.ERROR,
                    execution_duration_ms=_millis(now - state.started_at),
                    turns_executed=0,
                    detail=message,
                ),
                metadata=ExecutionMetadata(diagnostics=diagnostics, error=error),
            )

        scope.finish(ScopeStatus.ERROR, now)
        self._evaluator.record_termination(
            scope.id, TerminationDecision.stop(TerminationReason.ERROR, message)
        )
        duration_ms = (
            scope.elapsed_ms(now) if scope.started_at is not None else _millis(now - state.started_at)
        )
        return SubAgentResult(
            scope_id=scope.id,
            emitted_variables=scope.emitted_values(),
            termination=TerminationInfo(
                reason=TerminationReason.ERROR,
                status=ScopeStatus.ERROR,
                execution_duration_ms=duration_ms,
                turns_executed=scope.turns,
                detail=message,
            ),
            metadata=self._metadata(scope, diagnostics, error),
            final_context=self._context_store.snapshot(scope.id),
        )

    def _cleanup(self, state: _RunState) -> None:
        scope = state.scope
        steps: list[tuple[str, Callable[[], object]]] = []
        if state.seed_context_id is not None:
            seed_id = state.seed_context_id
            steps.append(("clear_seed_context", lambda: self._context_store.clear_context(seed_id)))
        if scope is not None:
            scope_id = scope.id
            steps.append(("stop_monitoring", lambda: self._evaluator.stop_monitoring(scope_id)))
            if state.allocated:
                steps.append(("release_resources", lambda: self._ledger.release(scope_id)))
            steps.append(("clear_context", lambda: self._context_store.clear_context(scope_id)))
            steps.append(("unregister", lambda: self._unregister(scope_id)))

        for name, step in steps:
            try:
                step()
            except Exception:  # noqa: BLE001 - one failed step must not skip the rest
                self._logger.exception(
                    "orchestrator_cleanup_step_failed",
                    scope_id=None if scope is None else scope.id,
                    step=name,
                )
        if scope is not None:
            self._logger.debug(
                "orchestrator_cleanup_done", scope_id=scope.id, steps=[name for name, _ in steps]
            )

    def _unregister(self, scope_id: str) -> None:
        with self._lock:
            self._active.pop(scope_id, None)

    def _lookup(self, scope_id: str, operation: str) -> _Execution | None:
        with self._lock:
            execution = self._active.get(scope_id)
        if execution is None:
            self._logger.warning("orchestrator_unknown_scope", scope_id=scope_id, operation=operation)
        return execution


def _millis(seconds: float) -> int:
    return max(0, int(round(seconds * 1000)))


__all__ = ["ExecutionStatistics", "ScopeOrchestrator"]
