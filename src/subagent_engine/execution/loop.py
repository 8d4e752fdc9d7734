"""
Iterative model/tool conversation driving one scope to a terminal result.

Per turn: AwaitingModel -> ModelResponded -> (ToolsRequested -> ToolsExecuted
-> AwaitingModel) | Done. The loop is strictly sequential within a scope: one
outstanding model call or tool call at a time, tool results folded back into
the conversation before the next model call.

Checkpoints where the cancellation token is observed: the top of every turn
and before every tool dispatch. In-flight model and tool calls are never
interrupted by the loop itself.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from subagent_engine.constants import (
    DEFAULT_MAX_PARSE_RETRIES,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    EXHAUSTED_RETRIES_MESSAGE,
    RESULT_VARIABLE_NAME,
)
from subagent_engine.context.store import ContextStore
from subagent_engine.context.templates import is_valid_variable_name
from subagent_engine.domain.errors import (
    ExhaustedRetriesError,
    NotFoundError,
    ScopeInterruptedError,
    ToolExecutionError,
)
from subagent_engine.domain.models import (
    EmittedVariable,
    ErrorInfo,
    Scope,
    ScopeStatus,
    TerminationInfo,
    TerminationReason,
)
from subagent_engine.execution import conversation as conv
from subagent_engine.execution.protocols import (
    ConversationSink,
    ModelClient,
    ModelResponse,
    ToolCall,
    ToolRegistry,
    ToolResult,
    ToolSchema,
)
from subagent_engine.termination.evaluator import TerminationDecision, TerminationEvaluator
from subagent_engine.utils.concurrency import CancellationToken, run_with_timeout
from subagent_engine.utils.copying import deep_copy


@dataclass(frozen=True, slots=True)
class LoopOutcome:
    scope_id: str
    status: ScopeStatus
    reason: TerminationReason
    detail: str
    turns: int
    duration_ms: int
    retry_count: int = 0
    tool_invocations: int = 0
    tool_errors: int = 0
    error: ErrorInfo | None = None

    def termination_info(self) -> TerminationInfo:
        return TerminationInfo(
            reason=self.reason,
            status=self.status,
            execution_duration_ms=self.duration_ms,
            turns_executed=self.turns,
            detail=self.detail,
        )

    def diagnostics(self) -> dict[str, object]:
        return {
            "retry_count": self.retry_count,
            "tool_invocations": self.tool_invocations,
            "tool_errors": self.tool_errors,
        }


@dataclass(slots=True)
class _Counters:
    retry_count: int = 0
    consecutive_parse_errors: int = 0
    tool_invocations: int = 0
    tool_errors: int = 0
    final_text: str = ""


class ToolCallLoop:
    def __init__(
        self,
        *,
        model_client: ModelClient,
        tool_registry: ToolRegistry,
        context_store: ContextStore,
        evaluator: TerminationEvaluator,
        max_parse_retries: int = DEFAULT_MAX_PARSE_RETRIES,
        tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        system_prompt: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_parse_retries < 0:
            raise ValueError("max_parse_retries must be >= 0")
        if tool_timeout_seconds <= 0:
            raise ValueError("tool_timeout_seconds must be > 0")
        self._model_client = model_client
        self._tool_registry = tool_registry
        self._context_store = context_store
        self._evaluator = evaluator
        self._max_parse_retries = max_parse_retries
        self._tool_timeout_seconds = tool_timeout_seconds
        self._system_prompt = system_prompt
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def execute(
        self,
        scope: Scope,
        *,
        cancel_token: CancellationToken | None = None,
        conversation: ConversationSink | None = None,
    ) -> LoopOutcome:
        token = cancel_token if cancel_token is not None else CancellationToken()
        sink = conversation if conversation is not None else conv.Conversation()
        counters = _Counters()
        if scope.status is ScopeStatus.INITIALIZED:
            scope.start(self._clock())

        tools = self._permitted_schemas(scope)
        if self._system_prompt:
            conv.append_system(sink, self._system_prompt)
        conv.append_user(sink, self._context_store.process_template(scope.config.prompt, scope.id))

        # one check on entry, then once after each response and once after its tools
        decision = await self._evaluator.check(scope)
        if decision.terminate:
            return self._finish(scope, decision, counters)

        while True:
            if token.is_cancelled:
                return self._finish(scope, self._interruption(scope, token), counters)

            try:
                raw = await self._model_client.generate_response(
                    sink.messages(), tools=tools, cancellation_token=token
                )
            except asyncio.CancelledError:
                if not token.is_cancelled:
                    raise
                return self._finish(scope, self._interruption(scope, token), counters)
            except Exception as exc:  # noqa: BLE001 - model failures end the scope as ERROR
                self._logger.error(
                    "loop_model_call_failed",
                    scope_id=scope.id,
                    turn=scope.turns + 1,
                    error=f"{type(exc).__name__}: {exc}",
                )
                return self._finish(
                    scope,
                    TerminationDecision.stop(TerminationReason.ERROR, f"Model call failed: {exc}"),
                    counters,
                    error=ErrorInfo(kind="model", message=f"{type(exc).__name__}: {exc}"),
                )

            response = ModelResponse.from_raw(raw)
            scope.turns += 1
            scope.last_response = response
            parse_error = response.parse_error or ("empty model response" if response.is_empty else None)
            self._context_store.record_history(
                scope.id,
                "model_response",
                turn=scope.turns,
                tool_calls=[call.name for call in response.tool_calls],
                parse_error=parse_error,
            )

            if parse_error is not None:
                counters.consecutive_parse_errors += 1
                if counters.consecutive_parse_errors > self._max_parse_retries:
                    conv.append_exhausted_retries(sink)
                    exhausted = ExhaustedRetriesError(
                        f"model output could not be parsed after {self._max_parse_retries} retries: "
                        f"{parse_error}",
                        attempts=counters.consecutive_parse_errors,
                        scope_id=scope.id,
                    )
                    return self._finish(
                        scope,
                        TerminationDecision.stop(
                            TerminationReason.EXHAUSTED_RETRIES, EXHAUSTED_RETRIES_MESSAGE
                        ),
                        counters,
                        error=ErrorInfo(kind=exhausted.kind, message=str(exhausted)),
                    )
                counters.retry_count += 1
                self._logger.warning(
                    "loop_parse_retry",
                    scope_id=scope.id,
                    turn=scope.turns,
                    attempt=counters.consecutive_parse_errors,
                    max_retries=self._max_parse_retries,
                    parse_error=parse_error,
                )
                conv.append_parse_correction(sink, parse_error)
            else:
                counters.consecutive_parse_errors = 0
                conv.append_assistant(sink, response.content, response.tool_calls)
                if response.content.strip():
                    counters.final_text = response.content
                self._emit_all(scope, response.variables, source="model")

            decision = await self._evaluator.check(scope)
            if decision.terminate:
                return self._finish(scope, decision, counters)
            if parse_error is not None:
                continue

            if not response.has_tool_calls:
                conv.append_continuation(sink)
                continue

            for call in response.tool_calls:
                if token.is_cancelled:
                    return self._finish(scope, self._interruption(scope, token), counters)
                result = await self._dispatch(scope, call)
                counters.tool_invocations += 1
                if result.is_error:
                    counters.tool_errors += 1
                conv.append_tool_result(sink, call, result.content)

            decision = await self._evaluator.check(scope)
            if decision.terminate:
                return self._finish(scope, decision, counters)

    def emit_variable(self, scope: Scope, name: str, value: object, *, source: str = "caller") -> bool:
        """Record an output variable on the scope and mirror it into the scope's context."""
        if not is_valid_variable_name(name):
            self._logger.warning("loop_emit_invalid_name", scope_id=scope.id, name=name, source=source)
            return False
        scope.emitted_variables[name] = EmittedVariable(
            name=name, value=deep_copy(value), turn=scope.turns
        )
        try:
            self._context_store.set_variable(
                scope.id, name, value, {"emitted": True, "turn": scope.turns, "source": source}
            )
        except NotFoundError:
            self._logger.warning("loop_emit_context_missing", scope_id=scope.id, name=name)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _permitted_schemas(self, scope: Scope) -> tuple[ToolSchema, ...]:
        return tuple(
            schema
            for schema in self._tool_registry.get_tool_schemas()
            if scope.config.allows_tool(schema.name)
        )

    async def _dispatch(self, scope: Scope, call: ToolCall) -> ToolResult:
        if not scope.config.allows_tool(call.name):
            denied = ToolExecutionError(
                f"Tool '{call.name}' is not permitted for this scope",
                tool_name=call.name,
                scope_id=scope.id,
            )
            self._logger.warning("loop_tool_denied", scope_id=scope.id, tool=call.name)
            return ToolResult.error(str(denied))

        try:
            raw = await run_with_timeout(
                self._tool_registry.invoke(call.name, call.arguments),
                self._tool_timeout_seconds,
            )
            result = ToolResult.coerce(raw)
        except TimeoutError:
            result = ToolResult.error(
                f"Tool '{call.name}' timed out after {self._tool_timeout_seconds:g} seconds"
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - tool failures are reported back to the model
            failure = ToolExecutionError(
                f"Tool '{call.name}' failed: {exc}", tool_name=call.name, scope_id=scope.id
            )
            result = ToolResult.error(str(failure))

        self._logger.info(
            "loop_tool_invoked",
            scope_id=scope.id,
            turn=scope.turns,
            tool=call.name,
            call_id=call.call_id,
            is_error=result.is_error,
        )
        result_name = f"_tool_{call.name}_result"
        if is_valid_variable_name(result_name):
            try:
                self._context_store.set_variable(
                    scope.id,
                    result_name,
                    result.content,
                    {"tool": call.name, "is_error": result.is_error, "turn": scope.turns},
                )
            except NotFoundError:
                self._logger.warning("loop_tool_context_missing", scope_id=scope.id, tool=call.name)
        if not result.is_error:
            self._emit_all(scope, result.variables, source=f"tool:{call.name}")
        return result

    def _emit_all(self, scope: Scope, variables: Mapping[str, object], *, source: str) -> None:
        for name, value in variables.items():
            self.emit_variable(scope, name, value, source=source)

    def _interruption(self, scope: Scope, token: CancellationToken) -> TerminationDecision:
        pending = self._evaluator.pending_termination(scope.id)
        if pending is not None:
            return pending
        interrupted = ScopeInterruptedError(token.reason or "Execution cancelled", scope_id=scope.id)
        return TerminationDecision.stop(TerminationReason.INTERRUPTED, str(interrupted))

    def _finish(
        self,
        scope: Scope,
        decision: TerminationDecision,
        counters: _Counters,
        *,
        error: ErrorInfo | None = None,
    ) -> LoopOutcome:
        assert decision.reason is not None and decision.status is not None
        status = decision.status
        if (
            status is ScopeStatus.SUCCESS
            and RESULT_VARIABLE_NAME not in scope.emitted_variables
            and counters.final_text
        ):
            self.emit_variable(scope, RESULT_VARIABLE_NAME, counters.final_text, source="final_response")

        scope.finish(status, self._clock())
        self._evaluator.record_termination(scope.id, decision)
        self._context_store.record_history(
            scope.id, "terminated", reason=decision.reason.value, detail=decision.detail
        )
        outcome = LoopOutcome(
            scope_id=scope.id,
            status=status,
            reason=decision.reason,
            detail=decision.detail,
            turns=scope.turns,
            duration_ms=scope.elapsed_ms(self._clock()),
            retry_count=counters.retry_count,
            tool_invocations=counters.tool_invocations,
            tool_errors=counters.tool_errors,
            error=error,
        )
        self._logger.info(
            "loop_finished",
            scope_id=scope.id,
            status=status.value,
            reason=decision.reason.value,
            turns=outcome.turns,
            duration_ms=outcome.duration_ms,
            retry_count=outcome.retry_count,
        )
        return outcome


__all__ = ["LoopOutcome", "ToolCallLoop"]
