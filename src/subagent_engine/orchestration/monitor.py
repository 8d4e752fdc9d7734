"""
Background usage monitor for a running scope.

Every ``interval_seconds`` the monitor samples process usage, pushes it into
the ledger and records any limit violations on the scope. It observes and
logs; it never stops a scope. ``watch`` cancels the tick task and awaits it
before returning, so no usage update can land after the scope is torn down.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import structlog

from subagent_engine.constants import DEFAULT_MONITOR_INTERVAL_SECONDS
from subagent_engine.domain.models import Scope
from subagent_engine.resources.ledger import LimitViolation, ResourceLedger
from subagent_engine.resources.usage import UsageProvider, UsageSampler

SleepFn = Callable[[float], Awaitable[None]]


class UsageMonitor:
    def __init__(
        self,
        *,
        ledger: ResourceLedger,
        usage_provider: UsageProvider,
        interval_seconds: float = DEFAULT_MONITOR_INTERVAL_SECONDS,
        enabled: bool = True,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._ledger = ledger
        self._usage_provider = usage_provider
        self._interval_seconds = interval_seconds
        self._enabled = enabled
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @contextlib.asynccontextmanager
    async def watch(self, scope: Scope) -> AsyncIterator[None]:
        if not self._enabled:
            yield
            return

        sampler = self._usage_provider.begin()
        task: asyncio.Task[None] = asyncio.create_task(self._run(scope, sampler))
        self._logger.debug("monitor_started", scope_id=scope.id, interval_seconds=self._interval_seconds)
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self.tick(scope, sampler)
            self._logger.debug("monitor_stopped", scope_id=scope.id)

    def tick(self, scope: Scope, sampler: UsageSampler) -> tuple[LimitViolation, ...]:
        """Sample once and fold the result into the ledger and the scope."""
        try:
            usage = sampler.sample()
        except Exception as exc:  # noqa: BLE001 - a failed sample skips this tick
            self._logger.warning(
                "monitor_sample_failed", scope_id=scope.id, error=f"{type(exc).__name__}: {exc}"
            )
            return ()

        violations = self._ledger.update_usage(scope.id, usage)
        scope.resource_usage = usage
        if violations is None:
            return ()
        scope.violations = violations
        for violation in violations:
            self._logger.warning(
                "monitor_limit_violation",
                scope_id=scope.id,
                type=violation.type.value,
                current=violation.current,
                limit=violation.limit,
                severity=violation.severity.value,
            )
        return violations

    async def _run(self, scope: Scope, sampler: UsageSampler) -> None:
        while True:
            await self._sleep(self._interval_seconds)
            self.tick(scope, sampler)


__all__ = ["SleepFn", "UsageMonitor"]
