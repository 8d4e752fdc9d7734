"""UsageMonitor sampling, violation logging and task teardown."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest
from structlog.testing import capture_logs

from subagent_engine.domain.models import (
    ContextState,
    ExecutionConstraints,
    ResourceLimits,
    ResourceUsage,
    Scope,
    ScopeConfig,
)
from subagent_engine.orchestration.monitor import UsageMonitor
from subagent_engine.resources.ledger import ResourceLedger, ViolationType


@dataclass(slots=True)
class FakeSampler:
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    error: Exception | None = None
    samples: int = 0

    def sample(self) -> ResourceUsage:
        self.samples += 1
        if self.error is not None:
            raise self.error
        return self.usage


@dataclass(slots=True)
class FakeUsageProvider:
    sampler: FakeSampler = field(default_factory=FakeSampler)
    begun: int = 0

    def begin(self) -> FakeSampler:
        self.begun += 1
        return self.sampler


async def _yield_sleep(_: float) -> None:
    await asyncio.sleep(0)


def _scope(scope_id: str = "scope-m") -> Scope:
    return Scope(
        id=scope_id,
        config=ScopeConfig(prompt="watch me", constraints=ExecutionConstraints()),
        context=ContextState(scope_id=scope_id),
        timeout_ms=1_000,
        max_turns=3,
    )


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError, match="interval_seconds"):
        UsageMonitor(
            ledger=ResourceLedger(), usage_provider=FakeUsageProvider(), interval_seconds=0
        )


@pytest.mark.asyncio
async def test_disabled_monitor_never_samples() -> None:
    provider = FakeUsageProvider()
    monitor = UsageMonitor(ledger=ResourceLedger(), usage_provider=provider, enabled=False)

    async with monitor.watch(_scope()):
        await asyncio.sleep(0)

    assert not monitor.enabled
    assert provider.begun == 0


@pytest.mark.asyncio
async def test_tick_records_usage_and_violations() -> None:
    ledger = ResourceLedger()
    scope = _scope()
    ledger.allocate(scope.id, ResourceLimits(max_memory_mb=10))
    sampler = FakeSampler(usage=ResourceUsage(memory_mb=25))

    with capture_logs() as logs:
        monitor = UsageMonitor(ledger=ledger, usage_provider=FakeUsageProvider(sampler))
        violations = monitor.tick(scope, sampler)

    assert [violation.type for violation in violations] == [ViolationType.MEMORY]
    assert scope.resource_usage.memory_mb == 25
    assert scope.violations == violations
    stats = ledger.get_stats(scope.id)
    assert stats is not None and stats.usage.memory_mb == 25
    warning = next(entry for entry in logs if entry["event"] == "monitor_limit_violation")
    assert warning["type"] == "MEMORY"
    assert warning["severity"] == "HIGH"


@pytest.mark.asyncio
async def test_tick_survives_sampling_errors_and_unknown_scopes() -> None:
    ledger = ResourceLedger()
    broken = FakeSampler(error=RuntimeError("no /proc"))

    with capture_logs() as logs:
        monitor = UsageMonitor(ledger=ledger, usage_provider=FakeUsageProvider(broken))
        assert monitor.tick(_scope(), broken) == ()
        assert monitor.tick(_scope("scope-unallocated"), FakeSampler()) == ()

    events = [entry["event"] for entry in logs]
    assert "monitor_sample_failed" in events
    assert "resource_usage_unknown_scope" in events


@pytest.mark.asyncio
async def test_watch_samples_periodically_and_once_more_on_exit() -> None:
    ledger = ResourceLedger()
    scope = _scope()
    ledger.allocate(scope.id)
    provider = FakeUsageProvider(FakeSampler(usage=ResourceUsage(cpu_time_ms=40)))
    monitor = UsageMonitor(
        ledger=ledger, usage_provider=provider, interval_seconds=0.5, sleep=_yield_sleep
    )

    async with monitor.watch(scope):
        for _ in range(5):
            await asyncio.sleep(0)
        periodic = provider.sampler.samples

    assert provider.begun == 1
    assert periodic >= 1
    assert provider.sampler.samples == periodic + 1
    assert scope.resource_usage.cpu_time_ms == 40


@pytest.mark.asyncio
async def test_watch_stops_task_when_body_raises() -> None:
    ledger = ResourceLedger()
    scope = _scope()
    ledger.allocate(scope.id)
    provider = FakeUsageProvider()
    monitor = UsageMonitor(ledger=ledger, usage_provider=provider, sleep=_yield_sleep)

    with pytest.raises(RuntimeError, match="loop failed"):
        async with monitor.watch(scope):
            await asyncio.sleep(0)
            raise RuntimeError("loop failed")

    after_exit = provider.sampler.samples
    for _ in range(3):
        await asyncio.sleep(0)
    assert provider.sampler.samples == after_exit
