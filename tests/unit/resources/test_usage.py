"""Process usage sampling relative to a per-scope baseline."""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from types import SimpleNamespace

import psutil

from subagent_engine.domain.models import ResourceUsage
from subagent_engine.resources.usage import ProcessUsageProvider, ProcessUsageSampler

_MB = 1024 * 1024


@dataclass(slots=True)
class FakeProcess:
    rss: int = 100 * _MB
    cpu_seconds: float = 2.0
    fds: int = 10
    connections: int = 1
    fail_connections: bool = False
    calls: list[str] = field(default_factory=list)

    @contextlib.contextmanager
    def oneshot(self) -> Iterator[None]:
        self.calls.append("oneshot")
        yield

    def memory_info(self) -> SimpleNamespace:
        return SimpleNamespace(rss=self.rss)

    def cpu_times(self) -> SimpleNamespace:
        return SimpleNamespace(user=self.cpu_seconds, system=0.0)

    def num_fds(self) -> int:
        return self.fds

    def net_connections(self, kind: str) -> list[object]:
        assert kind == "inet"
        if self.fail_connections:
            raise psutil.AccessDenied()
        return [object()] * self.connections


def test_sample_reports_growth_since_baseline() -> None:
    process = FakeProcess()
    sampler = ProcessUsageSampler(process)  # type: ignore[arg-type]

    process.rss += 30 * _MB
    process.cpu_seconds += 0.25
    process.fds += 2
    process.connections += 1

    assert sampler.sample() == ResourceUsage(
        memory_mb=30.0, cpu_time_ms=250.0, file_handles=2, network_connections=1
    )


def test_shrinking_process_never_reports_negative_usage() -> None:
    process = FakeProcess()
    sampler = ProcessUsageSampler(process)  # type: ignore[arg-type]

    process.rss -= 50 * _MB
    process.fds -= 5

    usage = sampler.sample()
    assert usage.memory_mb == 0.0
    assert usage.file_handles == 0


def test_connection_listing_failure_counts_as_zero() -> None:
    process = FakeProcess(fail_connections=True)
    sampler = ProcessUsageSampler(process)  # type: ignore[arg-type]

    assert sampler.sample().network_connections == 0


def test_provider_samples_the_current_process() -> None:
    sampler = ProcessUsageProvider().begin()
    usage = sampler.sample()

    assert usage.memory_mb >= 0
    assert usage.cpu_time_ms >= 0
