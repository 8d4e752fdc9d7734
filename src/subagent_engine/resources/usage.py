"""Live process usage sampling for the monitoring tick."""

from __future__ import annotations

import os
from typing import Any, Protocol

import psutil
import structlog

from subagent_engine.domain.models import ResourceUsage

_BYTES_PER_MB = 1024 * 1024


class UsageSampler(Protocol):
    """Produces usage snapshots for one scope, relative to when it started."""

    def sample(self) -> ResourceUsage: ...


class UsageProvider(Protocol):
    """Source of per-scope samplers (injectable for tests)."""

    def begin(self) -> UsageSampler: ...


class ProcessUsageProvider:
    """Collect usage of the current process with ``psutil``.

    Scopes share one interpreter process, so each sampler reports growth
    since its own baseline rather than process totals.
    """

    def __init__(self, *, pid: int | None = None, logger: Any | None = None) -> None:
        self._pid = os.getpid() if pid is None else pid
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def begin(self) -> ProcessUsageSampler:
        return ProcessUsageSampler(psutil.Process(self._pid), logger=self._logger)


class ProcessUsageSampler:
    def __init__(self, process: psutil.Process, *, logger: Any | None = None) -> None:
        self._process = process
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._baseline = self._raw()

    def sample(self) -> ResourceUsage:
        current = self._raw()
        return ResourceUsage(
            memory_mb=max(0.0, (current["rss"] - self._baseline["rss"]) / _BYTES_PER_MB),
            cpu_time_ms=max(0.0, (current["cpu_seconds"] - self._baseline["cpu_seconds"]) * 1000),
            file_handles=max(0, int(current["handles"] - self._baseline["handles"])),
            network_connections=max(
                0, int(current["connections"] - self._baseline["connections"])
            ),
        )

    def _raw(self) -> dict[str, float]:
        with self._process.oneshot():
            rss = float(self._process.memory_info().rss)
            times = self._process.cpu_times()
            cpu_seconds = float(times.user + times.system)
            handles = self._count_handles()
        return {
            "rss": rss,
            "cpu_seconds": cpu_seconds,
            "handles": float(handles),
            "connections": float(self._count_connections()),
        }

    def _count_handles(self) -> int:
        counter = getattr(self._process, "num_fds", None) or getattr(
            self._process, "num_handles", None
        )
        if counter is None:
            return 0
        try:
            return int(counter())
        except psutil.Error:
            return 0

    def _count_connections(self) -> int:
        counter = getattr(self._process, "net_connections", None) or getattr(
            self._process, "connections", None
        )
        if counter is None:
            return 0
        try:
            return len(counter(kind="inet"))
        except psutil.Error as exc:
            self._logger.debug("usage_connections_unavailable", error=str(exc))
            return 0


__all__ = ["ProcessUsageProvider", "ProcessUsageSampler", "UsageProvider", "UsageSampler"]
