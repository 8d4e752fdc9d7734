"""
subagent-engine: configuration schema and validation

File: src/subagent_engine/config/schema.py

Purpose
- Authoritative defaults and strict validation for engine settings.
- ``EngineSettings``: the frozen projection handed to ledger, evaluator,
  loop and orchestrator.

Functional requirements
- Validation collects every issue (field path + message) before failing.
- Unknown sections and keys are rejected.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from subagent_engine.constants import (
    DEFAULT_MAX_CPU_TIME_MS,
    DEFAULT_MAX_FILE_HANDLES,
    DEFAULT_MAX_MEMORY_MB,
    DEFAULT_MAX_NETWORK_CONNECTIONS,
    DEFAULT_MAX_PARSE_RETRIES,
    DEFAULT_MAX_TURNS,
    DEFAULT_MONITOR_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    MAX_CONCURRENT_SCOPES,
    MAX_TOTAL_CPU_TIME_MS,
    MAX_TOTAL_MEMORY_MB,
)
from subagent_engine.domain.models import ResourceLimits
from subagent_engine.resources.ledger import GlobalCeilings

CONFIG_SCHEMA_VERSION: Final[int] = 1
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")


class MetaConfig(TypedDict):
    schema_version: int


class LimitsConfig(TypedDict):
    max_concurrent_scopes: int
    max_total_memory_mb: float
    max_total_cpu_time_ms: int


class DefaultsConfig(TypedDict):
    timeout_ms: int
    max_turns: int
    max_memory_mb: float
    max_cpu_time_ms: int
    max_file_handles: int
    max_network_connections: int


class LoopConfig(TypedDict):
    max_parse_retries: int
    tool_timeout_seconds: float
    system_prompt: str


class MonitoringConfig(TypedDict):
    enabled: bool
    interval_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: str
    log_format: str
    redact_secrets: bool


class EngineConfig(TypedDict):
    meta: MetaConfig
    limits: LimitsConfig
    defaults: DefaultsConfig
    loop: LoopConfig
    monitoring: MonitoringConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[EngineConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "limits": {
        "max_concurrent_scopes": MAX_CONCURRENT_SCOPES,
        "max_total_memory_mb": MAX_TOTAL_MEMORY_MB,
        "max_total_cpu_time_ms": MAX_TOTAL_CPU_TIME_MS,
    },
    "defaults": {
        "timeout_ms": DEFAULT_TIMEOUT_MS,
        "max_turns": DEFAULT_MAX_TURNS,
        "max_memory_mb": DEFAULT_MAX_MEMORY_MB,
        "max_cpu_time_ms": DEFAULT_MAX_CPU_TIME_MS,
        "max_file_handles": DEFAULT_MAX_FILE_HANDLES,
        "max_network_connections": DEFAULT_MAX_NETWORK_CONNECTIONS,
    },
    "loop": {
        "max_parse_retries": DEFAULT_MAX_PARSE_RETRIES,
        "tool_timeout_seconds": DEFAULT_TOOL_TIMEOUT_SECONDS,
        "system_prompt": "",
    },
    "monitoring": {
        "enabled": True,
        "interval_seconds": DEFAULT_MONITOR_INTERVAL_SECONDS,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


@dataclass(frozen=True, slots=True)
class EngineSettings:
    ceilings: GlobalCeilings
    default_limits: ResourceLimits
    default_timeout_ms: int
    default_max_turns: int
    max_parse_retries: int
    tool_timeout_seconds: float
    system_prompt: str | None
    monitor_enabled: bool
    monitor_interval_seconds: float
    log_level: str
    log_format: str
    redact_secrets: bool

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> EngineSettings:
        valid = assert_valid_config(config)
        limits, defaults = valid["limits"], valid["defaults"]
        loop, monitoring = valid["loop"], valid["monitoring"]
        observability = valid["observability"]
        return cls(
            ceilings=GlobalCeilings(
                max_concurrent_scopes=limits["max_concurrent_scopes"],
                max_total_memory_mb=limits["max_total_memory_mb"],
                max_total_cpu_time_ms=limits["max_total_cpu_time_ms"],
            ),
            default_limits=ResourceLimits(
                max_memory_mb=defaults["max_memory_mb"],
                max_cpu_time_ms=defaults["max_cpu_time_ms"],
                max_file_handles=defaults["max_file_handles"],
                max_network_connections=defaults["max_network_connections"],
            ),
            default_timeout_ms=defaults["timeout_ms"],
            default_max_turns=defaults["max_turns"],
            max_parse_retries=loop["max_parse_retries"],
            tool_timeout_seconds=loop["tool_timeout_seconds"],
            system_prompt=loop["system_prompt"] or None,
            monitor_enabled=monitoring["enabled"],
            monitor_interval_seconds=monitoring["interval_seconds"],
            log_level=observability["log_level"],
            log_format=observability["log_format"],
            redact_secrets=observability["redact_secrets"],
        )

    @classmethod
    def defaults(cls) -> EngineSettings:
        return cls.from_config(default_config())


def default_config() -> EngineConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base`` without mutating either."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> tuple[ConfigValidationIssue, ...]:
    """Check ``config`` against the schema; returns every issue found (empty when valid)."""

    if not isinstance(config, Mapping):
        return (ConfigValidationIssue("<root>", f"expected object, got {type(config).__name__}"),)

    check = _Checker()
    check.keys(config, DEFAULT_CONFIG, prefix="")

    meta = check.section(config, "meta")
    if meta is not None:
        version = check.integer(meta, "meta.schema_version", minimum=1)
        if version is not None and version != CONFIG_SCHEMA_VERSION:
            check.fail(
                "meta.schema_version",
                f"unsupported schema version {version}; expected {CONFIG_SCHEMA_VERSION}",
            )

    limits = check.section(config, "limits")
    if limits is not None:
        check.integer(limits, "limits.max_concurrent_scopes", minimum=1)
        check.integer(limits, "limits.max_total_cpu_time_ms", minimum=1)
        check.positive_number(limits, "limits.max_total_memory_mb")

    defaults = check.section(config, "defaults")
    if defaults is not None:
        for key in _DEFAULT_INT_KEYS:
            check.integer(defaults, f"defaults.{key}", minimum=1)
        check.positive_number(defaults, "defaults.max_memory_mb")

    loop = check.section(config, "loop")
    if loop is not None:
        check.integer(loop, "loop.max_parse_retries", minimum=0)
        check.positive_number(loop, "loop.tool_timeout_seconds")
        if not isinstance(loop.get("system_prompt"), str):
            check.fail("loop.system_prompt", "expected string")

    monitoring = check.section(config, "monitoring")
    if monitoring is not None:
        check.boolean(monitoring, "monitoring.enabled")
        check.positive_number(monitoring, "monitoring.interval_seconds")

    observability = check.section(config, "observability")
    if observability is not None:
        check.choice(observability, "observability.log_level", LOG_LEVELS)
        check.choice(observability, "observability.log_format", LOG_FORMATS)
        check.boolean(observability, "observability.redact_secrets")

    return tuple(check.issues)


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    issues = validate_config(config)
    if issues:
        raise ConfigValidationError(issues)
    assert isinstance(config, Mapping)
    return copy.deepcopy(dict(config))


_DEFAULT_INT_KEYS: Final[tuple[str, ...]] = (
    "timeout_ms",
    "max_turns",
    "max_cpu_time_ms",
    "max_file_handles",
    "max_network_connections",
)


class _Checker:
    """Accumulates issues; each check reads ``payload[<last path segment>]``."""

    __slots__ = ("issues",)

    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def fail(self, path: str, message: str) -> None:
        self.issues.append(ConfigValidationIssue(path=path, message=message))

    def keys(
        self, payload: Mapping[str, object], expected: Mapping[str, object], prefix: str
    ) -> None:
        dotted = (lambda key: f"{prefix}.{key}") if prefix else (lambda key: key)
        for key in sorted(set(payload) - set(expected)):
            self.fail(dotted(key), "unknown field")
        for key in sorted(set(expected) - set(payload)):
            self.fail(dotted(key), "missing required field")

    def section(self, config: Mapping[str, object], name: str) -> Mapping[str, object] | None:
        raw = config.get(name)
        if raw is None:
            return None
        if not isinstance(raw, Mapping):
            self.fail(name, f"expected object, got {type(raw).__name__}")
            return None
        self.keys(raw, DEFAULT_CONFIG[name], prefix=name)  # type: ignore[literal-required]
        return raw

    def integer(self, payload: Mapping[str, object], path: str, *, minimum: int) -> int | None:
        value = payload.get(path.rsplit(".", 1)[-1])
        if isinstance(value, bool) or not isinstance(value, int):
            self.fail(path, f"expected integer, got {type(value).__name__}")
            return None
        if value < minimum:
            self.fail(path, f"must be >= {minimum}")
            return None
        return value

    def positive_number(self, payload: Mapping[str, object], path: str) -> None:
        value = payload.get(path.rsplit(".", 1)[-1])
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.fail(path, f"expected number, got {type(value).__name__}")
        elif not math.isfinite(value):
            self.fail(path, "must be finite")
        elif value <= 0:
            self.fail(path, "must be > 0")

    def boolean(self, payload: Mapping[str, object], path: str) -> None:
        value = payload.get(path.rsplit(".", 1)[-1])
        if not isinstance(value, bool):
            self.fail(path, f"expected boolean, got {type(value).__name__}")

    def choice(self, payload: Mapping[str, object], path: str, allowed: tuple[str, ...]) -> None:
        value = payload.get(path.rsplit(".", 1)[-1])
        if value not in allowed:
            self.fail(path, f"invalid value {value!r}; expected one of: {', '.join(allowed)}")


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key, value in overlay.items():
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "EngineConfig",
    "EngineSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
