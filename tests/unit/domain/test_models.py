"""Unit tests for scope configuration, status mapping and result records."""

from __future__ import annotations

import pytest

from subagent_engine.domain.errors import (
    AllocationError,
    ConfigurationError,
    InvalidNameError,
    NotFoundError,
    SubagentEngineError,
)
from subagent_engine.domain.models import (
    ContextState,
    ExecutionConstraints,
    ResourceLimits,
    ResourceUsage,
    Scope,
    ScopeConfig,
    ScopeStatus,
    SubAgentResult,
    TerminationInfo,
    TerminationReason,
    status_for_reason,
    validate_scope_config,
)
from subagent_engine.domain.result import Err, Ok


def _config(**overrides: object) -> ScopeConfig:
    values: dict[str, object] = {
        "prompt": "Summarize {{topic}}",
        "constraints": ExecutionConstraints(timeout_ms=1_000, max_turns=3),
    }
    values.update(overrides)
    return ScopeConfig(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("reason", "status"),
    [
        (TerminationReason.GOAL, ScopeStatus.SUCCESS),
        (TerminationReason.OUTPUT, ScopeStatus.SUCCESS),
        (TerminationReason.VARIABLE, ScopeStatus.SUCCESS),
        (TerminationReason.CUSTOM, ScopeStatus.SUCCESS),
        (TerminationReason.MAX_TURNS, ScopeStatus.SUCCESS),
        (TerminationReason.TIMEOUT, ScopeStatus.TIMEOUT),
        (TerminationReason.ERROR, ScopeStatus.ERROR),
        (TerminationReason.EXHAUSTED_RETRIES, ScopeStatus.ERROR),
        (TerminationReason.FORCED, ScopeStatus.INTERRUPTED),
        (TerminationReason.INTERRUPTED, ScopeStatus.INTERRUPTED),
    ],
)
def test_status_for_reason(reason: TerminationReason, status: ScopeStatus) -> None:
    assert status_for_reason(reason) is status


def test_scope_config_from_mapping_accepts_legacy_keys() -> None:
    config = validate_scope_config(
        {
            "prompt": "Find {{target}}",
            "toolPermissions": ["read", "search"],
            "outputDefinitions": {"findings": "list of findings"},
            "constraints": {
                "timeoutMs": 5_000,
                "maxTurns": 4,
                "resourceLimits": {"maxMemoryMB": 64, "maxFileHandles": 8},
            },
        }
    )

    assert config.tool_permissions == ("read", "search")
    assert config.constraints.timeout_ms == 5_000
    assert config.constraints.max_turns == 4
    assert config.constraints.resource_limits.max_memory_mb == 64
    assert config.constraints.resource_limits.max_cpu_time_ms is None
    assert dict(config.output_definitions) == {"findings": "list of findings"}


def test_scope_config_rejects_missing_constraints_and_bad_fields() -> None:
    with pytest.raises(ConfigurationError, match="constraints must be present"):
        validate_scope_config({"prompt": "hi"})

    with pytest.raises(ConfigurationError, match="unknown key config.mystery"):
        validate_scope_config({"prompt": "hi", "constraints": {}, "mystery": 1})

    with pytest.raises(ConfigurationError) as excinfo:
        _config(prompt="   ", tool_permissions="read")
    assert "prompt must be a non-empty string" in excinfo.value.problems
    assert "tool_permissions must be a list of tool names" in excinfo.value.problems

    with pytest.raises(ConfigurationError, match="max_turns must be a positive integer"):
        ExecutionConstraints(max_turns=0)

    with pytest.raises(ConfigurationError, match="must be > 0"):
        ResourceLimits(max_memory_mb=-1)

    with pytest.raises(ConfigurationError):
        validate_scope_config(["not", "a", "mapping"])


def test_tool_permission_wildcard() -> None:
    assert _config(tool_permissions=("*",)).allows_tool("anything")
    restricted = _config(tool_permissions=("read",))
    assert restricted.allows_tool("read")
    assert not restricted.allows_tool("write")


def test_resource_limits_fill_unspecified_fields_from_defaults() -> None:
    defaults = ResourceLimits(
        max_memory_mb=100, max_cpu_time_ms=300_000, max_file_handles=50, max_network_connections=10
    )
    merged = ResourceLimits(max_memory_mb=32).with_defaults(defaults)
    assert merged.to_dict() == {
        "max_memory_mb": 32,
        "max_cpu_time_ms": 300_000,
        "max_file_handles": 50,
        "max_network_connections": 10,
    }


def test_resource_usage_merge_overlays_only_given_fields() -> None:
    usage = ResourceUsage(memory_mb=10, cpu_time_ms=5)
    updated = usage.merged({"file_handles": 3})
    assert updated == ResourceUsage(memory_mb=10, cpu_time_ms=5, file_handles=3)

    with pytest.raises(ValueError, match="unknown usage field"):
        usage.merged({"gpu": 1})
    with pytest.raises(ValueError, match=">= 0"):
        ResourceUsage(memory_mb=-1)


def test_scope_lifecycle_and_elapsed_time() -> None:
    scope = Scope(
        id="scope-x",
        config=_config(),
        context=ContextState(scope_id="scope-x"),
        timeout_ms=1_000,
        max_turns=3,
    )
    assert scope.elapsed_ms(50.0) == 0

    scope.start(10.0)
    assert scope.status is ScopeStatus.EXECUTING
    assert scope.elapsed_ms(10.25) == 250
    with pytest.raises(RuntimeError, match="already started"):
        scope.start(11.0)

    scope.finish(ScopeStatus.SUCCESS, 11.0)
    scope.finish(ScopeStatus.ERROR, 12.0)
    assert scope.status is ScopeStatus.SUCCESS
    assert scope.elapsed_ms(99.0) == 1_000

    with pytest.raises(ValueError, match="not a terminal status"):
        scope.finish(ScopeStatus.EXECUTING, 13.0)


def test_sub_agent_result_is_read_only_and_serializable() -> None:
    result = SubAgentResult(
        scope_id="scope-1",
        emitted_variables={"result": "done"},
        termination=TerminationInfo(
            reason=TerminationReason.GOAL,
            status=ScopeStatus.SUCCESS,
            execution_duration_ms=12,
            turns_executed=2,
            detail="Goal achieved: done",
        ),
    )

    assert result.success
    assert result.status is ScopeStatus.SUCCESS
    with pytest.raises(TypeError):
        result.emitted_variables["result"] = "other"  # type: ignore[index]

    payload = result.to_dict()
    assert payload["termination"] == {
        "reason": "GOAL",
        "status": "SUCCESS",
        "execution_duration_ms": 12,
        "turns_executed": 2,
        "detail": "Goal achieved: done",
    }
    assert payload["final_context"] is None


def test_error_taxonomy_kinds_and_messages() -> None:
    allocation = AllocationError("too many", ceiling="max_concurrent_scopes")
    assert isinstance(allocation, SubagentEngineError)
    assert allocation.kind == "allocation"
    assert allocation.ceiling == "max_concurrent_scopes"

    missing = NotFoundError("context not found: scope-1", scope_id="scope-1")
    assert isinstance(missing, KeyError)
    assert str(missing) == "context not found: scope-1"

    invalid = InvalidNameError("1bad")
    assert isinstance(invalid, ValueError)
    assert "invalid variable name" in str(invalid)

    problems = ConfigurationError("bad config", problems=["a", "b"])
    assert str(problems) == "bad config: a; b"


def test_result_union_discriminates_on_ok() -> None:
    good: Ok[int] = Ok(3)
    bad: Err[ValueError] = Err(ValueError("nope"))

    assert good.ok and good.unwrap() == 3
    assert not bad.ok
    with pytest.raises(ValueError, match="nope"):
        bad.unwrap()
