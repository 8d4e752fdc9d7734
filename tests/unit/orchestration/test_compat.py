"""Legacy task invocation adapter."""

from __future__ import annotations

import pytest
from structlog.testing import capture_logs

from subagent_engine.domain.errors import ConfigurationError
from subagent_engine.domain.models import (
    ErrorInfo,
    ExecutionMetadata,
    ScopeStatus,
    SubAgentResult,
    TerminationInfo,
    TerminationReason,
)
from subagent_engine.orchestration.compat import (
    GENERAL_PURPOSE,
    GENERAL_PURPOSE_TYPE,
    TASK_DESCRIPTION_VARIABLE,
    CompatibilityAdapter,
    TaskTypeDefinition,
)
from subagent_engine.termination.conditions import OutputCondition

REVIEWER = TaskTypeDefinition(
    name="code-reviewer",
    prompt_template="Review the change. {{task_description}}",
    tool_permissions=("read_file",),
    timeout_ms=30_000,
    max_turns=4,
    required_outputs=("review",),
)


def _result(**emitted: object) -> SubAgentResult:
    return SubAgentResult(
        scope_id="scope-1",
        emitted_variables=emitted,
        termination=TerminationInfo(
            reason=TerminationReason.OUTPUT,
            status=ScopeStatus.SUCCESS,
            execution_duration_ms=42,
            turns_executed=2,
            detail="Required outputs available: review",
        ),
    )


def test_general_purpose_is_registered_by_default() -> None:
    adapter = CompatibilityAdapter()
    assert adapter.registered_types() == (GENERAL_PURPOSE_TYPE,)
    assert adapter.resolve_type(None) is GENERAL_PURPOSE


def test_unknown_task_type_falls_back_to_general_purpose() -> None:
    with capture_logs() as logs:
        adapter = CompatibilityAdapter()
        resolved = adapter.resolve_type("mystery-agent")

    assert resolved is GENERAL_PURPOSE
    assert logs[-1]["event"] == "compat_unknown_task_type"
    assert logs[-1]["task_type"] == "mystery-agent"


def test_to_scope_config_applies_task_type_defaults() -> None:
    adapter = CompatibilityAdapter((GENERAL_PURPOSE, REVIEWER))

    config = adapter.to_scope_config("code-reviewer", "Check the retry logic")

    assert config.task_type == "code-reviewer"
    assert config.prompt == "Review the change. {{task_description}}"
    assert config.tool_permissions == ("read_file",)
    assert config.constraints.timeout_ms == 30_000
    assert config.constraints.max_turns == 4
    (condition,) = config.constraints.termination_conditions
    assert isinstance(condition, OutputCondition)
    assert condition.required_outputs == ("review",)

    general = adapter.to_scope_config(None, "anything")
    assert general.constraints.termination_conditions == ()

    with pytest.raises(ConfigurationError, match="non-empty prompt"):
        adapter.to_scope_config("code-reviewer", "  ")


def test_initial_variables_copy_context_and_bind_prompt() -> None:
    shared = {"files": ["a.py"]}
    with capture_logs() as logs:
        adapter = CompatibilityAdapter()
        variables = adapter.initial_variables("Fix it", {"repo": shared, "bad key": 1})

    shared["files"].append("b.py")
    assert variables == {"repo": {"files": ["a.py"]}, TASK_DESCRIPTION_VARIABLE: "Fix it"}
    assert any(entry["event"] == "compat_context_key_skipped" for entry in logs)


def test_to_legacy_result_shapes_output() -> None:
    adapter = CompatibilityAdapter((GENERAL_PURPOSE, REVIEWER))

    legacy = adapter.to_legacy_result(_result(review="LGTM", result="approved"), "code-reviewer")

    assert legacy["success"] is True
    assert legacy["agent_type"] == "code-reviewer"
    assert legacy["result"] == "approved"
    assert legacy["execution_time_ms"] == 42
    assert legacy["turns_executed"] == 2
    assert legacy["termination_reason"] == "OUTPUT"
    assert legacy["metadata"] == {
        "scope_id": "scope-1",
        "status": "SUCCESS",
        "detail": "Required outputs available: review",
        "emitted_variables": {"review": "LGTM", "result": "approved"},
        "error": None,
    }


def test_to_legacy_result_defaults_and_errors() -> None:
    adapter = CompatibilityAdapter()
    failed = SubAgentResult(
        scope_id=None,
        emitted_variables={},
        termination=TerminationInfo(
            reason=TerminationReason.ERROR,
            status=ScopeStatus.ERROR,
            execution_duration_ms=0,
            turns_executed=0,
        ),
        metadata=ExecutionMetadata(error=ErrorInfo(kind="configuration", message="bad")),
    )

    assert adapter.to_legacy_result(_result(), None)["result"] == "Task completed"
    legacy = adapter.to_legacy_result(failed, "unknown")
    assert legacy["success"] is False
    assert legacy["agent_type"] == GENERAL_PURPOSE_TYPE
    metadata = legacy["metadata"]
    assert isinstance(metadata, dict)
    assert metadata["error"] == {"kind": "configuration", "message": "bad"}


def test_register_type_replaces_existing_definition() -> None:
    with capture_logs() as logs:
        adapter = CompatibilityAdapter()
        adapter.register_type(REVIEWER)
        adapter.register_type(REVIEWER)

    assert adapter.registered_types() == ("code-reviewer", GENERAL_PURPOSE_TYPE)
    registrations = [entry for entry in logs if entry["event"] == "compat_type_registered"]
    assert [entry["replaced"] for entry in registrations] == [False, False, True]


def test_task_type_definition_validation() -> None:
    with pytest.raises(ConfigurationError):
        TaskTypeDefinition(name=" ", prompt_template="x")
    with pytest.raises(ConfigurationError, match="prompt template"):
        TaskTypeDefinition(name="empty", prompt_template="")
