"""
subagent-engine: unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict schema behavior, structured issue paths and the
  EngineSettings projection.
"""

from __future__ import annotations

import pytest

from subagent_engine.config.schema import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CONFIG,
    ConfigValidationError,
    EngineSettings,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)
from subagent_engine.constants import DEFAULT_MAX_TURNS, MAX_CONCURRENT_SCOPES


def _issues(config: object) -> dict[str, str]:
    return {issue.path: issue.message for issue in validate_config(config)}


def test_defaults_validate() -> None:
    assert validate_config(default_config()) == ()
    assert default_config()["meta"]["schema_version"] == CONFIG_SCHEMA_VERSION


def test_default_config_returns_independent_copies() -> None:
    config = default_config()
    config["limits"]["max_concurrent_scopes"] = 99

    assert DEFAULT_CONFIG["limits"]["max_concurrent_scopes"] == MAX_CONCURRENT_SCOPES
    assert default_config()["limits"]["max_concurrent_scopes"] == MAX_CONCURRENT_SCOPES


def test_unknown_and_missing_keys_are_reported_with_paths() -> None:
    config = merge_config(default_config(), {"limits": {"max_gpus": 2}, "plugins": {}})
    del config["loop"]["system_prompt"]

    issues = [(issue.path, issue.message) for issue in validate_config(config)]

    assert ("limits.max_gpus", "unknown field") in issues
    assert ("plugins", "unknown field") in issues
    assert ("loop.system_prompt", "missing required field") in issues
    assert ("loop.system_prompt", "expected string") in issues


def test_missing_section_is_required() -> None:
    config = default_config()
    del config["monitoring"]  # type: ignore[misc]

    assert _issues(config)["monitoring"] == "missing required field"


def test_type_and_range_violations_collect_every_issue() -> None:
    config = merge_config(
        default_config(),
        {
            "limits": {"max_concurrent_scopes": 0, "max_total_memory_mb": "lots"},
            "defaults": {"max_turns": True},
            "loop": {"max_parse_retries": -1, "tool_timeout_seconds": 0},
            "monitoring": {"enabled": "yes"},
            "observability": {"log_level": "LOUD", "log_format": "xml"},
            "meta": {"schema_version": 2},
        },
    )

    issues = _issues(config)

    assert issues["limits.max_concurrent_scopes"] == "must be >= 1"
    assert issues["limits.max_total_memory_mb"] == "expected number, got str"
    assert issues["defaults.max_turns"] == "expected integer, got bool"
    assert issues["loop.max_parse_retries"] == "must be >= 0"
    assert issues["loop.tool_timeout_seconds"] == "must be > 0"
    assert issues["monitoring.enabled"] == "expected boolean, got str"
    assert issues["observability.log_level"].startswith("invalid value 'LOUD'")
    assert "json, console" in issues["observability.log_format"]
    assert "unsupported schema version 2" in issues["meta.schema_version"]


def test_non_mapping_root_is_rejected() -> None:
    assert _issues(["not", "a", "table"]) == {"<root>": "expected object, got list"}


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    config = merge_config(default_config(), {"defaults": {"timeout_ms": 0}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert "- defaults.timeout_ms: must be >= 1" in str(excinfo.value)
    assert excinfo.value.issues[0].path == "defaults.timeout_ms"


def test_merge_config_is_deep_and_non_mutating() -> None:
    base = default_config()
    merged = merge_config(base, {"loop": {"max_parse_retries": 5}})

    assert merged["loop"]["max_parse_retries"] == 5
    assert merged["loop"]["tool_timeout_seconds"] == base["loop"]["tool_timeout_seconds"]
    assert base["loop"]["max_parse_retries"] != 5


def test_engine_settings_projection() -> None:
    settings = EngineSettings.from_config(
        merge_config(
            default_config(),
            {
                "limits": {"max_concurrent_scopes": 4},
                "defaults": {"max_memory_mb": 64},
                "loop": {"system_prompt": "Be precise."},
                "monitoring": {"enabled": False},
            },
        )
    )

    assert settings.ceilings.max_concurrent_scopes == 4
    assert settings.default_limits.max_memory_mb == 64
    assert settings.default_max_turns == DEFAULT_MAX_TURNS
    assert settings.system_prompt == "Be precise."
    assert not settings.monitor_enabled
    assert EngineSettings.defaults().system_prompt is None

    with pytest.raises(ConfigValidationError):
        EngineSettings.from_config({"meta": {"schema_version": 1}})
