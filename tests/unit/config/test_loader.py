"""
subagent-engine: unit tests for the config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate layered loading: defaults, TOML file, SUBAGENT_ env vars and
  dotted programmatic overrides.

Functional requirements
- No dependence on the real process environment.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import subagent_engine.config as config_pkg
from subagent_engine.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_settings,
)
from subagent_engine.config.schema import ConfigValidationError, default_config


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_precedence_overrides_env_file_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "subagent.toml"
    _write_config(
        config_path,
        """
[limits]
max_concurrent_scopes = 4

[loop]
max_parse_retries = 1
system_prompt = "from file"
""".strip(),
    )

    loaded = load_config(
        config_path,
        environ={
            "SUBAGENT_LIMITS_MAX_CONCURRENT_SCOPES": "6",
            "SUBAGENT_LOOP_SYSTEM_PROMPT": "from env",
        },
        overrides={"limits.max_concurrent_scopes": 8},
    )

    assert loaded["limits"]["max_concurrent_scopes"] == 8
    assert loaded["loop"]["system_prompt"] == "from env"
    assert loaded["loop"]["max_parse_retries"] == 1
    assert loaded["defaults"] == default_config()["defaults"]


def test_env_values_are_coerced_by_kind(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    loaded = load_config(
        environ={
            "SUBAGENT_MONITORING_ENABLED": "off",
            "SUBAGENT_MONITORING_INTERVAL_SECONDS": "0.25",
            "SUBAGENT_DEFAULTS_MAX_TURNS": " 12 ",
            "SUBAGENT_OBSERVABILITY_LOG_FORMAT": "console",
        },
    )

    assert loaded["monitoring"] == {"enabled": False, "interval_seconds": 0.25}
    assert loaded["defaults"]["max_turns"] == 12
    assert loaded["observability"]["log_format"] == "console"


@pytest.mark.parametrize(
    ("name", "raw", "message"),
    [
        ("SUBAGENT_DEFAULTS_MAX_TURNS", "many", "must be an integer"),
        ("SUBAGENT_LOOP_TOOL_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("SUBAGENT_MONITORING_ENABLED", "maybe", "must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    name: str, raw: str, message: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigLoadError, match=message) as excinfo:
        load_config(environ={name: raw})
    assert name in str(excinfo.value)


def test_meta_is_not_env_overridable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    loaded = load_config(environ={"SUBAGENT_META_SCHEMA_VERSION": "7"})
    assert loaded["meta"]["schema_version"] == 1


def test_default_file_is_read_from_working_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path / "subagent.toml", "[subagent.defaults]\nmax_turns = 7\n")
    monkeypatch.chdir(tmp_path)

    assert load_config(environ={})["defaults"]["max_turns"] == 7


def test_missing_default_file_is_fine_but_explicit_path_is_not(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    assert load_config(environ={}) == default_config()

    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "missing.toml", environ={})


def test_invalid_toml_and_invalid_values_are_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    broken = tmp_path / "broken.toml"
    _write_config(broken, "[limits\nmax_concurrent_scopes = 1")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})

    invalid = tmp_path / "invalid.toml"
    _write_config(invalid, "[limits]\nmax_concurrent_scopes = 0\n")
    with pytest.raises(ConfigValidationError, match="limits.max_concurrent_scopes"):
        load_config(invalid, environ={})

    with pytest.raises(ConfigValidationError, match="unknown field"):
        load_config(environ={}, overrides={"loop.retries": 3})
    with pytest.raises(ConfigLoadError, match="invalid override key"):
        load_config(environ={}, overrides={".": 3})


def test_section_overrides_merge_into_existing_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    loaded = load_config(environ={}, overrides={"monitoring": {"enabled": False}})
    assert loaded["monitoring"]["enabled"] is False
    assert loaded["monitoring"]["interval_seconds"] == 1.0


def test_load_settings_and_dump_are_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "subagent.toml"
    _write_config(config_path, "[observability]\nlog_level = \"DEBUG\"\n")

    settings = load_settings(config_path, environ={})
    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert settings.log_level == "DEBUG"
    assert first == second
    assert json.loads(first)["observability"]["log_level"] == "DEBUG"
    assert list(json.loads(first)) == sorted(json.loads(first))


def test_config_package_exports_loader_and_errors(tmp_path: Path) -> None:
    assert config_pkg.load_config is load_config
    with pytest.raises(config_pkg.ConfigLoadError):
        config_pkg.load_config(tmp_path / "missing.toml", environ={})
