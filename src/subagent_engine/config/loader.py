"""
subagent-engine: runtime config loader.

File: src/subagent_engine/config/loader.py

Purpose
- Build the effective engine config from built-in defaults, a TOML file,
  ``SUBAGENT_`` environment variables and programmatic overrides.

Functional requirements
- Precedence: overrides > env > file > defaults.
- Config is two levels deep (section, key). ``loop.max_parse_retries`` is
  read from ``SUBAGENT_LOOP_MAX_PARSE_RETRIES``; env values are coerced to the
  type of the default. ``meta`` is file-only.
- A missing default file is fine; a missing explicit file is an error.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from subagent_engine.config.schema import (
    DEFAULT_CONFIG,
    EngineSettings,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "subagent.toml"
ENV_PREFIX: Final[str] = "SUBAGENT_"
ROOT_TABLE: Final[str] = "subagent"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_FILE_ONLY_SECTIONS: Final[frozenset[str]] = frozenset({"meta"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an env value cannot be coerced."""


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    raise ValueError(text)


# bool before int: bool is an int subclass
_COERCERS: Final[tuple[tuple[type, Callable[[str], object], str], ...]] = (
    (bool, _parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    (int, int, "an integer"),
    (float, float, "a number"),
    (str, str, "a string"),
)


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config as a plain nested dict."""

    explicit = config_path is not None
    path = Path(config_path).expanduser() if explicit else Path.cwd() / DEFAULT_CONFIG_FILE
    from_file = assert_valid_config(merge_config(default_config(), _read_toml(path, explicit)))

    layered = merge_config(from_file, env_overrides(os.environ if environ is None else environ))
    layered = merge_config(layered, expand_overrides(overrides or {}))
    return assert_valid_config(layered)


def load_settings(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    return EngineSettings.from_config(
        load_config(config_path, overrides=overrides, environ=environ)
    )


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(dict(config), indent=2, sort_keys=True)


def env_var_name(section: str, key: str) -> str:
    return f"{ENV_PREFIX}{section.upper()}_{key.upper()}"


def env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, object]]:
    """Collect ``SUBAGENT_<SECTION>_<KEY>`` values, typed like their defaults."""

    found: dict[str, dict[str, object]] = {}
    for section, keys in DEFAULT_CONFIG.items():
        if section in _FILE_ONLY_SECTIONS:
            continue
        for key, default in keys.items():  # type: ignore[attr-defined]
            name = env_var_name(section, key)
            if name in environ:
                found.setdefault(section, {})[key] = _coerce(
                    environ[name], type(default), name, f"{section}.{key}"
                )
    return found


def expand_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    """Turn ``{"loop.max_parse_retries": 1, "monitoring": {...}}`` into nested sections."""

    nested: dict[str, Any] = {}
    for dotted, value in overrides.items():
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid override key {dotted!r}")
        overlay: Any = value
        for part in reversed(parts):
            overlay = {part: overlay}
        nested = merge_config(nested, overlay)
    return nested


def _coerce(raw: str, target: type, env_name: str, config_path: str) -> object:
    text = raw.strip()
    for kind, parse, description in _COERCERS:
        if target is kind:
            try:
                return parse(text)
            except ValueError as exc:
                raise ConfigLoadError(
                    f"{env_name} -> {config_path} must be {description}"
                ) from exc
    return text


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        parsed = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    # a lone [subagent] table may wrap the sections
    if set(parsed) == {ROOT_TABLE} and isinstance(parsed[ROOT_TABLE], dict):
        return parsed[ROOT_TABLE]
    return parsed


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_overrides",
    "env_var_name",
    "expand_overrides",
    "load_config",
    "load_settings",
]
