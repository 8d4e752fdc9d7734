"""Engine configuration: schema, validation and layered loading."""

from subagent_engine.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_settings,
)
from subagent_engine.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    ConfigValidationIssue,
    EngineSettings,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "EngineSettings",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "load_settings",
    "merge_config",
    "validate_config",
]
