"""Engine-wide defaults and fixed limits."""

from __future__ import annotations

import re
from typing import Final

# Per-scope defaults applied when a config leaves a constraint unspecified.
DEFAULT_TIMEOUT_MS: Final[int] = 900_000
DEFAULT_MAX_TURNS: Final[int] = 50
DEFAULT_MAX_MEMORY_MB: Final[float] = 100.0
DEFAULT_MAX_CPU_TIME_MS: Final[int] = 300_000
DEFAULT_MAX_FILE_HANDLES: Final[int] = 50
DEFAULT_MAX_NETWORK_CONNECTIONS: Final[int] = 10

# Global ceilings enforced at allocation time.
MAX_CONCURRENT_SCOPES: Final[int] = 10
MAX_TOTAL_MEMORY_MB: Final[float] = 500.0
MAX_TOTAL_CPU_TIME_MS: Final[int] = 1_800_000

DEFAULT_MAX_PARSE_RETRIES: Final[int] = 3
DEFAULT_MONITOR_INTERVAL_SECONDS: Final[float] = 1.0
DEFAULT_TOOL_TIMEOUT_SECONDS: Final[float] = 120.0

VARIABLE_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
WILDCARD_TOOL_PERMISSION: Final[str] = "*"
RESULT_VARIABLE_NAME: Final[str] = "result"

PARSE_CORRECTION_INSTRUCTION: Final[str] = (
    "Your last reply attempted to call a tool with invalid or malformed arguments. "
    "Provide corrected arguments if a tool call is still required, or respond in plain "
    "language without using tools."
)
EXHAUSTED_RETRIES_MESSAGE: Final[str] = (
    "Unable to generate a proper response after multiple attempts. "
    "Please try rephrasing your request."
)
CONTINUATION_INSTRUCTION: Final[str] = (
    "Continue working on the task. Call a tool if more work is required, "
    "or state the final answer."
)

__all__ = [
    "CONTINUATION_INSTRUCTION",
    "DEFAULT_MAX_CPU_TIME_MS",
    "DEFAULT_MAX_FILE_HANDLES",
    "DEFAULT_MAX_MEMORY_MB",
    "DEFAULT_MAX_NETWORK_CONNECTIONS",
    "DEFAULT_MAX_PARSE_RETRIES",
    "DEFAULT_MAX_TURNS",
    "DEFAULT_MONITOR_INTERVAL_SECONDS",
    "DEFAULT_TIMEOUT_MS",
    "DEFAULT_TOOL_TIMEOUT_SECONDS",
    "EXHAUSTED_RETRIES_MESSAGE",
    "MAX_CONCURRENT_SCOPES",
    "MAX_TOTAL_CPU_TIME_MS",
    "MAX_TOTAL_MEMORY_MB",
    "PARSE_CORRECTION_INSTRUCTION",
    "RESULT_VARIABLE_NAME",
    "VARIABLE_NAME_PATTERN",
    "WILDCARD_TOOL_PERMISSION",
]
