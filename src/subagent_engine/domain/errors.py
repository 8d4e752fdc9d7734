"""Error taxonomy shared by every engine component.

Each error carries a stable ``kind`` so results can report failures as data
(``ErrorInfo``) instead of leaking exception objects to callers.
"""

from __future__ import annotations

from collections.abc import Sequence


class SubagentEngineError(RuntimeError):
    """Base engine error with a machine-readable ``kind`` and optional scope id."""

    kind: str = "engine"

    def __init__(self, detail: str, *, scope_id: str | None = None) -> None:
        self.detail = _normalize_detail(detail)
        self.scope_id = scope_id
        super().__init__(self.detail)


class ConfigurationError(SubagentEngineError, ValueError):
    """Scope configuration is invalid. Raised before anything is allocated."""

    kind = "configuration"

    def __init__(
        self,
        detail: str,
        *,
        problems: Sequence[str] = (),
        scope_id: str | None = None,
    ) -> None:
        self.problems = tuple(problems)
        if self.problems:
            detail = f"{detail}: " + "; ".join(self.problems)
        super().__init__(detail, scope_id=scope_id)


class AllocationError(SubagentEngineError):
    """A global resource ceiling would be exceeded."""

    kind = "allocation"

    def __init__(self, detail: str, *, ceiling: str, scope_id: str | None = None) -> None:
        self.ceiling = ceiling
        super().__init__(detail, scope_id=scope_id)


class NotFoundError(SubagentEngineError, KeyError):
    """Operation targeted a scope id that is not live."""

    kind = "not_found"

    def __str__(self) -> str:
        return self.detail


class InvalidNameError(SubagentEngineError, ValueError):
    """Variable name does not match ``[A-Za-z_][A-Za-z0-9_-]*``."""

    kind = "invalid_name"

    def __init__(self, name: object, *, scope_id: str | None = None) -> None:
        self.name = name
        super().__init__(f"invalid variable name: {name!r}", scope_id=scope_id)


class ContextExistsError(SubagentEngineError):
    """A context is already live for the requested scope id."""

    kind = "context_exists"


class ParseError(SubagentEngineError):
    """Model output was malformed or empty."""

    kind = "parse"


class ExhaustedRetriesError(SubagentEngineError):
    """Parse failures exceeded the retry bound."""

    kind = "exhausted_retries"

    def __init__(self, detail: str, *, attempts: int, scope_id: str | None = None) -> None:
        self.attempts = attempts
        super().__init__(detail, scope_id=scope_id)


class ToolExecutionError(SubagentEngineError):
    """A tool invocation failed or was not permitted."""

    kind = "tool_execution"

    def __init__(self, detail: str, *, tool_name: str, scope_id: str | None = None) -> None:
        self.tool_name = tool_name
        super().__init__(detail, scope_id=scope_id)


class ScopeInterruptedError(SubagentEngineError):
    """Cooperative cancellation was observed at a checkpoint."""

    kind = "interrupted"


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    return text or "unspecified error"


__all__ = [
    "AllocationError",
    "ConfigurationError",
    "ContextExistsError",
    "ExhaustedRetriesError",
    "InvalidNameError",
    "NotFoundError",
    "ParseError",
    "ScopeInterruptedError",
    "SubagentEngineError",
    "ToolExecutionError",
]
