"""Structured logging setup with JSON or console output and secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import Any, Final

import structlog

REDACTED_VALUE: Final[str] = "***REDACTED***"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

# cancellation_token and similar are references, not credentials
_KEY_ALLOWLIST: Final[frozenset[str]] = frozenset({"cancel_token", "cancellation_token"})

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    *,
    redact: bool = True,
    stream: Any = None,
) -> None:
    """Route structlog through stdlib logging with the chosen renderer.

    ``fmt`` is ``"json"`` for one JSON object per line or ``"console"`` for the
    human-readable dev renderer. Scope ids bound with ``bind_scope`` are merged
    into every event emitted inside the block.
    """

    numeric_level = logging.getLevelName(level.strip().upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"unsupported logging level {level!r}")
    if fmt not in ("json", "console"):
        raise ValueError(f"unsupported log format {fmt!r}")

    logging.basicConfig(
        format="%(message)s",
        stream=stream if stream is not None else sys.stderr,
        level=numeric_level,
        force=True,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if redact:
        processors.append(redact_event)
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=True, default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def bind_scope(scope_id: str, **fields: Any) -> Iterator[None]:
    """Attach ``scope_id`` (and any extra fields) to log events in this context."""

    with structlog.contextvars.bound_contextvars(scope_id=scope_id, **fields):
        yield


def redact_event(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking secret-looking keys and inline credentials."""

    for key in list(event_dict):
        event_dict[key] = redact_value(event_dict[key], key_context=key)
    return event_dict


def redact_value(value: Any, *, key_context: str | None = None) -> Any:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, Mapping):
        return {key: redact_value(item, key_context=str(key)) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(item) for item in value]
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in _KEY_ALLOWLIST:
        return False
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {REDACTED_VALUE}", redacted)
    return _PROVIDER_KEY_PATTERN.sub(REDACTED_VALUE, redacted)


__all__ = [
    "REDACTED_VALUE",
    "bind_scope",
    "configure_logging",
    "redact_event",
    "redact_value",
]
