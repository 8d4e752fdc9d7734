"""``{{name}}`` placeholder scanning, substitution and validation."""

from __future__ import annotations

import json
import re
from collections.abc import Container, Mapping
from dataclasses import dataclass
from typing import Final

from subagent_engine.constants import VARIABLE_NAME_PATTERN

PLACEHOLDER_RE: Final[re.Pattern[str]] = re.compile(r"\{\{([^{}]*)\}\}")


@dataclass(frozen=True, slots=True)
class Placeholder:
    raw: str
    name: str
    start: int
    end: int

    @property
    def is_valid(self) -> bool:
        return is_valid_variable_name(self.name)


@dataclass(frozen=True, slots=True)
class RenderedTemplate:
    text: str
    resolved: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()
    invalid: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.missing and not self.invalid


@dataclass(frozen=True, slots=True)
class TemplateValidation:
    valid: bool
    missing_variables: tuple[str, ...]
    invalid_variables: tuple[str, ...]
    placeholder_count: int

    def to_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "missing_variables": list(self.missing_variables),
            "invalid_variables": list(self.invalid_variables),
            "placeholder_count": self.placeholder_count,
        }


def is_valid_variable_name(name: object) -> bool:
    return isinstance(name, str) and VARIABLE_NAME_PATTERN.fullmatch(name) is not None


def scan_placeholders(template: str) -> tuple[Placeholder, ...]:
    return tuple(
        Placeholder(
            raw=match.group(0),
            name=match.group(1).strip(),
            start=match.start(),
            end=match.end(),
        )
        for match in PLACEHOLDER_RE.finditer(template)
    )


def serialize_value(value: object) -> str:
    """String form used for substitution. Non-strings are JSON encoded."""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(value)


def render(template: str, variables: Mapping[str, object]) -> RenderedTemplate:
    """Substitute known placeholders and leave everything else verbatim."""
    resolved: list[str] = []
    missing: list[str] = []
    invalid: list[str] = []
    parts: list[str] = []
    cursor = 0
    for placeholder in scan_placeholders(template):
        parts.append(template[cursor : placeholder.start])
        cursor = placeholder.end
        if not placeholder.is_valid:
            _append_unique(invalid, placeholder.name)
            parts.append(placeholder.raw)
        elif placeholder.name in variables:
            _append_unique(resolved, placeholder.name)
            parts.append(serialize_value(variables[placeholder.name]))
        else:
            _append_unique(missing, placeholder.name)
            parts.append(placeholder.raw)
    parts.append(template[cursor:])
    return RenderedTemplate(
        text="".join(parts),
        resolved=tuple(resolved),
        missing=tuple(missing),
        invalid=tuple(invalid),
    )


def validate(template: str, available: Container[str]) -> TemplateValidation:
    placeholders = scan_placeholders(template)
    missing: list[str] = []
    invalid: list[str] = []
    for placeholder in placeholders:
        if not placeholder.is_valid:
            _append_unique(invalid, placeholder.name)
        elif placeholder.name not in available:
            _append_unique(missing, placeholder.name)
    return TemplateValidation(
        valid=not missing and not invalid,
        missing_variables=tuple(missing),
        invalid_variables=tuple(invalid),
        placeholder_count=len(placeholders),
    )


def _append_unique(bucket: list[str], name: str) -> None:
    if name not in bucket:
        bucket.append(name)


__all__ = [
    "PLACEHOLDER_RE",
    "Placeholder",
    "RenderedTemplate",
    "TemplateValidation",
    "is_valid_variable_name",
    "render",
    "scan_placeholders",
    "serialize_value",
    "validate",
]
