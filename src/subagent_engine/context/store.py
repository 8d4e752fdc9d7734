"""
Per-scope variable storage with templating, isolation copies and merge.

Contexts are copy-on-isolate: values entering or leaving a context through
``create_context``, ``get_all_variables``, ``create_isolated_copy``,
``merge_contexts`` and ``snapshot`` are deep-copied, so no two scopes ever hold
a live reference to the same mutable value.

Unknown scope ids are non-fatal for reads (``None``/``False``) and raise
``NotFoundError`` for writes.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any

import structlog

from subagent_engine.context import templates
from subagent_engine.domain.errors import ContextExistsError, InvalidNameError, NotFoundError
from subagent_engine.domain.models import (
    ContextSnapshot,
    ContextState,
    ContextVariable,
    HistoryEntry,
    utc_now,
)
from subagent_engine.utils.copying import deep_copy


@dataclass(frozen=True, slots=True)
class ContextStats:
    scope_id: str
    variable_count: int
    history_length: int
    age_ms: int
    last_update_age_ms: int
    memory_estimate_bytes: int

    def to_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "variable_count": self.variable_count,
            "history_length": self.history_length,
            "age_ms": self.age_ms,
            "last_update_age_ms": self.last_update_age_ms,
            "memory_estimate_bytes": self.memory_estimate_bytes,
        }


class ContextStore:
    """Owns every live ``ContextState``. One instance is shared by an orchestrator."""

    def __init__(
        self,
        *,
        now: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._contexts: dict[str, ContextState] = {}
        self._lock = threading.RLock()
        self._now = now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_context(
        self,
        scope_id: str,
        initial_variables: Mapping[str, object] | None = None,
    ) -> ContextState:
        initial = dict(initial_variables or {})
        for name in initial:
            if not templates.is_valid_variable_name(name):
                raise InvalidNameError(name, scope_id=scope_id)

        created_at = self._now()
        state = ContextState(scope_id=scope_id, created_at=created_at, updated_at=created_at)
        for name, value in initial.items():
            state.variables[name] = ContextVariable(
                value=deep_copy(value),
                metadata={"source": "initial"},
                updated_at=created_at,
            )

        with self._lock:
            if scope_id in self._contexts:
                raise ContextExistsError(f"context already exists: {scope_id}", scope_id=scope_id)
            self._contexts[scope_id] = state

        self._logger.debug(
            "context_created", scope_id=scope_id, variable_count=len(state.variables)
        )
        return state

    def get_context(self, scope_id: str) -> ContextState | None:
        with self._lock:
            return self._contexts.get(scope_id)

    def clear_context(self, scope_id: str) -> bool:
        """Drop a context. Returns ``False`` when nothing was live under ``scope_id``."""
        with self._lock:
            state = self._contexts.pop(scope_id, None)
        if state is None:
            return False
        state.variables.clear()
        state.history.clear()
        self._logger.debug("context_cleared", scope_id=scope_id)
        return True

    @property
    def scope_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._contexts)

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def set_variable(
        self,
        scope_id: str,
        name: str,
        value: object,
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        if not templates.is_valid_variable_name(name):
            raise InvalidNameError(name, scope_id=scope_id)
        with self._lock:
            state = self._require(scope_id)
            updated_at = self._now()
            state.variables[name] = ContextVariable(
                value=value,
                metadata=MappingProxyType(dict(metadata or {})),
                updated_at=updated_at,
            )
            state.updated_at = updated_at

    def get_variable(self, scope_id: str, name: str, default: Any = None) -> Any:
        with self._lock:
            state = self._contexts.get(scope_id)
            if state is None:
                return default
            record = state.variables.get(name)
        return default if record is None else record.value

    def has_variable(self, scope_id: str, name: str) -> bool:
        with self._lock:
            state = self._contexts.get(scope_id)
            return state is not None and name in state.variables

    def get_all_variables(self, scope_id: str) -> dict[str, Any]:
        """Detached name->value copy. Empty for an unknown scope."""
        with self._lock:
            state = self._contexts.get(scope_id)
            if state is None:
                return {}
            values = {name: record.value for name, record in state.variables.items()}
        return deep_copy(values)

    def get_variable_metadata(self, scope_id: str, name: str) -> Mapping[str, object] | None:
        with self._lock:
            state = self._contexts.get(scope_id)
            record = None if state is None else state.variables.get(name)
        return None if record is None else record.metadata

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def render_template(self, template: str, scope_id: str) -> templates.RenderedTemplate:
        with self._lock:
            state = self._contexts.get(scope_id)
            values = (
                {}
                if state is None
                else {name: record.value for name, record in state.variables.items()}
            )
        if state is None:
            self._logger.warning("template_context_missing", scope_id=scope_id)
            return templates.RenderedTemplate(
                text=template,
                missing=tuple(
                    p.name for p in templates.scan_placeholders(template) if p.is_valid
                ),
            )

        rendered = templates.render(template, values)
        if rendered.missing or rendered.invalid:
            self._logger.warning(
                "template_placeholders_unresolved",
                scope_id=scope_id,
                missing=list(rendered.missing),
                invalid=list(rendered.invalid),
            )
        return rendered

    def process_template(self, template: str, scope_id: str) -> str:
        return self.render_template(template, scope_id).text

    def validate_template(self, template: str, scope_id: str) -> templates.TemplateValidation:
        with self._lock:
            state = self._contexts.get(scope_id)
            available = frozenset(() if state is None else state.variables)
        return templates.validate(template, available)

    # ------------------------------------------------------------------
    # Isolation and merge
    # ------------------------------------------------------------------

    def create_isolated_copy(
        self,
        source_scope_id: str,
        target_scope_id: str,
        include: Iterable[str] | None = None,
    ) -> ContextState:
        """Seed a brand-new context with deep copies of (a subset of) the source variables."""
        with self._lock:
            source = self._require(source_scope_id)
            selected = _select(source.variables, include)
            copied = {name: deep_copy(record.value) for name, record in selected.items()}
        state = self.create_context(target_scope_id, copied)
        with self._lock:
            for name in copied:
                state.variables[name] = ContextVariable(
                    value=state.variables[name].value,
                    metadata={"source": "isolated_copy", "copied_from": source_scope_id},
                    updated_at=state.created_at,
                )
        self._logger.debug(
            "context_isolated_copy",
            source_scope_id=source_scope_id,
            target_scope_id=target_scope_id,
            variable_count=len(copied),
        )
        return state

    def merge_contexts(
        self,
        from_scope_id: str,
        to_scope_id: str,
        include: Iterable[str] | None = None,
        *,
        overwrite: bool = False,
    ) -> tuple[str, ...]:
        """Copy variables one way. Returns the names written into the target."""
        with self._lock:
            source = self._require(from_scope_id)
            target = self._require(to_scope_id)
            merged: list[str] = []
            merged_at = self._now()
            for name, record in _select(source.variables, include).items():
                if name in target.variables and not overwrite:
                    continue
                target.variables[name] = ContextVariable(
                    value=deep_copy(record.value),
                    metadata=MappingProxyType(
                        {**record.metadata, "merged": True, "merged_from": from_scope_id}
                    ),
                    updated_at=merged_at,
                )
                merged.append(name)
            if merged:
                target.updated_at = merged_at

        self._logger.debug(
            "context_merged",
            from_scope_id=from_scope_id,
            to_scope_id=to_scope_id,
            merged=merged,
            overwrite=overwrite,
        )
        return tuple(merged)

    # ------------------------------------------------------------------
    # History, snapshots and stats
    # ------------------------------------------------------------------

    def record_history(self, scope_id: str, event: str, **details: object) -> None:
        with self._lock:
            state = self._contexts.get(scope_id)
            if state is None:
                self._logger.warning(
                    "context_history_scope_missing", scope_id=scope_id, history_event=event
                )
                return
            recorded_at = self._now()
            state.history.append(
                HistoryEntry(event=event, recorded_at=recorded_at, details=dict(details))
            )
            state.updated_at = recorded_at

    def snapshot(self, scope_id: str) -> ContextSnapshot | None:
        with self._lock:
            state = self._contexts.get(scope_id)
            if state is None:
                return None
            values = {name: record.value for name, record in state.variables.items()}
            history = tuple(state.history)
            created_at, updated_at = state.created_at, state.updated_at
        return ContextSnapshot(
            scope_id=scope_id,
            variables=MappingProxyType(deep_copy(values)),
            history=history,
            created_at=created_at,
            updated_at=updated_at,
        )

    def get_context_stats(self, scope_id: str) -> ContextStats | None:
        with self._lock:
            state = self._contexts.get(scope_id)
            if state is None:
                return None
            values = {name: record.value for name, record in state.variables.items()}
            now = self._now()
            return ContextStats(
                scope_id=scope_id,
                variable_count=len(state.variables),
                history_length=len(state.history),
                age_ms=_millis(now - state.created_at),
                last_update_age_ms=_millis(now - state.updated_at),
                memory_estimate_bytes=_estimate_size(values),
            )

    def _require(self, scope_id: str) -> ContextState:
        state = self._contexts.get(scope_id)
        if state is None:
            raise NotFoundError(f"context not found: {scope_id}", scope_id=scope_id)
        return state


def _select(
    variables: Mapping[str, ContextVariable], include: Iterable[str] | None
) -> dict[str, ContextVariable]:
    if include is None:
        return dict(variables)
    return {name: variables[name] for name in include if name in variables}


def _millis(delta: Any) -> int:
    return max(0, int(delta.total_seconds() * 1000))


def _estimate_size(values: Mapping[str, object]) -> int:
    # UTF-16 sized estimate of the JSON form.
    return len(json.dumps(values, default=str, ensure_ascii=False)) * 2


__all__ = ["ContextStats", "ContextStore"]
