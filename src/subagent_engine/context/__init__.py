"""Per-scope variable namespaces and ``{{name}}`` templating."""

from subagent_engine.context.store import ContextStats, ContextStore
from subagent_engine.context.templates import RenderedTemplate, TemplateValidation

__all__ = ["ContextStats", "ContextStore", "RenderedTemplate", "TemplateValidation"]
