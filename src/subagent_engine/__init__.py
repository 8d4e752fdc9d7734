"""
subagent-engine: package root

File: src/subagent_engine/__init__.py

Purpose
- Bounded, isolated execution of model-driven subtasks ("scopes").
- Public entry point is ``subagent_engine.orchestration.ScopeOrchestrator``.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
