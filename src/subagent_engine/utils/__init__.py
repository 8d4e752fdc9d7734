"""Copy and concurrency helpers."""

from subagent_engine.utils.concurrency import CancellationToken, run_with_timeout
from subagent_engine.utils.copying import deep_copy

__all__ = ["CancellationToken", "deep_copy", "run_with_timeout"]
