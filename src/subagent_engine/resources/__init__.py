"""Resource accounting: the ledger and live usage sampling."""

from subagent_engine.resources.ledger import (
    GlobalCeilings,
    IsolationFlags,
    LimitViolation,
    ResourceLedger,
    ViolationType,
)
from subagent_engine.resources.usage import ProcessUsageProvider, UsageProvider

__all__ = [
    "GlobalCeilings",
    "IsolationFlags",
    "LimitViolation",
    "ProcessUsageProvider",
    "ResourceLedger",
    "UsageProvider",
    "ViolationType",
]
