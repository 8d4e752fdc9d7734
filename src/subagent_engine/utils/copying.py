"""Structural deep copy used wherever values cross a scope boundary."""

from __future__ import annotations

import copy
from typing import TypeVar

T = TypeVar("T")


def deep_copy(value: T) -> T:
    """Return a fully detached copy of ``value``.

    Shared and cyclic references inside ``value`` are preserved in the copy
    (``copy.deepcopy`` memoizes by identity), so cyclic inputs terminate.
    Objects that cannot be copied raise ``TypeError``.
    """
    try:
        return copy.deepcopy(value)
    except (TypeError, copy.Error) as exc:
        raise TypeError(f"value of type {type(value).__name__} cannot be deep-copied: {exc}") from exc


__all__ = ["deep_copy"]
