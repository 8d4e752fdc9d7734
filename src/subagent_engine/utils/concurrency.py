"""Cooperative cancellation and timeout helpers for the scope executor."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    The token is passed explicitly through every call of a scope's loop and
    observed at checkpoints; it never interrupts work that is in flight.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    Running out of time raises ``TimeoutError``; a cancelled ``cancel_token``
    (before or during the wait) raises ``asyncio.CancelledError``. The inner
    work is cancelled and awaited on both paths.
    """
    already_cancelled = cancel_token is not None and cancel_token.is_cancelled
    if timeout_seconds <= 0 or already_cancelled:
        if inspect.iscoroutine(awaitable):
            # never scheduled; closing avoids the "never awaited" warning at GC
            awaitable.close()
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        raise asyncio.CancelledError(_cancel_message(cancel_token))

    work: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    stop = asyncio.create_task(cancel_token.wait()) if cancel_token is not None else None
    watched: set[asyncio.Future[object]] = {work} if stop is None else {work, stop}
    try:
        done, _ = await asyncio.wait(
            watched, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        if work in done:
            return work.result()

        work.cancel()
        with suppress(asyncio.CancelledError):
            await work
        if stop is not None and stop in done:
            raise asyncio.CancelledError(_cancel_message(cancel_token))
        raise TimeoutError(f"operation timed out after {timeout_seconds:g} seconds")
    finally:
        if not work.done():
            work.cancel()
        if stop is not None:
            stop.cancel()
            with suppress(asyncio.CancelledError):
                await stop


def _cancel_message(token: CancellationToken | None) -> str:
    if token is None or token.reason is None:
        return "operation cancelled"
    return token.reason


__all__ = ["CancellationToken", "run_with_timeout"]
